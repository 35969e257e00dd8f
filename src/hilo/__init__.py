"""Hilo - burst-aware bridge between chat conversations and AI assistant threads."""

__version__ = "0.1.0"
