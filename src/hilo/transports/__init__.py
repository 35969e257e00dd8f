"""Transport implementations."""

from .console import ConsoleTransport

__all__ = ["ConsoleTransport"]
