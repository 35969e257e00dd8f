"""Assistant backend implementations."""

from ..settings import HiloSettings
from .gemini import GeminiBackend
from .openai_assistants import OpenAIAssistantsBackend


def create_backend(settings: HiloSettings) -> OpenAIAssistantsBackend | GeminiBackend:
    """Build the backend named by ``backend.provider``."""
    if settings.backend.provider == "gemini":
        return GeminiBackend.from_settings(settings.gemini)
    return OpenAIAssistantsBackend.from_settings(settings.openai)


__all__ = ["GeminiBackend", "OpenAIAssistantsBackend", "create_backend"]
