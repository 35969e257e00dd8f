"""Pydantic settings for the bridge.

This module provides:
- TOML file loading (.hilo/hilo.toml) with environment overrides
  (HILO__OPENAI__API_KEY, HILO__TIMING__DEBOUNCE_WINDOW_S, ...)
- SecretStr for the API key to prevent accidental logging
- A credential check that fails fast before any traffic is served
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, SecretStr, ValidationError
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from .config_store import find_config_root, get_config_path, read_raw_toml
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_BUSY_NOTICE = (
    "Estoy procesando varios de tus mensajes anteriores. "
    "Dame un momentito, por favor."
)
DEFAULT_MANUAL_ANNOTATION = "[Mensaje enviado manualmente por un encargado]"


class ConfigError(RuntimeError):
    """Configuration error."""

    pass


def _has_secret(value: SecretStr | None) -> bool:
    return value is not None and bool(value.get_secret_value().strip())


class OpenAISettings(BaseModel):
    """OpenAI Assistants backend configuration."""

    api_key: SecretStr | None = None
    assistant_id: str = ""
    base_url: str = "https://api.openai.com/v1"
    poll_interval_s: float = Field(default=1.0, gt=0)


class GeminiSettings(BaseModel):
    """Gemini generateContent backend configuration."""

    api_key: SecretStr | None = None
    model: str = "gemini-2.0-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    system_instruction: str = ""
    max_sessions: int = Field(default=10_000, ge=1)


class BackendSettings(BaseModel):
    provider: Literal["openai", "gemini"] = "openai"


class TimingSettings(BaseModel):
    """Debounce, cooldown and pacing durations, in seconds."""

    debounce_window_s: float = Field(default=6.0, gt=0)
    manual_debounce_window_s: float = Field(default=6.0, gt=0)
    dispatch_cooldown_s: float = Field(default=3.0, ge=0)
    chunk_delay_s: float = Field(default=0.15, ge=0)
    request_timeout_s: float = Field(default=60.0, gt=0)
    self_echo_ttl_s: float = Field(default=300.0, gt=0)


class DispatchSettings(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    max_queue_size: int = Field(default=10, ge=1)
    busy_notice: str = DEFAULT_BUSY_NOTICE


class BindingSettings(BaseModel):
    """Thread binding retention: LRU bound plus idle TTL."""

    max_entries: int = Field(default=10_000, ge=1)
    ttl_s: float = Field(default=30 * 24 * 3600.0, gt=0)


class EmitterSettings(BaseModel):
    max_chunk_chars: int = Field(default=250, ge=20)
    max_chunk_lines: int = Field(default=4, ge=1)
    chars_per_line: int = Field(default=60, ge=1)


class ManualSettings(BaseModel):
    """How operator-sent messages are written into the assistant thread."""

    role: Literal["user", "assistant"] = "assistant"
    annotation: str = DEFAULT_MANUAL_ANNOTATION


class HandoffSettings(BaseModel):
    enabled: bool = True
    phrases: list[str] = [
        "espere, me comunico con el encargado",
        "confirmo con encargado",
        "confirmo los precios en el sistema y le aviso",
    ]
    topics: dict[str, str] = {
        "precio": "precios",
        "disponibilidad": "disponibilidad",
        "ubicado": "ubicación",
        "distancia": "ubicación",
    }
    default_topic: str = "información general"
    max_entries: int = Field(default=10_000, ge=1)


class HiloSettings(BaseSettings):
    """Bridge configuration loaded from TOML and environment variables.

    Environment variables use the HILO__ prefix with __ as nested delimiter:
    - HILO__BACKEND__PROVIDER -> backend.provider
    - HILO__OPENAI__API_KEY -> openai.api_key
    - HILO__OPENAI__ASSISTANT_ID -> openai.assistant_id
    - HILO__GEMINI__API_KEY -> gemini.api_key
    - HILO__TIMING__DEBOUNCE_WINDOW_S -> timing.debounce_window_s
    """

    model_config = SettingsConfigDict(
        env_prefix="HILO__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    backend: BackendSettings = BackendSettings()
    openai: OpenAISettings = OpenAISettings()
    gemini: GeminiSettings = GeminiSettings()
    timing: TimingSettings = TimingSettings()
    dispatch: DispatchSettings = DispatchSettings()
    bindings: BindingSettings = BindingSettings()
    emitter: EmitterSettings = EmitterSettings()
    manual: ManualSettings = ManualSettings()
    handoff: HandoffSettings = HandoffSettings()

    def require_credentials(self) -> None:
        """Raise ConfigError naming every missing required value."""
        missing: list[str] = []
        if self.backend.provider == "gemini":
            if not _has_secret(self.gemini.api_key):
                missing.append("gemini.api_key")
            if not self.gemini.model.strip():
                missing.append("gemini.model")
        else:
            if not _has_secret(self.openai.api_key):
                missing.append("openai.api_key")
            if not self.openai.assistant_id.strip():
                missing.append("openai.assistant_id")
        if missing:
            raise ConfigError(f"missing required settings: {', '.join(missing)}")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # TOML values arrive as init kwargs; the environment overrides them.
        return env_settings, init_settings, file_secret_settings


def load_settings(root: Path | None = None) -> HiloSettings:
    """Load settings from ``root/.hilo/hilo.toml`` plus the environment.

    A missing config file is not an error: environment variables alone can
    configure the bridge. An unreadable or invalid file raises ConfigError.
    """
    if root is None:
        root = find_config_root()

    data: dict[str, Any] = {}
    if root is not None:
        config_path = get_config_path(root)
        if config_path.exists():
            try:
                data = read_raw_toml(config_path)
            except Exception as e:
                logger.error("settings.load_failed", path=str(config_path), error=str(e))
                raise ConfigError(f"failed to read {config_path}: {e}") from e

    try:
        return HiloSettings(**data)
    except ValidationError as e:
        logger.error("settings.validation_failed", error=str(e))
        raise ConfigError(str(e)) from e
