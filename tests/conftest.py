import os
import sys
from pathlib import Path

import pytest
import structlog

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_structlog():
    """Reset structlog configuration before each test to avoid caching issues."""
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep HILO__ variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith(("HILO__", "HILO_LOG")):
            monkeypatch.delenv(key, raising=False)
