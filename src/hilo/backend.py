"""Assistant backend abstraction.

A backend turns text plus an optional thread reference into a reply and the
(possibly new) thread reference. Failures are reported as ``BackendError``
with a structured ``ErrorKind``; callers never inspect error text.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Literal, Protocol

from .model import MessageId, ThreadRef

Role = Literal["user", "assistant"]


class ErrorKind(enum.Enum):
    RATE_LIMITED = "rate_limited"
    CONCURRENT_RUN_ACTIVE = "concurrent_run_active"
    TIMEOUT = "timeout"
    UNCLASSIFIED = "unclassified"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.UNCLASSIFIED


class BackendError(Exception):
    """Backend call failed."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind


@dataclass(frozen=True, slots=True)
class BackendReply:
    text: str
    thread_ref: ThreadRef


@dataclass(slots=True)
class AskProgress:
    """Side effects one ask has already made on the backend.

    The dispatcher hands the same instance to every attempt for a burst, so a
    retry reuses the thread it created and does not post the text again.
    """

    thread_ref: ThreadRef | None = None
    message_posted: bool = False


class AssistantBackend(Protocol):
    async def ask(
        self,
        thread_ref: ThreadRef | None,
        text: str,
        *,
        progress: AskProgress | None = None,
    ) -> BackendReply:
        """Send ``text`` on the thread (a new one when None) and await the reply.

        When ``progress`` is given it is updated as the thread is created and
        the text posted, and consulted first so a repeated call resumes.

        Raises:
            BackendError: On any failure, classified by kind.
        """
        ...

    async def append_message(
        self, thread_ref: ThreadRef, role: Role, text: str
    ) -> MessageId:
        """Add a message to the thread history without starting a run."""
        ...
