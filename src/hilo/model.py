"""Core data types shared by the aggregator, dispatcher and correlator."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, NewType

ConversationId = NewType("ConversationId", str)
MessageId = NewType("MessageId", str)
ThreadRef = NewType("ThreadRef", str)

BUFFER_SEPARATOR = "\n\n"


@dataclass(frozen=True, slots=True)
class ReplyContext:
    """Where and to what a reply is addressed.

    ``address`` is the raw transport address of the counterpart; ``message_id``
    is the last inbound message in the burst.
    """

    address: str
    message_id: MessageId | None = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(slots=True)
class PendingBuffer:
    """Messages accumulating for one conversation until its quiet period ends."""

    conversation_id: ConversationId
    created_at: float
    messages: list[str] = field(default_factory=list)
    message_ids: list[MessageId] = field(default_factory=list)
    last_context: ReplyContext | None = None

    def combined_text(self) -> str:
        return BUFFER_SEPARATOR.join(self.messages)


@dataclass(frozen=True, slots=True)
class DispatchTask:
    """One aggregated burst queued for the assistant backend."""

    conversation_id: ConversationId
    combined_text: str
    reply_context: ReplyContext | None = None


@dataclass(slots=True)
class ConversationQueueState:
    """Pending tasks for one conversation.

    ``locked`` is true while a worker drains this queue; the entry is removed
    once the queue is empty and unlocked.
    """

    queue: deque[DispatchTask] = field(default_factory=deque)
    locked: bool = False


@dataclass(frozen=True, slots=True)
class ThreadBinding:
    conversation_id: ConversationId
    thread_ref: ThreadRef
    last_bound_at: float
