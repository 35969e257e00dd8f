"""Per-conversation message batching.

When messages arrive rapidly for the same conversation they are collected
and handed over as one buffer once the conversation has been quiet for the
debounce window. Each conversation has its own cancellable timer task; a new
message cancels and replaces the pending timer.

Usage:
    async with anyio.create_task_group() as tg:
        debouncer = ConversationDebouncer(
            task_group=tg, window_s=6.0, on_flush=handle_buffer
        )
        await debouncer.add(conversation_id, "hola", context)
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import anyio
from anyio.abc import TaskGroup

from .logging import get_logger
from .model import ConversationId, MessageId, PendingBuffer, ReplyContext

logger = get_logger(__name__)

FlushCallback = Callable[[PendingBuffer], Awaitable[None]]


@dataclass(eq=False, slots=True)
class _Timer:
    scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)


class ConversationDebouncer:
    def __init__(
        self,
        *,
        task_group: TaskGroup,
        window_s: float,
        on_flush: FlushCallback,
        name: str = "debounce",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_s = window_s
        self.name = name
        self._task_group = task_group
        self._on_flush = on_flush
        self._clock = clock
        self._pending: dict[ConversationId, PendingBuffer] = {}
        self._timers: dict[ConversationId, _Timer] = {}
        self._lock = anyio.Lock()
        # Buffers taken by expired timers whose on_flush has not returned.
        self._delivering = 0
        self._idle_waiters: list[anyio.Event] = []

    async def add(
        self,
        conversation_id: ConversationId,
        text: str,
        context: ReplyContext | None = None,
        *,
        message_id: MessageId | None = None,
    ) -> int:
        """Buffer ``text`` and restart the conversation's timer.

        Returns the number of messages now buffered for the conversation.
        """
        async with self._lock:
            buffer = self._pending.get(conversation_id)
            if buffer is None:
                buffer = PendingBuffer(
                    conversation_id=conversation_id, created_at=self._clock()
                )
                self._pending[conversation_id] = buffer
            buffer.messages.append(text)
            if message_id is not None:
                buffer.message_ids.append(message_id)
            if context is not None:
                buffer.last_context = context

            previous = self._timers.get(conversation_id)
            if previous is not None:
                previous.scope.cancel()
            timer = _Timer()
            self._timers[conversation_id] = timer
            count = len(buffer.messages)

        logger.debug(
            f"{self.name}.buffered",
            conversation_id=conversation_id,
            buffered=count,
            window_s=self.window_s,
        )
        self._task_group.start_soon(self._run_timer, conversation_id, timer)
        return count

    async def _run_timer(self, conversation_id: ConversationId, timer: _Timer) -> None:
        with timer.scope:
            await anyio.sleep(self.window_s)

        async with self._lock:
            # A newer message replaced this timer while it was waking up.
            if self._timers.get(conversation_id) is not timer:
                return
            del self._timers[conversation_id]
            buffer = self._pending.pop(conversation_id, None)
            if buffer is None or not buffer.messages:
                return
            self._delivering += 1

        try:
            await self._deliver(buffer)
        finally:
            self._delivering -= 1
            if not self._delivering:
                waiters, self._idle_waiters = self._idle_waiters, []
                for event in waiters:
                    event.set()

    async def _deliver(self, buffer: PendingBuffer) -> None:
        logger.info(
            f"{self.name}.flush",
            conversation_id=buffer.conversation_id,
            message_count=len(buffer.messages),
        )
        try:
            await self._on_flush(buffer)
        except Exception as exc:
            logger.exception(
                f"{self.name}.flush_failed",
                conversation_id=buffer.conversation_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def flush_all(self) -> int:
        """Cancel every timer and deliver all pending buffers now.

        Also waits for deliveries that expired timers already started, so
        nothing is in transit once this returns. Returns the number of
        buffers delivered by this call.
        """
        async with self._lock:
            for timer in self._timers.values():
                timer.scope.cancel()
            self._timers.clear()
            buffers = [b for b in self._pending.values() if b.messages]
            self._pending.clear()

        for buffer in buffers:
            await self._deliver(buffer)
        await self.join()
        return len(buffers)

    async def join(self) -> None:
        """Wait until no timer-started delivery is in progress."""
        if not self._delivering:
            return
        event = anyio.Event()
        self._idle_waiters.append(event)
        await event.wait()

    @property
    def delivering(self) -> int:
        return self._delivering

    def has_pending(self, conversation_id: ConversationId | None = None) -> bool:
        if conversation_id is None:
            return bool(self._pending)
        return conversation_id in self._pending

    def pending_count(self, conversation_id: ConversationId) -> int:
        buffer = self._pending.get(conversation_id)
        return len(buffer.messages) if buffer is not None else 0
