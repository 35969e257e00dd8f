"""Inbound burst aggregation.

Consecutive user messages for a conversation are buffered and, after the
quiet period, combined into a single DispatchTask (messages joined by a
blank line, in arrival order). A task the dispatcher refuses because the
conversation's queue is full is answered with a busy notice instead.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from anyio.abc import TaskGroup

from .debounce import ConversationDebouncer
from .dispatcher import ConversationDispatcher
from .emitter import ResponseEmitter
from .logging import get_logger, preview
from .model import ConversationId, DispatchTask, PendingBuffer, ReplyContext
from .settings import DEFAULT_BUSY_NOTICE

logger = get_logger(__name__)


class InboundAggregator:
    def __init__(
        self,
        *,
        task_group: TaskGroup,
        dispatcher: ConversationDispatcher,
        emitter: ResponseEmitter,
        window_s: float = 6.0,
        busy_notice: str = DEFAULT_BUSY_NOTICE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._dispatcher = dispatcher
        self._emitter = emitter
        self._busy_notice = busy_notice
        self.debouncer = ConversationDebouncer(
            task_group=task_group,
            window_s=window_s,
            on_flush=self._flush,
            name="inbound",
            clock=clock,
        )

    async def on_inbound_message(
        self,
        conversation_id: ConversationId,
        text: str,
        context: ReplyContext | None = None,
    ) -> None:
        logger.info(
            "inbound.received",
            conversation_id=conversation_id,
            text=preview(text, 30),
        )
        await self.debouncer.add(
            conversation_id,
            text,
            context,
            message_id=context.message_id if context is not None else None,
        )

    async def _flush(self, buffer: PendingBuffer) -> None:
        task = DispatchTask(
            conversation_id=buffer.conversation_id,
            combined_text=buffer.combined_text(),
            reply_context=buffer.last_context,
        )
        logger.info(
            "inbound.combined",
            conversation_id=task.conversation_id,
            message_count=len(buffer.messages),
            text=preview(task.combined_text),
        )
        if await self._dispatcher.enqueue(task):
            return
        logger.warning("inbound.rejected_busy", conversation_id=task.conversation_id)
        await self._emitter.send_notice(
            task.conversation_id, self._busy_notice, task.reply_context
        )

    async def flush_all(self) -> int:
        return await self.debouncer.flush_all()
