"""Correlate operator-sent messages with assistant threads.

The transport reports every message sent from the account. Those the bridge
sent itself are recognised through the SelfEchoRegistry; everything else was
typed by a human operator. Operator messages are debounced like user
messages and written into the conversation's assistant thread so the
assistant's history reflects the intervention. Writes take the same
per-conversation lock as the dispatcher, so they never interleave with an
automated run.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Literal

from anyio.abc import TaskGroup

from .backend import AssistantBackend, BackendError, Role
from .bindings import ThreadBindingRegistry
from .debounce import ConversationDebouncer
from .echo import SelfEchoRegistry
from .locks import ConversationLocks
from .logging import get_logger, preview
from .model import BUFFER_SEPARATOR, PendingBuffer, ReplyContext
from .transport import TransportEvent, is_conversation_target

logger = get_logger(__name__)

ManualOutcome = Literal["self_echo", "ignored", "unbound", "buffered"]


class ManualMessageCorrelator:
    def __init__(
        self,
        *,
        task_group: TaskGroup,
        backend: AssistantBackend,
        bindings: ThreadBindingRegistry,
        echoes: SelfEchoRegistry,
        locks: ConversationLocks,
        window_s: float = 6.0,
        role: Role = "assistant",
        annotation: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._bindings = bindings
        self._echoes = echoes
        self._locks = locks
        self._role = role
        self._annotation = annotation.strip()
        self.debouncer = ConversationDebouncer(
            task_group=task_group,
            window_s=window_s,
            on_flush=self._flush,
            name="manual",
            clock=clock,
        )

    async def handle_outgoing(self, event: TransportEvent) -> ManualOutcome:
        if not event.from_self:
            return "ignored"
        if self._echoes.consume(event.message_id):
            logger.debug("manual.self_echo", message_id=event.message_id)
            return "self_echo"
        if not event.text or not event.text.strip():
            return "ignored"
        if not is_conversation_target(event.address):
            return "ignored"

        conversation_id = event.conversation_id
        logger.info(
            "manual.detected",
            conversation_id=conversation_id,
            text=preview(event.text, 60),
        )
        if self._bindings.get(conversation_id) is None:
            logger.warning(
                "manual.no_thread",
                conversation_id=conversation_id,
                hint="the user must message first",
            )
            return "unbound"

        await self.debouncer.add(
            conversation_id,
            event.text,
            ReplyContext(address=event.address, message_id=event.message_id),
            message_id=event.message_id,
        )
        return "buffered"

    async def _flush(self, buffer: PendingBuffer) -> None:
        conversation_id = buffer.conversation_id
        # The echo can arrive before the send call returns; re-check now.
        texts = [
            text
            for text, message_id in zip(buffer.messages, buffer.message_ids)
            if not self._echoes.consume(message_id)
        ]
        if not texts:
            logger.debug("manual.all_self_echo", conversation_id=conversation_id)
            return

        text = BUFFER_SEPARATOR.join(texts)
        if self._annotation:
            text = f"{self._annotation}{BUFFER_SEPARATOR}{text}"

        async with self._locks.hold(conversation_id):
            thread_ref = self._bindings.get(conversation_id)
            if thread_ref is None:
                logger.warning("manual.thread_expired", conversation_id=conversation_id)
                return
            try:
                message_id = await self._backend.append_message(
                    thread_ref, self._role, text
                )
            except BackendError as exc:
                logger.error(
                    "manual.sync_failed",
                    conversation_id=conversation_id,
                    thread_ref=thread_ref,
                    error=str(exc),
                    error_kind=exc.kind.value,
                )
                return

        logger.info(
            "manual.synced",
            conversation_id=conversation_id,
            thread_ref=thread_ref,
            message_id=message_id,
            message_count=len(texts),
        )

    async def flush_all(self) -> int:
        return await self.debouncer.flush_all()
