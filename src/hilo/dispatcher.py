"""Serialized per-conversation delivery of bursts to the assistant backend.

Each conversation has a FIFO queue drained by at most one worker task. The
worker holds the conversation lock for the backend call and the reply, then
pauses for the dispatch cooldown before taking the next task. Conversations
are drained independently and concurrently.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

import anyio
from anyio.abc import TaskGroup

from .backend import AskProgress, AssistantBackend, BackendError, BackendReply, ErrorKind
from .bindings import ThreadBindingRegistry
from .emitter import ResponseEmitter
from .handoff import HandoffTracker
from .locks import ConversationLocks
from .logging import bind_conversation_context, clear_context, get_logger, preview
from .model import ConversationId, ConversationQueueState, DispatchTask

logger = get_logger(__name__)


class ConversationDispatcher:
    def __init__(
        self,
        *,
        task_group: TaskGroup,
        backend: AssistantBackend,
        bindings: ThreadBindingRegistry,
        emitter: ResponseEmitter,
        locks: ConversationLocks,
        handoff: HandoffTracker | None = None,
        max_queue_size: int = 10,
        max_attempts: int = 3,
        cooldown_s: float = 3.0,
        request_timeout_s: float = 60.0,
        backoff_base_s: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._task_group = task_group
        self._backend = backend
        self._bindings = bindings
        self._emitter = emitter
        self._locks = locks
        self._handoff = handoff
        self._max_queue_size = max_queue_size
        self._max_attempts = max_attempts
        self._cooldown_s = cooldown_s
        self._request_timeout_s = request_timeout_s
        self._backoff_base_s = backoff_base_s
        self._clock = clock
        self._sleep = sleep
        self._queues: dict[ConversationId, ConversationQueueState] = {}
        self._lock = anyio.Lock()
        self._idle_waiters: list[anyio.Event] = []

    async def enqueue(self, task: DispatchTask) -> bool:
        """Queue ``task``; returns False when the conversation's queue is full."""
        key = task.conversation_id
        async with self._lock:
            state = self._queues.get(key)
            if state is None:
                state = ConversationQueueState()
                self._queues[key] = state
            if len(state.queue) >= self._max_queue_size:
                logger.warning(
                    "dispatch.queue_full",
                    conversation_id=key,
                    queue_depth=len(state.queue),
                )
                return False
            state.queue.append(task)
            depth = len(state.queue)
            if state.locked:
                logger.info("dispatch.queued", conversation_id=key, queue_depth=depth)
                return True
            state.locked = True

        logger.info("dispatch.worker_started", conversation_id=key, queue_depth=depth)
        self._task_group.start_soon(self._drain, key)
        return True

    async def _drain(self, key: ConversationId) -> None:
        # Only this worker pops from the queue, so it is non-empty on entry
        # and after every cooldown.
        while True:
            async with self._lock:
                task = self._queues[key].queue.popleft()

            await self._process(task)

            async with self._lock:
                state = self._queues.get(key)
                if state is None or not state.queue:
                    self._queues.pop(key, None)
                    self._notify_if_idle()
                    logger.debug("dispatch.worker_done", conversation_id=key)
                    return
                depth = len(state.queue)
            logger.info(
                "dispatch.cooldown",
                conversation_id=key,
                queue_depth=depth,
                cooldown_s=self._cooldown_s,
            )
            await self._sleep(self._cooldown_s)

    async def _process(self, task: DispatchTask) -> None:
        key = task.conversation_id
        bind_conversation_context(conversation_id=key)
        try:
            async with self._locks.hold(key):
                text = task.combined_text
                if self._handoff is not None:
                    text = self._handoff.apply_note(key, text)
                started_at = self._clock()
                logger.info("dispatch.started", text=preview(text))
                try:
                    reply = await self._ask_with_retry(key, text)
                except BackendError as exc:
                    logger.error(
                        "dispatch.dropped",
                        error=str(exc),
                        error_kind=exc.kind.value,
                    )
                    return

                self._bindings.set(key, reply.thread_ref)
                if self._handoff is not None:
                    self._handoff.clear(key)
                logger.info(
                    "dispatch.completed",
                    thread_ref=reply.thread_ref,
                    answer_len=len(reply.text),
                    elapsed_s=round(self._clock() - started_at, 2),
                )
                await self._emitter.emit(key, reply.text, task.reply_context)
                if self._handoff is not None:
                    self._handoff.observe_reply(
                        key, user_text=task.combined_text, reply=reply.text
                    )
        except Exception as exc:
            logger.exception(
                "dispatch.task_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
        finally:
            clear_context()

    async def _ask_with_retry(self, key: ConversationId, text: str) -> BackendReply:
        # Shared by every attempt so a retry resumes on the thread it created
        # and never posts the burst twice.
        progress = AskProgress(thread_ref=self._bindings.get(key))
        attempt = 0
        while True:
            attempt += 1
            try:
                with anyio.fail_after(self._request_timeout_s):
                    return await self._backend.ask(
                        progress.thread_ref, text, progress=progress
                    )
            except TimeoutError:
                error = BackendError(
                    ErrorKind.TIMEOUT,
                    f"no reply within {self._request_timeout_s}s",
                )
            except BackendError as exc:
                error = exc

            if not error.kind.retryable or attempt >= self._max_attempts:
                raise error
            delay = self._backoff_base_s**attempt
            logger.warning(
                "dispatch.retry",
                attempt=attempt,
                max_attempts=self._max_attempts,
                error_kind=error.kind.value,
                delay_s=delay,
            )
            await self._sleep(delay)

    def _notify_if_idle(self) -> None:
        if self._queues:
            return
        waiters, self._idle_waiters = self._idle_waiters, []
        for event in waiters:
            event.set()

    async def join(self) -> None:
        """Wait until every conversation queue has drained."""
        if not self._queues:
            return
        event = anyio.Event()
        self._idle_waiters.append(event)
        await event.wait()

    def is_active(self, conversation_id: ConversationId) -> bool:
        state = self._queues.get(conversation_id)
        return state is not None and state.locked

    def queue_depth(self, conversation_id: ConversationId) -> int:
        state = self._queues.get(conversation_id)
        return len(state.queue) if state is not None else 0
