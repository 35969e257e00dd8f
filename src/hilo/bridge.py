"""Wire the transport, the aggregation paths and the dispatcher together."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import anyio
from anyio.abc import TaskGroup

from .aggregator import InboundAggregator
from .backend import AssistantBackend
from .bindings import ThreadBindingRegistry
from .correlator import ManualMessageCorrelator
from .dispatcher import ConversationDispatcher
from .echo import SelfEchoRegistry
from .emitter import ResponseEmitter
from .handoff import HandoffTracker
from .locks import ConversationLocks
from .logging import get_logger
from .model import ReplyContext
from .settings import HiloSettings
from .splitting import ChunkBudget
from .transport import Transport, TransportEvent, is_conversation_target

logger = get_logger(__name__)


@dataclass(frozen=True)
class BridgeConfig:
    """Collaborators and settings for one bridge instance."""

    transport: Transport
    backend: AssistantBackend
    settings: HiloSettings


class Bridge:
    """Routes transport events to the inbound or the manual-message path."""

    def __init__(
        self,
        cfg: BridgeConfig,
        task_group: TaskGroup,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        settings = cfg.settings
        timing = settings.timing

        self.bindings = ThreadBindingRegistry(
            max_entries=settings.bindings.max_entries,
            ttl_s=settings.bindings.ttl_s,
            clock=clock,
        )
        self.echoes = SelfEchoRegistry(ttl_s=timing.self_echo_ttl_s, clock=clock)
        self.locks = ConversationLocks()
        self.handoff = (
            HandoffTracker(
                phrases=settings.handoff.phrases,
                topics=settings.handoff.topics,
                default_topic=settings.handoff.default_topic,
                max_entries=settings.handoff.max_entries,
            )
            if settings.handoff.enabled
            else None
        )
        self.emitter = ResponseEmitter(
            transport=cfg.transport,
            echoes=self.echoes,
            budget=ChunkBudget(
                max_chars=settings.emitter.max_chunk_chars,
                max_lines=settings.emitter.max_chunk_lines,
                chars_per_line=settings.emitter.chars_per_line,
            ),
            chunk_delay_s=timing.chunk_delay_s,
            sleep=sleep,
        )
        self.dispatcher = ConversationDispatcher(
            task_group=task_group,
            backend=cfg.backend,
            bindings=self.bindings,
            emitter=self.emitter,
            locks=self.locks,
            handoff=self.handoff,
            max_queue_size=settings.dispatch.max_queue_size,
            max_attempts=settings.dispatch.max_attempts,
            cooldown_s=timing.dispatch_cooldown_s,
            request_timeout_s=timing.request_timeout_s,
            clock=clock,
            sleep=sleep,
        )
        self.aggregator = InboundAggregator(
            task_group=task_group,
            dispatcher=self.dispatcher,
            emitter=self.emitter,
            window_s=timing.debounce_window_s,
            busy_notice=settings.dispatch.busy_notice,
            clock=clock,
        )
        self.correlator = ManualMessageCorrelator(
            task_group=task_group,
            backend=cfg.backend,
            bindings=self.bindings,
            echoes=self.echoes,
            locks=self.locks,
            window_s=timing.manual_debounce_window_s,
            role=settings.manual.role,
            annotation=settings.manual.annotation,
            clock=clock,
        )

    async def handle_event(self, event: TransportEvent) -> None:
        if event.from_self:
            await self.correlator.handle_outgoing(event)
            return
        if not is_conversation_target(event.address):
            logger.debug("bridge.skip_target", address=event.address)
            return
        if not event.text or not event.text.strip():
            logger.debug("bridge.skip_empty", message_id=event.message_id)
            return
        await self.aggregator.on_inbound_message(
            event.conversation_id,
            event.text,
            ReplyContext(address=event.address, message_id=event.message_id),
        )

    async def shutdown(self) -> None:
        """Flush buffered bursts and wait for every queue to drain."""
        flushed = await self.aggregator.flush_all()
        flushed += await self.correlator.flush_all()
        if flushed:
            logger.info("bridge.flushed_on_shutdown", buffers=flushed)
        await self.dispatcher.join()


async def run_bridge(
    cfg: BridgeConfig,
    events: AsyncIterator[TransportEvent],
) -> None:
    """Process ``events`` until the iterator ends, then drain and return."""
    async with anyio.create_task_group() as tg:
        bridge = Bridge(cfg, tg)
        logger.info(
            "bridge.started",
            debounce_window_s=cfg.settings.timing.debounce_window_s,
            cooldown_s=cfg.settings.timing.dispatch_cooldown_s,
            max_queue_size=cfg.settings.dispatch.max_queue_size,
        )
        async for event in events:
            try:
                await bridge.handle_event(event)
            except Exception as exc:
                logger.exception(
                    "bridge.event_failed",
                    message_id=event.message_id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
        await bridge.shutdown()
        tg.cancel_scope.cancel()
    logger.info("bridge.stopped")
