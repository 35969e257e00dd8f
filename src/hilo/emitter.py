"""Deliver assistant replies back through the transport."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import anyio

from .echo import SelfEchoRegistry
from .logging import get_logger, preview
from .model import ConversationId, MessageId, ReplyContext
from .splitting import ChunkBudget, clean_response, split_response
from .transport import Presence, Transport

logger = get_logger(__name__)


class ResponseEmitter:
    """Sends replies chunk by chunk and records their ids as self-echoes."""

    def __init__(
        self,
        *,
        transport: Transport,
        echoes: SelfEchoRegistry,
        budget: ChunkBudget | None = None,
        chunk_delay_s: float = 0.15,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._transport = transport
        self._echoes = echoes
        self._budget = budget or ChunkBudget()
        self._chunk_delay_s = chunk_delay_s
        self._sleep = sleep

    async def emit(
        self,
        conversation_id: ConversationId,
        text: str,
        context: ReplyContext | None,
    ) -> list[MessageId]:
        """Send ``text`` as paced chunks; returns the ids that were sent.

        Send failures are logged and skipped; the remaining chunks still go out.
        """
        address = context.address if context is not None else conversation_id
        chunks = split_response(clean_response(text), self._budget)
        if not chunks:
            logger.warning("emit.empty_response", conversation_id=conversation_id)
            return []

        await self._presence(address, "composing")
        sent: list[MessageId] = []
        for index, chunk in enumerate(chunks):
            if index:
                await self._sleep(self._chunk_delay_s)
            message_id = await self._send(conversation_id, address, chunk)
            if message_id is not None:
                sent.append(message_id)
        await self._presence(address, "paused")

        logger.info(
            "emit.completed",
            conversation_id=conversation_id,
            chunks=len(chunks),
            sent=len(sent),
        )
        return sent

    async def send_notice(
        self, conversation_id: ConversationId, text: str, context: ReplyContext | None
    ) -> MessageId | None:
        """Send a single bridge-authored message (e.g. the busy notice)."""
        address = context.address if context is not None else conversation_id
        return await self._send(conversation_id, address, text)

    async def _send(
        self, conversation_id: ConversationId, address: str, text: str
    ) -> MessageId | None:
        try:
            message_id = await self._transport.send(address=address, text=text)
        except Exception as exc:
            logger.error(
                "emit.send_failed",
                conversation_id=conversation_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        self._echoes.record(message_id)
        logger.debug(
            "emit.sent",
            conversation_id=conversation_id,
            message_id=message_id,
            text=preview(text, 50),
        )
        return message_id

    async def _presence(self, address: str, presence: Presence) -> None:
        try:
            await self._transport.set_presence(address=address, presence=presence)
        except Exception as exc:
            logger.warning(
                "emit.presence_failed",
                address=address,
                presence=presence,
                error=str(exc),
            )
