"""Console transport for trying the bridge locally.

Each stdin line is an inbound message from one conversation. Lines starting
with ``>>`` are treated as typed by a human operator on the account, and a
line holding a JSON object is replayed as a raw account message payload. Every
message the bridge sends is printed and, like a real account feed, reported
back as an outgoing event.
"""

from __future__ import annotations

import itertools
import json
import math
import sys
import time
from collections.abc import AsyncIterator
from typing import TextIO

import anyio

from ..logging import get_logger
from ..model import MessageId
from ..transport import Presence, TransportEvent, event_from_payload

logger = get_logger(__name__)

OPERATOR_PREFIX = ">>"


class ConsoleTransport:
    def __init__(
        self,
        *,
        address: str,
        output: TextIO | None = None,
    ) -> None:
        self.address = address
        self._output = output or sys.stdout
        self._ids = itertools.count(1)
        self._send_events, self._receive_events = anyio.create_memory_object_stream[
            TransportEvent
        ](max_buffer_size=math.inf)

    def _next_id(self, prefix: str) -> MessageId:
        return MessageId(f"{prefix}-{next(self._ids)}")

    def _publish(self, event: TransportEvent) -> None:
        try:
            self._send_events.send_nowait(event)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug("console.feed_closed", message_id=event.message_id)

    async def send(self, *, address: str, text: str) -> MessageId:
        message_id = self._next_id("out")
        print(f"[bot -> {address}] {text}", file=self._output, flush=True)
        self._publish(
            TransportEvent(
                address=address,
                from_self=True,
                text=text,
                message_id=message_id,
                timestamp=time.time(),
            )
        )
        return message_id

    async def set_presence(self, *, address: str, presence: Presence) -> None:
        if presence == "composing":
            print(f"[{address} ...]", file=self._output, flush=True)

    def feed_line(self, line: str) -> None:
        line = line.rstrip("\n")
        if not line.strip():
            return
        if line.lstrip().startswith("{"):
            self._feed_payload(line)
            return
        from_self = line.startswith(OPERATOR_PREFIX)
        text = line[len(OPERATOR_PREFIX) :].strip() if from_self else line
        self._publish(
            TransportEvent(
                address=self.address,
                from_self=from_self,
                text=text,
                message_id=self._next_id("op" if from_self else "in"),
                timestamp=time.time(),
            )
        )

    def _feed_payload(self, line: str) -> None:
        try:
            payload = json.loads(line)
        except ValueError as exc:
            logger.warning("console.bad_payload", error=str(exc))
            return
        event = event_from_payload(payload) if isinstance(payload, dict) else None
        if event is None:
            logger.warning("console.bad_payload", error="missing key.remoteJid or key.id")
            return
        self._publish(event)

    async def read_input(self, stream: TextIO | None = None) -> None:
        """Feed stdin lines until EOF, then close the event feed."""
        source = anyio.wrap_file(stream or sys.stdin)
        try:
            async for line in source:
                self.feed_line(line)
        finally:
            await self._send_events.aclose()

    async def events(self) -> AsyncIterator[TransportEvent]:
        async with self._receive_events:
            async for event in self._receive_events:
                yield event
