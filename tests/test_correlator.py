"""Tests for the manual-message correlator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import anyio
import pytest
from anyio.abc import TaskGroup

from fakes import FakeBackend
from hilo.backend import BackendError, ErrorKind
from hilo.bindings import ThreadBindingRegistry
from hilo.correlator import ManualMessageCorrelator
from hilo.echo import SelfEchoRegistry
from hilo.locks import ConversationLocks
from hilo.model import ConversationId, MessageId, ThreadRef
from hilo.transport import TransportEvent

A = ConversationId("573001")
ADDRESS = "573001@s.whatsapp.net"
WINDOW = 0.05


@dataclass
class Harness:
    correlator: ManualMessageCorrelator
    backend: FakeBackend
    bindings: ThreadBindingRegistry
    echoes: SelfEchoRegistry
    locks: ConversationLocks


def _harness(tg: TaskGroup, **kwargs: Any) -> Harness:
    backend = FakeBackend()
    bindings = ThreadBindingRegistry()
    echoes = SelfEchoRegistry()
    locks = ConversationLocks()
    kwargs.setdefault("annotation", "[Manual]")
    correlator = ManualMessageCorrelator(
        task_group=tg,
        backend=backend,
        bindings=bindings,
        echoes=echoes,
        locks=locks,
        window_s=WINDOW,
        **kwargs,
    )
    return Harness(correlator, backend, bindings, echoes, locks)


def _outgoing(message_id: str, text: str | None, address: str = ADDRESS) -> TransportEvent:
    return TransportEvent(
        address=address,
        from_self=True,
        text=text,
        message_id=MessageId(message_id),
    )


class TestClassification:
    """Tests for handle_outgoing outcomes."""

    @pytest.mark.anyio
    async def test_bridge_message_is_self_echo(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            h.echoes.record(MessageId("out-1"))
            outcome = await h.correlator.handle_outgoing(_outgoing("out-1", "respuesta"))
            await anyio.sleep(WINDOW * 3)

        assert outcome == "self_echo"
        assert h.backend.appends == []

    @pytest.mark.anyio
    async def test_inbound_events_are_ignored(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            event = TransportEvent(
                address=ADDRESS, from_self=False, text="hola", message_id=MessageId("in-1")
            )
            assert await h.correlator.handle_outgoing(event) == "ignored"

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        ("text", "address"),
        [(None, ADDRESS), ("   ", ADDRESS), ("hola a todos", "status@broadcast")],
    )
    async def test_empty_and_broadcast_are_ignored(
        self, text: str | None, address: str
    ) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            outcome = await h.correlator.handle_outgoing(_outgoing("op-1", text, address))

        assert outcome == "ignored"
        assert h.backend.appends == []

    @pytest.mark.anyio
    async def test_unbound_conversation_is_not_synced(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            outcome = await h.correlator.handle_outgoing(_outgoing("op-1", "Le confirmo"))
            await anyio.sleep(WINDOW * 3)

        assert outcome == "unbound"
        assert h.backend.appends == []
        assert h.backend.asks == []


class TestSync:
    """Tests for writing operator messages into the thread."""

    @pytest.mark.anyio
    async def test_burst_is_appended_with_annotation(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            assert await h.correlator.handle_outgoing(_outgoing("op-1", "Primero")) == "buffered"
            assert await h.correlator.handle_outgoing(_outgoing("op-2", "Segundo")) == "buffered"
            await anyio.sleep(WINDOW * 4)

        assert h.backend.appends == [
            (ThreadRef("thread_a"), "assistant", "[Manual]\n\nPrimero\n\nSegundo")
        ]

    @pytest.mark.anyio
    async def test_role_and_annotation_are_configurable(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg, role="user", annotation="")
            h.bindings.set(A, ThreadRef("thread_a"))
            await h.correlator.handle_outgoing(_outgoing("op-1", "Hola"))
            await anyio.sleep(WINDOW * 4)

        assert h.backend.appends == [(ThreadRef("thread_a"), "user", "Hola")]

    @pytest.mark.anyio
    async def test_echo_recorded_after_buffering_is_dropped(self) -> None:
        """The echo of a bridge send can beat the send call's return."""
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            await h.correlator.handle_outgoing(_outgoing("out-7", "respuesta del bot"))
            await h.correlator.handle_outgoing(_outgoing("op-8", "Mensaje del encargado"))
            h.echoes.record(MessageId("out-7"))
            await anyio.sleep(WINDOW * 4)

        assert h.backend.appends == [
            (ThreadRef("thread_a"), "assistant", "[Manual]\n\nMensaje del encargado")
        ]
        assert MessageId("out-7") not in h.echoes

    @pytest.mark.anyio
    async def test_only_late_echoes_means_no_append(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            await h.correlator.handle_outgoing(_outgoing("out-1", "bot"))
            h.echoes.record(MessageId("out-1"))
            await anyio.sleep(WINDOW * 4)

        assert h.backend.appends == []

    @pytest.mark.anyio
    async def test_waits_for_conversation_lock(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            async with h.locks.hold(A):
                await h.correlator.handle_outgoing(_outgoing("op-1", "Hola"))
                await anyio.sleep(WINDOW * 4)
                assert h.backend.appends == []
            await anyio.sleep(WINDOW)

        assert len(h.backend.appends) == 1

    @pytest.mark.anyio
    async def test_binding_expired_before_flush(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            await h.correlator.handle_outgoing(_outgoing("op-1", "Hola"))
            h.bindings.forget(A)
            await anyio.sleep(WINDOW * 4)

        assert h.backend.appends == []

    @pytest.mark.anyio
    async def test_backend_failure_is_contained(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.bindings.set(A, ThreadRef("thread_a"))
            h.backend.errors = [BackendError(ErrorKind.CONCURRENT_RUN_ACTIVE, "busy")]
            await h.correlator.handle_outgoing(_outgoing("op-1", "Uno"))
            await anyio.sleep(WINDOW * 4)
            await h.correlator.handle_outgoing(_outgoing("op-2", "Dos"))
            await anyio.sleep(WINDOW * 4)

        assert h.backend.appends == [(ThreadRef("thread_a"), "assistant", "[Manual]\n\nDos")]

    @pytest.mark.anyio
    async def test_flush_all_syncs_immediately(self) -> None:
        async with anyio.create_task_group() as tg:
            h = _harness(tg)
            h.correlator.debouncer.window_s = 30.0
            h.bindings.set(A, ThreadRef("thread_a"))
            await h.correlator.handle_outgoing(_outgoing("op-1", "Hola"))
            with anyio.fail_after(1):
                assert await h.correlator.flush_all() == 1

        assert len(h.backend.appends) == 1
