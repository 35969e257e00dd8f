"""Tests for the per-conversation ConversationDebouncer."""

from __future__ import annotations

import anyio
import pytest

from hilo.debounce import ConversationDebouncer
from hilo.model import ConversationId, MessageId, PendingBuffer, ReplyContext

A = ConversationId("573001")
B = ConversationId("573002")


class _Collector:
    def __init__(self) -> None:
        self.buffers: list[PendingBuffer] = []

    async def __call__(self, buffer: PendingBuffer) -> None:
        self.buffers.append(buffer)


class TestConversationDebouncer:
    """Tests for quiet-period batching."""

    @pytest.mark.anyio
    async def test_burst_is_flushed_once(self) -> None:
        """Messages inside the window become one buffer in arrival order."""
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=0.1, on_flush=collected
            )
            await debouncer.add(A, "Hola")
            await anyio.sleep(0.03)
            await debouncer.add(A, "Quiero info")
            assert debouncer.pending_count(A) == 2
            await anyio.sleep(0.25)

        assert len(collected.buffers) == 1
        assert collected.buffers[0].messages == ["Hola", "Quiero info"]
        assert collected.buffers[0].combined_text() == "Hola\n\nQuiero info"
        assert not debouncer.has_pending()

    @pytest.mark.anyio
    async def test_gap_longer_than_window_splits_bursts(self) -> None:
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=0.05, on_flush=collected
            )
            await debouncer.add(A, "uno")
            await anyio.sleep(0.15)
            await debouncer.add(A, "dos")
            await anyio.sleep(0.15)

        assert [b.messages for b in collected.buffers] == [["uno"], ["dos"]]

    @pytest.mark.anyio
    async def test_each_message_restarts_the_window(self) -> None:
        """The window is measured from the last message, not the first."""
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=0.2, on_flush=collected
            )
            for text in ("a", "b", "c", "d"):
                await debouncer.add(A, text)
                await anyio.sleep(0.05)
            # 0.2s since the first message, but only 0.05s since the last.
            assert collected.buffers == []
            await anyio.sleep(0.35)

        assert [b.messages for b in collected.buffers] == [["a", "b", "c", "d"]]

    @pytest.mark.anyio
    async def test_conversations_are_independent(self) -> None:
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=0.05, on_flush=collected
            )
            await debouncer.add(A, "from a")
            await debouncer.add(B, "from b")
            await anyio.sleep(0.15)

        by_conversation = {b.conversation_id: b.messages for b in collected.buffers}
        assert by_conversation == {A: ["from a"], B: ["from b"]}

    @pytest.mark.anyio
    async def test_last_context_and_ids_are_kept(self) -> None:
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=0.05, on_flush=collected
            )
            await debouncer.add(
                A, "one", ReplyContext(address="573001@s.whatsapp.net", message_id=MessageId("m1")),
                message_id=MessageId("m1"),
            )
            await debouncer.add(
                A, "two", ReplyContext(address="573001@s.whatsapp.net", message_id=MessageId("m2")),
                message_id=MessageId("m2"),
            )
            await anyio.sleep(0.15)

        buffer = collected.buffers[0]
        assert buffer.message_ids == ["m1", "m2"]
        assert buffer.last_context is not None
        assert buffer.last_context.message_id == "m2"

    @pytest.mark.anyio
    async def test_add_returns_buffered_count(self) -> None:
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=10.0, on_flush=collected
            )
            assert await debouncer.add(A, "1") == 1
            assert await debouncer.add(A, "2") == 2
            assert await debouncer.add(B, "x") == 1
            assert await debouncer.flush_all() == 2

        assert len(collected.buffers) == 2

    @pytest.mark.anyio
    async def test_flush_all_delivers_without_waiting(self) -> None:
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=30.0, on_flush=collected
            )
            await debouncer.add(A, "pending")
            with anyio.fail_after(1):
                await debouncer.flush_all()

        assert [b.messages for b in collected.buffers] == [["pending"]]
        assert not debouncer.has_pending(A)

    @pytest.mark.anyio
    async def test_flush_failure_does_not_stop_the_debouncer(self) -> None:
        delivered: list[list[str]] = []

        async def flaky(buffer: PendingBuffer) -> None:
            if buffer.messages == ["boom"]:
                raise RuntimeError("downstream exploded")
            delivered.append(buffer.messages)

        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(task_group=tg, window_s=0.03, on_flush=flaky)
            await debouncer.add(A, "boom")
            await anyio.sleep(0.1)
            await debouncer.add(A, "fine")
            await anyio.sleep(0.1)

        assert delivered == [["fine"]]

    @pytest.mark.anyio
    async def test_flush_all_waits_for_delivery_in_progress(self) -> None:
        """A burst whose window just closed is not lost by a concurrent flush."""
        gate = anyio.Event()
        delivered: list[list[str]] = []

        async def slow(buffer: PendingBuffer) -> None:
            await gate.wait()
            delivered.append(buffer.messages)

        finished = anyio.Event()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(task_group=tg, window_s=0.02, on_flush=slow)
            await debouncer.add(A, "justo a tiempo")
            with anyio.fail_after(1):
                while not debouncer.delivering:
                    await anyio.sleep(0.01)
            assert not debouncer.has_pending()

            async def shutdown() -> None:
                assert await debouncer.flush_all() == 0
                finished.set()

            tg.start_soon(shutdown)
            await anyio.sleep(0.05)
            assert not finished.is_set()

            gate.set()
            with anyio.fail_after(1):
                await finished.wait()

        assert delivered == [["justo a tiempo"]]
        assert debouncer.delivering == 0

    @pytest.mark.anyio
    async def test_join_returns_when_idle(self) -> None:
        collected = _Collector()
        async with anyio.create_task_group() as tg:
            debouncer = ConversationDebouncer(
                task_group=tg, window_s=10.0, on_flush=collected
            )
            await debouncer.add(A, "pendiente")
            with anyio.fail_after(1):
                await debouncer.join()
            assert debouncer.has_pending(A)
            tg.cancel_scope.cancel()
