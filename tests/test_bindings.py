"""Tests for hilo.bindings module."""

from __future__ import annotations

import anyio
import pytest

from hilo.bindings import ThreadBindingRegistry
from hilo.model import ConversationId, ThreadRef


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestThreadBindingRegistry:
    """Tests for ThreadBindingRegistry."""

    def test_unknown_conversation_is_unbound(self) -> None:
        registry = ThreadBindingRegistry()
        assert registry.get(ConversationId("573001")) is None
        assert "573001" not in registry

    def test_set_then_get(self) -> None:
        registry = ThreadBindingRegistry()
        registry.set(ConversationId("573001"), ThreadRef("thread_a"))
        assert registry.get(ConversationId("573001")) == "thread_a"
        assert "573001" in registry
        assert len(registry) == 1

    def test_rebinding_replaces_thread(self) -> None:
        registry = ThreadBindingRegistry()
        registry.set(ConversationId("573001"), ThreadRef("thread_a"))
        registry.set(ConversationId("573001"), ThreadRef("thread_b"))
        assert registry.get(ConversationId("573001")) == "thread_b"
        assert len(registry) == 1

    def test_set_records_bound_time(self) -> None:
        clock = FakeClock(50.0)
        registry = ThreadBindingRegistry(clock=clock)
        registry.set(ConversationId("573001"), ThreadRef("thread_a"))
        binding = registry.binding(ConversationId("573001"))
        assert binding is not None
        assert binding.last_bound_at == 50.0
        assert binding.conversation_id == "573001"

    def test_idle_binding_expires(self) -> None:
        clock = FakeClock()
        registry = ThreadBindingRegistry(ttl_s=60.0, clock=clock)
        registry.set(ConversationId("573001"), ThreadRef("thread_a"))

        clock.now += 59.0
        assert registry.get(ConversationId("573001")) == "thread_a"

        clock.now += 1.0
        assert registry.get(ConversationId("573001")) is None
        assert len(registry) == 0

    def test_rebinding_refreshes_ttl(self) -> None:
        clock = FakeClock()
        registry = ThreadBindingRegistry(ttl_s=60.0, clock=clock)
        registry.set(ConversationId("573001"), ThreadRef("thread_a"))
        clock.now += 50.0
        registry.set(ConversationId("573001"), ThreadRef("thread_a"))
        clock.now += 50.0
        assert registry.get(ConversationId("573001")) == "thread_a"

    def test_least_recently_used_is_evicted(self) -> None:
        registry = ThreadBindingRegistry(max_entries=2)
        registry.set(ConversationId("a"), ThreadRef("t1"))
        registry.set(ConversationId("b"), ThreadRef("t2"))
        # Reading "a" makes "b" the oldest entry.
        assert registry.get(ConversationId("a")) == "t1"
        registry.set(ConversationId("c"), ThreadRef("t3"))

        assert registry.get(ConversationId("b")) is None
        assert registry.get(ConversationId("a")) == "t1"
        assert registry.get(ConversationId("c")) == "t3"
        assert len(registry) == 2

    def test_forget(self) -> None:
        registry = ThreadBindingRegistry()
        registry.set(ConversationId("a"), ThreadRef("t1"))
        assert registry.forget(ConversationId("a")) is True
        assert registry.forget(ConversationId("a")) is False
        assert registry.get(ConversationId("a")) is None

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            ThreadBindingRegistry(max_entries=0)

    @pytest.mark.anyio
    async def test_concurrent_tasks_keep_bound(self) -> None:
        registry = ThreadBindingRegistry(max_entries=5)

        async def bind(n: int) -> None:
            cid = ConversationId(f"57300{n}")
            await anyio.sleep(0)
            registry.set(cid, ThreadRef(f"thread_{n}"))
            await anyio.sleep(0)
            registry.get(cid)

        async with anyio.create_task_group() as tg:
            for n in range(20):
                tg.start_soon(bind, n)

        assert len(registry) == 5
