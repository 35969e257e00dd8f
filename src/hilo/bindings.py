"""Conversation -> assistant thread bindings.

Bindings are kept in memory, bounded by an LRU limit and expired after an
idle TTL. Every read or write of a binding refreshes its position in the
LRU order; only writes refresh ``last_bound_at``. Used from a
single event loop; no method awaits.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable

from .logging import get_logger
from .model import ConversationId, ThreadBinding, ThreadRef

logger = get_logger(__name__)


class ThreadBindingRegistry:
    def __init__(
        self,
        *,
        max_entries: int = 10_000,
        ttl_s: float = 30 * 24 * 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._ttl_s = ttl_s
        self._clock = clock
        self._bindings: OrderedDict[ConversationId, ThreadBinding] = OrderedDict()

    def get(self, conversation_id: ConversationId) -> ThreadRef | None:
        binding = self.binding(conversation_id)
        return binding.thread_ref if binding is not None else None

    def binding(self, conversation_id: ConversationId) -> ThreadBinding | None:
        binding = self._bindings.get(conversation_id)
        if binding is None:
            return None
        if self._clock() - binding.last_bound_at >= self._ttl_s:
            del self._bindings[conversation_id]
            logger.info(
                "bindings.expired",
                conversation_id=conversation_id,
                thread_ref=binding.thread_ref,
            )
            return None
        self._bindings.move_to_end(conversation_id)
        return binding

    def set(self, conversation_id: ConversationId, thread_ref: ThreadRef) -> None:
        previous = self._bindings.pop(conversation_id, None)
        self._bindings[conversation_id] = ThreadBinding(
            conversation_id=conversation_id,
            thread_ref=thread_ref,
            last_bound_at=self._clock(),
        )
        if previous is None or previous.thread_ref != thread_ref:
            logger.info(
                "bindings.bound",
                conversation_id=conversation_id,
                thread_ref=thread_ref,
                replaced=previous.thread_ref if previous else None,
            )
        while len(self._bindings) > self._max_entries:
            oldest, _ = self._bindings.popitem(last=False)
            logger.info("bindings.evicted", conversation_id=oldest)

    def forget(self, conversation_id: ConversationId) -> bool:
        return self._bindings.pop(conversation_id, None) is not None

    def __len__(self) -> int:
        return len(self._bindings)

    def __contains__(self, conversation_id: object) -> bool:
        return isinstance(conversation_id, str) and (
            self.get(ConversationId(conversation_id)) is not None
        )
