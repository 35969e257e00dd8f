"""Per-conversation mutual exclusion.

Every call into the assistant backend for a conversation (automated runs and
operator-message injection alike) happens while holding that conversation's
lock. Locks are created on demand and dropped when nobody holds or awaits
them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import anyio

from .model import ConversationId


@dataclass(slots=True)
class _LockEntry:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class ConversationLocks:
    def __init__(self) -> None:
        self._entries: dict[ConversationId, _LockEntry] = {}

    @asynccontextmanager
    async def hold(self, conversation_id: ConversationId) -> AsyncIterator[None]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = _LockEntry()
            self._entries[conversation_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(conversation_id) is entry:
                del self._entries[conversation_id]

    def locked(self, conversation_id: ConversationId) -> bool:
        entry = self._entries.get(conversation_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
