"""Registry of message ids the bridge itself sent.

The transport reports every outgoing message on the account, including the
bridge's own replies. Ids recorded here are recognised as self-echoes and
kept out of the manual-message path.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable

from .model import MessageId


class SelfEchoRegistry:
    def __init__(
        self,
        *,
        ttl_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._clock = clock
        # Insertion order equals expiry order since the TTL is fixed.
        self._expires: OrderedDict[MessageId, float] = OrderedDict()

    def record(self, message_id: MessageId) -> None:
        self._evict_expired()
        self._expires.pop(message_id, None)
        self._expires[message_id] = self._clock() + self._ttl_s

    def consume(self, message_id: MessageId) -> bool:
        """Return True (and forget the id) if it was sent by the bridge."""
        self._evict_expired()
        return self._expires.pop(message_id, None) is not None

    def __contains__(self, message_id: object) -> bool:
        self._evict_expired()
        return message_id in self._expires

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._expires)

    def _evict_expired(self) -> None:
        now = self._clock()
        while self._expires:
            message_id, expires_at = next(iter(self._expires.items()))
            if expires_at > now:
                break
            del self._expires[message_id]
