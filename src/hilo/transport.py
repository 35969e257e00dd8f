"""Transport abstraction for message delivery.

The bridge never talks to a messaging network directly. A transport feeds
it ``TransportEvent`` values for every message seen on the account (both
directions) and exposes send and presence primitives.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from .model import ConversationId, MessageId

Presence = Literal["composing", "paused"]

BROADCAST_SUFFIX = "@broadcast"


class TransportError(RuntimeError):
    """A send or presence call failed."""


@dataclass(frozen=True, slots=True)
class TransportEvent:
    """A message observed on the account.

    ``from_self`` is true for messages sent from the account itself, whether
    by this bridge or by a human operator on another device.
    """

    address: str
    from_self: bool
    text: str | None
    message_id: MessageId
    timestamp: float = 0.0
    kind: str = "message"
    raw: Any | None = field(default=None, compare=False, hash=False)

    @property
    def conversation_id(self) -> ConversationId:
        return normalize_conversation_id(self.address)


class Transport(Protocol):
    """Protocol for chat transports (WhatsApp, console, ...)."""

    async def send(self, *, address: str, text: str) -> MessageId:
        """Send ``text`` to ``address`` and return the new message id.

        Raises:
            TransportError: If the message could not be sent.
        """
        ...

    async def set_presence(self, *, address: str, presence: Presence) -> None:
        """Best-effort presence update; callers log and ignore failures."""
        ...


def normalize_conversation_id(address: str) -> ConversationId:
    """Reduce a transport address to its short canonical form.

    ``5731234567@s.whatsapp.net`` -> ``5731234567``. Device suffixes
    (``5731234567:12@s.whatsapp.net``) are dropped as well.
    """
    local = address.strip().split("@", 1)[0]
    local = local.split(":", 1)[0]
    return ConversationId(local or address.strip())


def is_conversation_target(address: str) -> bool:
    """False for broadcast and status channels."""
    address = address.strip()
    return bool(address) and not address.endswith(BROADCAST_SUFFIX)


def extract_text(payload: dict[str, Any] | None) -> str | None:
    """Pull the text body out of a nested message payload.

    Handles plain conversation text, extended text, image/video captions and
    the same shapes wrapped in an ephemeral message. Returns None when there
    is no text.
    """
    if not payload:
        return None
    message = payload.get("message")
    if not isinstance(message, dict):
        return None
    return _text_from_message(message) or _text_from_message(
        (message.get("ephemeralMessage") or {}).get("message") or {}
    )


def event_from_payload(payload: dict[str, Any]) -> TransportEvent | None:
    """Build an event from a raw account message payload.

    The payload carries ``key.remoteJid``, ``key.fromMe`` and ``key.id`` plus
    the nested ``message``. Returns None when the address or id is missing.
    """
    key = payload.get("key")
    if not isinstance(key, dict):
        return None
    address = key.get("remoteJid")
    message_id = key.get("id")
    if not address or not message_id:
        return None
    try:
        timestamp = float(payload.get("messageTimestamp") or 0)
    except (TypeError, ValueError):
        timestamp = 0.0
    return TransportEvent(
        address=str(address),
        from_self=bool(key.get("fromMe")),
        text=extract_text(payload),
        message_id=MessageId(str(message_id)),
        timestamp=timestamp,
        raw=payload,
    )


def _text_from_message(message: dict[str, Any]) -> str | None:
    text = message.get("conversation")
    if text:
        return text
    for key, field_name in (
        ("extendedTextMessage", "text"),
        ("imageMessage", "caption"),
        ("videoMessage", "caption"),
    ):
        inner = message.get(key)
        if isinstance(inner, dict) and inner.get(field_name):
            return inner[field_name]
    return None
