"""Operator hand-off notes.

When the assistant tells a user that a human will follow up, the next
message from that user is likely a reply to whatever the operator sent
manually. The next burst the assistant answers is prefixed with a note
saying so. The mark stays until a reply comes back, so a burst that is
dropped after retries does not lose it.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterable, Mapping

from .logging import get_logger
from .model import ConversationId

logger = get_logger(__name__)

HANDOFF_NOTE = (
    "[Nota para el Asistente: El usuario podría estar respondiendo a "
    'información proporcionada manualmente por un encargado sobre "{topic}". '
    "Por favor, ten esto en cuenta al generar tu respuesta.]\n\n"
)


class HandoffTracker:
    def __init__(
        self,
        *,
        phrases: Iterable[str],
        topics: Mapping[str, str],
        default_topic: str,
        max_entries: int = 10_000,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._phrases = tuple(p.lower() for p in phrases if p.strip())
        self._topics = dict(topics)
        self._default_topic = default_topic
        self._max_entries = max_entries
        self._awaiting: OrderedDict[ConversationId, str] = OrderedDict()

    def infer_topic(self, user_text: str) -> str:
        lowered = user_text.lower()
        topic = self._default_topic
        # Later keywords win, so more specific entries go last in config.
        for keyword, name in self._topics.items():
            if keyword.lower() in lowered:
                topic = name
        return topic

    def observe_reply(
        self, conversation_id: ConversationId, *, user_text: str, reply: str
    ) -> str | None:
        """Mark the conversation if ``reply`` hands off to an operator."""
        lowered = reply.lower()
        if not any(phrase in lowered for phrase in self._phrases):
            return None
        topic = self.infer_topic(user_text)
        self._awaiting.pop(conversation_id, None)
        self._awaiting[conversation_id] = topic
        while len(self._awaiting) > self._max_entries:
            oldest, _ = self._awaiting.popitem(last=False)
            logger.info("handoff.evicted", conversation_id=oldest)
        logger.info("handoff.awaiting_operator", conversation_id=conversation_id, topic=topic)
        return topic

    def apply_note(self, conversation_id: ConversationId, text: str) -> str:
        """Prefix the hand-off note while the conversation is marked."""
        topic = self._awaiting.get(conversation_id)
        if topic is None:
            return text
        logger.info("handoff.note_added", conversation_id=conversation_id, topic=topic)
        return HANDOFF_NOTE.format(topic=topic) + text

    def clear(self, conversation_id: ConversationId) -> bool:
        """Drop the mark once the assistant has answered a noted burst."""
        return self._awaiting.pop(conversation_id, None) is not None

    def is_awaiting(self, conversation_id: ConversationId) -> bool:
        return conversation_id in self._awaiting

    def __len__(self) -> int:
        return len(self._awaiting)
