from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Dict, List, Optional

from ..domain.models import ROLES, Conversation, Turn


logger = logging.getLogger("patchbridge.conversations")


class ConversationStore:
    """Thread-safe in-memory conversation history keyed by conversation id.

    History is capped at ``max_history`` turns; the oldest turns are dropped
    first. Nothing survives a process restart.
    """

    def __init__(self, max_history: int = 10) -> None:
        if max_history < 1:
            raise ValueError("max_history must be at least 1")
        self.max_history = max_history
        self._data: Dict[str, Conversation] = {}
        self._lock = RLock()
        logger.info("Conversation store ready (max history %d)", max_history)

    def _copy(self, conv: Conversation) -> Conversation:
        return Conversation(
            conversation_id=conv.conversation_id,
            history=[Turn(t.role, t.content) for t in conv.history],
            continuation_token=conv.continuation_token,
        )

    def _get_or_create_locked(self, conversation_id: str) -> Conversation:
        conv = self._data.get(conversation_id)
        if conv is None:
            logger.debug("Creating conversation %s", conversation_id)
            conv = Conversation(conversation_id=conversation_id)
            self._data[conversation_id] = conv
        return conv

    def get_or_create(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self._copy(self._get_or_create_locked(conversation_id))

    def append(self, conversation_id: str, role: str, content: str) -> None:
        if role not in ROLES:
            raise ValueError(f"Unsupported role: {role}")
        with self._lock:
            conv = self._get_or_create_locked(conversation_id)
            conv.history.append(Turn(role=role, content=content))
            overflow = len(conv.history) - self.max_history
            if overflow > 0:
                del conv.history[:overflow]
                logger.debug("Trimmed conversation %s to %d turns", conversation_id, len(conv.history))

    def history(self, conversation_id: str) -> List[Turn]:
        with self._lock:
            conv = self._data.get(conversation_id)
            if conv is None:
                return []
            return [Turn(t.role, t.content) for t in conv.history]

    def get_continuation_token(self, conversation_id: str) -> Optional[Any]:
        with self._lock:
            conv = self._data.get(conversation_id)
            return conv.continuation_token if conv else None

    def set_continuation_token(self, conversation_id: str, token: Optional[Any]) -> None:
        with self._lock:
            self._get_or_create_locked(conversation_id).continuation_token = token

    def reset(self, conversation_id: str) -> None:
        with self._lock:
            conv = self._get_or_create_locked(conversation_id)
            conv.history.clear()
            conv.continuation_token = None
        logger.info("Conversation %s reset", conversation_id)

    def count(self) -> int:
        with self._lock:
            return len(self._data)
