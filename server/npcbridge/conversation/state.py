from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from typing import TypeAlias

LOGGER = logging.getLogger("npcbridge.conversation.state")

EntityId: TypeAlias = Hashable
TURN_MARKER = "\nPlayer:"


def trim_history(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    kept = text[-max_chars:]
    # Prefer to start the window on a whole turn.
    boundary = kept.find(TURN_MARKER)
    if boundary > 0:
        kept = kept[boundary:]
    return kept


class ConversationState:
    """Dialogue history per entity plus the single active conversation target.

    Switching the target evicts the previous target's history. Appends from
    background workers are keyed by the entity the request was about and never
    change the target.
    """

    def __init__(self, history_max_chars: int = 0) -> None:
        self.history_max_chars = max(0, int(history_max_chars))
        self._lock = threading.Lock()
        self._histories: dict[EntityId, str] = {}
        self._target: EntityId | None = None

    @property
    def current_target(self) -> EntityId | None:
        with self._lock:
            return self._target

    def set_target(self, entity_id: EntityId) -> bool:
        with self._lock:
            if self._target == entity_id:
                return False
            if self._target is not None:
                self._histories.pop(self._target, None)
            previous = self._target
            self._target = entity_id
        LOGGER.debug("Conversation target %r -> %r", previous, entity_id)
        return True

    def clear_target(self) -> None:
        with self._lock:
            if self._target is not None:
                self._histories.pop(self._target, None)
            self._target = None

    def append_turn(self, entity_id: EntityId, text: str) -> str:
        with self._lock:
            updated = trim_history(self._histories.get(entity_id, "") + text, self.history_max_chars)
            self._histories[entity_id] = updated
            return updated

    def get_history(self, entity_id: EntityId) -> str:
        with self._lock:
            return self._histories.get(entity_id, "")

    def tracked_entities(self) -> list[EntityId]:
        with self._lock:
            return list(self._histories)

    def stats(self) -> dict[str, object]:
        with self._lock:
            return {
                "target": self._target,
                "histories": len(self._histories),
                "history_chars": sum(len(text) for text in self._histories.values()),
            }
