from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Deque, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class LocationKey:
    map_id: int
    instance_id: int


@dataclass(frozen=True)
class ConfigRequestItem:
    requester_id: Hashable


@dataclass(frozen=True)
class StatusReplyItem:
    requester_id: Hashable
    is_connected: bool


@dataclass(frozen=True)
class DialogueReplyItem:
    entity_id: Hashable
    location: LocationKey
    text: str


class ReplyQueue(Generic[T]):
    """FIFO of reply items guarded by its own lock."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._items: Deque[T] = deque()

    def push(self, item: T, *, while_locked: Callable[[], None] | None = None) -> None:
        with self._lock:
            self._items.append(item)
            if while_locked is not None:
                while_locked()

    def drain(self, limit: int | None = None) -> list[T]:
        with self._lock:
            if limit is None or limit >= len(self._items):
                drained = list(self._items)
                self._items.clear()
                return drained
            return [self._items.popleft() for _ in range(max(0, limit))]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __bool__(self) -> bool:
        return len(self) > 0


@dataclass
class ReplyQueues:
    config_requests: ReplyQueue[ConfigRequestItem]
    status_replies: ReplyQueue[StatusReplyItem]
    dialogue_replies: ReplyQueue[DialogueReplyItem]

    @classmethod
    def create(cls) -> "ReplyQueues":
        return cls(
            config_requests=ReplyQueue("config"),
            status_replies=ReplyQueue("status"),
            dialogue_replies=ReplyQueue("dialogue"),
        )

    def depths(self) -> dict[str, int]:
        return {
            "config": len(self.config_requests),
            "status": len(self.status_replies),
            "dialogue": len(self.dialogue_replies),
        }
