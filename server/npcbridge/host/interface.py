from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Hashable
from typing import Protocol

from npcbridge.bridge.queues import LocationKey

CHAT_SAY = "say"
LANG_UNIVERSAL = "universal"
EMOTE_ONESHOT_TALK = "talk"


class HostCreature(Protocol):
    guid: Hashable
    name: str
    location: LocationKey

    def is_alive(self) -> bool: ...

    def say(self, text: str, language: str = LANG_UNIVERSAL) -> None: ...

    def play_emote(self, emote: str) -> None: ...

    def schedule_event(self, delay_ms: int, action: Callable[[], None]) -> None: ...


class HostPlayer(Protocol):
    guid: Hashable
    name: str

    def selected_creature(self) -> HostCreature | None: ...

    def send_system_message(self, text: str) -> None: ...


class HostLocation(Protocol):
    def get_creature(self, guid: Hashable) -> HostCreature | None: ...


class HostWorld(Protocol):
    def find_player(self, guid: Hashable) -> HostPlayer | None: ...

    def find_location(self, key: LocationKey) -> HostLocation | None: ...


class ChatHook(ABC):
    """Entry points the host invokes on its simulation thread."""

    @abstractmethod
    def on_chat_message(self, player: HostPlayer, chat_type: str, message: str) -> object:
        raise NotImplementedError

    @abstractmethod
    def on_tick(self, diff_ms: int) -> None:
        raise NotImplementedError
