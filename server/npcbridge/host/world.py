from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Deque

from npcbridge.bridge.queues import LocationKey
from npcbridge.host.interface import LANG_UNIVERSAL, ChatHook

LOGGER = logging.getLogger("npcbridge.host.world")

DEFAULT_LOCATION = LocationKey(map_id=0, instance_id=0)


@dataclass
class Vec3:
    x: float
    y: float = 0.0
    z: float = 0.0

    def to_dict(self) -> dict:
        return {"x": round(self.x, 2), "y": round(self.y, 2), "z": round(self.z, 2)}


@dataclass
class ScheduledEvent:
    due_ms: int
    action: Callable[[], None]


@dataclass
class Creature:
    guid: str
    name: str
    location: LocationKey
    pos: Vec3 = field(default_factory=lambda: Vec3(0.0))
    alive: bool = True
    last_say: str = ""
    last_emote: str = ""
    speech_log: list[dict] = field(default_factory=list)
    pending_events: list[ScheduledEvent] = field(default_factory=list)
    clock_ms: int = 0

    def is_alive(self) -> bool:
        return self.alive

    def say(self, text: str, language: str = LANG_UNIVERSAL) -> None:
        self.last_say = text
        self.speech_log.append({"text": text, "language": language, "at_ms": self.clock_ms})

    def play_emote(self, emote: str) -> None:
        self.last_emote = emote

    def schedule_event(self, delay_ms: int, action: Callable[[], None]) -> None:
        self.pending_events.append(ScheduledEvent(due_ms=self.clock_ms + max(0, delay_ms), action=action))

    def update_events(self, diff_ms: int) -> int:
        self.clock_ms += max(0, diff_ms)
        due = [event for event in self.pending_events if event.due_ms <= self.clock_ms]
        if not due:
            return 0
        self.pending_events = [event for event in self.pending_events if event.due_ms > self.clock_ms]
        for event in sorted(due, key=lambda item: item.due_ms):
            event.action()
        return len(due)

    def to_payload(self) -> dict:
        return {
            "guid": self.guid,
            "name": self.name,
            "map_id": self.location.map_id,
            "instance_id": self.location.instance_id,
            "pos": self.pos.to_dict(),
            "alive": self.alive,
            "last_say": self.last_say,
            "last_emote": self.last_emote,
            "pending_events": len(self.pending_events),
        }


@dataclass
class MapInstance:
    key: LocationKey
    creatures: dict[str, Creature] = field(default_factory=dict)

    def get_creature(self, guid: object) -> Creature | None:
        return self.creatures.get(guid)  # type: ignore[arg-type]


@dataclass
class Player:
    guid: str
    name: str
    location: LocationKey
    world: "StubWorld" = field(repr=False)
    target_guid: str | None = None
    system_messages: list[str] = field(default_factory=list)

    def selected_creature(self) -> Creature | None:
        if not self.target_guid:
            return None
        instance = self.world.find_location(self.location)
        if instance is None:
            return None
        return instance.get_creature(self.target_guid)

    def send_system_message(self, text: str) -> None:
        self.system_messages.append(text)

    def to_payload(self) -> dict:
        return {
            "guid": self.guid,
            "name": self.name,
            "map_id": self.location.map_id,
            "instance_id": self.location.instance_id,
            "target_guid": self.target_guid,
            "system_messages": len(self.system_messages),
        }


class StubWorld:
    """In-memory single-threaded host world used to drive the bridge."""

    def __init__(self, history_limit: int = 300, seed: bool = True) -> None:
        self.instances: dict[LocationKey, MapInstance] = {}
        self.players: dict[str, Player] = {}
        self.chat_log: Deque[dict] = deque(maxlen=history_limit)
        self.hook: ChatHook | None = None
        self.tick = 0
        self.clock_ms = 0
        self._next_guid = 0
        if seed:
            self._seed()

    def _seed(self) -> None:
        self.add_creature("Aldric", guid="c1", pos=Vec3(2.0, 0.0, 1.5))
        self.add_creature("Mira", guid="c2", pos=Vec3(-3.0, 0.0, 4.0))
        self.add_player("Adventurer", guid="p1")

    def _allocate_guid(self, prefix: str) -> str:
        while True:
            self._next_guid += 1
            guid = f"{prefix}{self._next_guid}"
            if guid not in self.players and self.find_creature(guid) is None:
                return guid

    def attach_hook(self, hook: ChatHook) -> None:
        self.hook = hook

    def find_player(self, guid: object) -> Player | None:
        return self.players.get(guid)  # type: ignore[arg-type]

    def find_location(self, key: LocationKey) -> MapInstance | None:
        return self.instances.get(key)

    def find_creature(self, guid: str) -> Creature | None:
        for instance in self.instances.values():
            creature = instance.get_creature(guid)
            if creature is not None:
                return creature
        return None

    def add_instance(self, key: LocationKey) -> MapInstance:
        instance = self.instances.get(key)
        if instance is None:
            instance = MapInstance(key=key)
            self.instances[key] = instance
        return instance

    def remove_instance(self, key: LocationKey) -> MapInstance:
        instance = self.instances.pop(key, None)
        if instance is None:
            raise KeyError(key)
        return instance

    def add_creature(
        self,
        name: str,
        *,
        guid: str | None = None,
        location: LocationKey = DEFAULT_LOCATION,
        pos: Vec3 | None = None,
    ) -> Creature:
        guid = guid or self._allocate_guid("c")
        if self.find_creature(guid) is not None or guid in self.players:
            raise ValueError(f"guid '{guid}' is already in use")
        creature = Creature(guid=guid, name=name, location=location, pos=pos or Vec3(0.0), clock_ms=self.clock_ms)
        self.add_instance(location).creatures[guid] = creature
        return creature

    def remove_creature(self, guid: str) -> Creature:
        for instance in self.instances.values():
            creature = instance.creatures.pop(guid, None)
            if creature is not None:
                LOGGER.info("Creature %s (%s) despawned from %s", creature.name, guid, instance.key)
                return creature
        raise KeyError(guid)

    def add_player(self, name: str, *, guid: str | None = None, location: LocationKey = DEFAULT_LOCATION) -> Player:
        guid = guid or self._allocate_guid("p")
        if guid in self.players or self.find_creature(guid) is not None:
            raise ValueError(f"guid '{guid}' is already in use")
        player = Player(guid=guid, name=name, location=location, world=self)
        self.players[guid] = player
        self.add_instance(location)
        return player

    def remove_player(self, guid: str) -> Player:
        player = self.players.pop(guid, None)
        if player is None:
            raise KeyError(guid)
        return player

    def select_target(self, player_guid: str, target_guid: str | None) -> Player:
        player = self.players.get(player_guid)
        if player is None:
            raise KeyError(player_guid)
        if target_guid is not None and self.find_creature(target_guid) is None and target_guid not in self.players:
            raise KeyError(target_guid)
        player.target_guid = target_guid
        return player

    def handle_player_chat(self, player_guid: str, chat_type: str, text: str) -> tuple[dict, object]:
        player = self.players.get(player_guid)
        if player is None:
            raise KeyError(player_guid)

        handling = None
        if self.hook is not None:
            handling = self.hook.on_chat_message(player, chat_type, text)

        # The hook only observes; the message itself is always delivered as sent.
        event = {
            "tick": self.tick,
            "source_id": player.guid,
            "chat_type": chat_type,
            "text": text,
        }
        self.chat_log.append(event)
        return event, handling

    def update(self, diff_ms: int) -> None:
        self.tick += 1
        self.clock_ms += max(0, diff_ms)
        for instance in list(self.instances.values()):
            for creature in list(instance.creatures.values()):
                creature.update_events(diff_ms)
        if self.hook is not None:
            self.hook.on_tick(diff_ms)

    def state_payload(self) -> dict:
        return {
            "tick": self.tick,
            "clock_ms": self.clock_ms,
            "creatures": [
                creature.to_payload()
                for instance in self.instances.values()
                for creature in instance.creatures.values()
            ],
            "players": [player.to_payload() for player in self.players.values()],
            "chat_log": list(self.chat_log)[-50:],
        }
