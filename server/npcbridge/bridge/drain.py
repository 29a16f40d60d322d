from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import dataclass

from npcbridge.bridge.control import format_config_reply, format_status_reply
from npcbridge.bridge.dispatch import DispatchBridge
from npcbridge.bridge.queues import DialogueReplyItem, ReplyQueues
from npcbridge.bridge.speech import DelayedSpeechScheduler
from npcbridge.config.store import ConfigStore
from npcbridge.errors import StaleReferenceError
from npcbridge.host.interface import HostCreature, HostPlayer, HostWorld

LOGGER = logging.getLogger("npcbridge.bridge.drain")


@dataclass
class DrainResult:
    config_delivered: int = 0
    status_delivered: int = 0
    speech_scheduled: int = 0
    discarded: int = 0


def _resolve_player(world: HostWorld, guid: Hashable) -> HostPlayer:
    player = world.find_player(guid)
    if player is None:
        raise StaleReferenceError("player", guid)
    return player


def _resolve_creature(world: HostWorld, item: DialogueReplyItem) -> HostCreature:
    location = world.find_location(item.location)
    if location is None:
        raise StaleReferenceError("location", item.location)
    creature = location.get_creature(item.entity_id)
    if creature is None:
        raise StaleReferenceError("creature", item.entity_id)
    return creature


class TickDrainLoop:
    """Applies queued replies on the simulation thread, once per tick.

    Config and status queues are drained fully; dialogue replies are capped per
    tick. Items whose player, location or creature no longer resolves are dropped.
    """

    def __init__(
        self,
        *,
        queues: ReplyQueues,
        config_store: ConfigStore,
        dispatcher: DispatchBridge,
        speech: DelayedSpeechScheduler,
        dialogue_replies_per_tick: int = 1,
    ) -> None:
        self._queues = queues
        self._config_store = config_store
        self._dispatcher = dispatcher
        self._speech = speech
        self.dialogue_replies_per_tick = max(1, int(dialogue_replies_per_tick))

    def run(self, world: HostWorld) -> DrainResult:
        result = DrainResult()
        self._drain_config_requests(world, result)
        self._drain_status_replies(world, result)
        self._drain_dialogue_replies(world, result)
        return result

    def _drain_config_requests(self, world: HostWorld, result: DrainResult) -> None:
        if not self._queues.config_requests:
            return
        for item in self._queues.config_requests.drain():
            try:
                player = _resolve_player(world, item.requester_id)
            except StaleReferenceError as exc:
                LOGGER.debug("Discarding config request: %s", exc)
                result.discarded += 1
                continue
            config = self._config_store.snapshot()
            player.send_system_message(format_config_reply(config))
            result.config_delivered += 1
            self._dispatcher.dispatch_status_check(player.guid, config.host, config.port)

    def _drain_status_replies(self, world: HostWorld, result: DrainResult) -> None:
        if not self._queues.status_replies:
            return
        for item in self._queues.status_replies.drain():
            try:
                player = _resolve_player(world, item.requester_id)
            except StaleReferenceError as exc:
                LOGGER.debug("Discarding status reply: %s", exc)
                result.discarded += 1
                continue
            player.send_system_message(format_status_reply(item.is_connected))
            result.status_delivered += 1

    def _drain_dialogue_replies(self, world: HostWorld, result: DrainResult) -> None:
        if not self._queues.dialogue_replies:
            return
        for item in self._queues.dialogue_replies.drain(self.dialogue_replies_per_tick):
            try:
                creature = _resolve_creature(world, item)
            except StaleReferenceError as exc:
                LOGGER.debug("Discarding dialogue reply: %s", exc)
                result.discarded += 1
                continue
            if self._speech.schedule(creature, item.text):
                result.speech_scheduled += 1
            else:
                result.discarded += 1
