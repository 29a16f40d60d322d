from __future__ import annotations

import logging
from concurrent.futures import Executor
from enum import Enum
from typing import Any

from npcbridge.bridge.control import parse_control_message
from npcbridge.bridge.dispatch import DispatchBridge
from npcbridge.bridge.drain import DrainResult, TickDrainLoop
from npcbridge.bridge.queues import ReplyQueues
from npcbridge.bridge.speech import DelayedSpeechScheduler
from npcbridge.config.settings import BridgeSettings
from npcbridge.config.store import AiConfig, ConfigStore
from npcbridge.conversation.state import ConversationState
from npcbridge.errors import ConfigParseError
from npcbridge.host.interface import CHAT_SAY, ChatHook, HostCreature, HostPlayer, HostWorld
from npcbridge.llm.client import KoboldClient
from npcbridge.llm.request import build_generation_request

LOGGER = logging.getLogger("npcbridge.session")


class ChatHandling(str, Enum):
    IGNORED = "ignored"
    CONFIG_REQUESTED = "config_requested"
    CONFIG_SAVED = "config_saved"
    CONFIG_REJECTED = "config_rejected"
    GENERATION_DISPATCHED = "generation_dispatched"
    TARGET_CLEARED = "target_cleared"


class SessionContext(ChatHook):
    """Owns every piece of bridge state for the lifetime of the process."""

    def __init__(
        self,
        world: HostWorld,
        settings: BridgeSettings | None = None,
        *,
        client: KoboldClient | None = None,
        config_store: ConfigStore | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.world = world
        self.config_store = config_store or ConfigStore(self.settings.config_path)
        self.conversation = ConversationState(history_max_chars=self.settings.history_max_chars)
        self.queues = ReplyQueues.create()
        self.client = client or KoboldClient.from_settings(self.settings)
        self.dispatcher = DispatchBridge(
            config_store=self.config_store,
            conversation=self.conversation,
            queues=self.queues,
            client=self.client,
            max_workers=self.settings.worker_threads,
            executor=executor,
        )
        self.speech = DelayedSpeechScheduler(delay_ms=self.settings.speech_delay_ms)
        self.drain_loop = TickDrainLoop(
            queues=self.queues,
            config_store=self.config_store,
            dispatcher=self.dispatcher,
            speech=self.speech,
            dialogue_replies_per_tick=self.settings.dialogue_replies_per_tick,
        )
        self.last_drain = DrainResult()

    @classmethod
    def from_env(cls, world: HostWorld) -> "SessionContext":
        return cls(world, BridgeSettings.from_env())

    def start(self) -> AiConfig:
        config = self.config_store.load()
        LOGGER.info("[AI MANAGER] Module loaded.")
        return config

    def shutdown(self) -> None:
        self.dispatcher.shutdown()

    def on_chat_message(self, player: HostPlayer, chat_type: str, message: str) -> ChatHandling:
        control = parse_control_message(message)
        if control is not None:
            if control.kind == "get_config":
                self.dispatcher.dispatch_config_delivery(player.guid)
                return ChatHandling.CONFIG_REQUESTED
            return self._save_remote_config(player, control.pairs)

        if chat_type != CHAT_SAY:
            return ChatHandling.IGNORED

        creature = player.selected_creature()
        if creature is None:
            if self.conversation.current_target is None:
                return ChatHandling.IGNORED
            self.conversation.clear_target()
            return ChatHandling.TARGET_CLEARED
        return self._dispatch_generation(creature, message)

    def on_tick(self, diff_ms: int) -> None:
        self.last_drain = self.drain_loop.run(self.world)

    def _save_remote_config(self, player: HostPlayer, pairs: list[tuple[str, str]]) -> ChatHandling:
        try:
            config = self.config_store.apply_updates(pairs)
        except ConfigParseError as exc:
            LOGGER.warning("[AI MANAGER] Rejected remote config from %r: %s", player.guid, exc)
            self.dispatcher.dispatch_config_delivery(player.guid, deliver_now=player.send_system_message)
            return ChatHandling.CONFIG_REJECTED

        self.config_store.save()
        LOGGER.info("[AI MANAGER] Remote config saved by %r (%s)", player.guid, config.address)
        self.dispatcher.dispatch_config_delivery(player.guid, deliver_now=player.send_system_message)
        return ChatHandling.CONFIG_SAVED

    def _dispatch_generation(self, creature: HostCreature, message: str) -> ChatHandling:
        if self.dispatcher.closed:
            return ChatHandling.IGNORED
        self.conversation.set_target(creature.guid)
        prepared = build_generation_request(
            self.config_store.snapshot(),
            speaker_name=creature.name,
            history=self.conversation.get_history(creature.guid),
            utterance=message,
        )
        future = self.dispatcher.dispatch_generation(
            creature.guid,
            creature.location,
            prepared.request.to_payload(),
            prepared.turn_text,
        )
        if future is None:
            return ChatHandling.IGNORED
        return ChatHandling.GENERATION_DISPATCHED

    def state_payload(self) -> dict[str, Any]:
        config = self.config_store.snapshot()
        conversation = self.conversation.stats()
        return {
            "address": config.address,
            "conversation_target": conversation["target"],
            "conversation_histories": conversation["histories"],
            "history_chars": conversation["history_chars"],
            "queues": self.queues.depths(),
            "inflight": self.dispatcher.inflight_count(),
            "last_drain": {
                "config_delivered": self.last_drain.config_delivered,
                "status_delivered": self.last_drain.status_delivered,
                "speech_scheduled": self.last_drain.speech_scheduled,
                "discarded": self.last_drain.discarded,
            },
        }
