from __future__ import annotations

from dataclasses import dataclass

from npcbridge.host.interface import EMOTE_ONESHOT_TALK, LANG_UNIVERSAL, HostCreature


@dataclass
class DelayedSpeechEvent:
    creature: HostCreature
    text: str

    def __call__(self) -> None:
        self.creature.say(self.text, LANG_UNIVERSAL)
        self.creature.play_emote(EMOTE_ONESHOT_TALK)


class DelayedSpeechScheduler:
    def __init__(self, delay_ms: int = 50) -> None:
        self.delay_ms = max(0, int(delay_ms))

    def schedule(self, creature: HostCreature, text: str) -> bool:
        if not creature.is_alive():
            return False
        creature.schedule_event(self.delay_ms, DelayedSpeechEvent(creature, text))
        return True
