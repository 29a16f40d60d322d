from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from npcbridge.config.store import AiConfig

STOP_SEQUENCE_DELIMITER = "||$||"
ESCAPED_NEWLINE = "\\n"


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    max_context_length: int
    max_length: int
    temperature: float
    top_p: float
    top_k: int
    rep_pen: float
    stop_sequence: list[str] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump()


@dataclass(frozen=True)
class PreparedGeneration:
    request: GenerationRequest
    turn_text: str


def parse_stop_sequences(template: str) -> list[str]:
    # The remainder after the last delimiter is a stop token too, even if empty.
    return [token.replace(ESCAPED_NEWLINE, "\n") for token in template.split(STOP_SEQUENCE_DELIMITER)]


def format_turn(utterance: str, speaker_name: str) -> str:
    return f"\nPlayer: {utterance}\n{speaker_name}:"


def build_prompt(config: AiConfig, speaker_name: str, history: str, turn_text: str) -> str:
    return config.system_prompt + "\n" + config.character_card(speaker_name) + history + turn_text


def build_generation_request(
    config: AiConfig,
    *,
    speaker_name: str,
    history: str,
    utterance: str,
) -> PreparedGeneration:
    turn_text = format_turn(utterance, speaker_name)
    request = GenerationRequest(
        prompt=build_prompt(config, speaker_name, history, turn_text),
        max_context_length=config.max_context_length,
        max_length=config.max_length,
        temperature=config.temperature,
        top_p=config.top_p,
        top_k=config.top_k,
        rep_pen=config.repetition_penalty,
        stop_sequence=parse_stop_sequences(config.stop_sequence),
    )
    return PreparedGeneration(request=request, turn_text=turn_text)
