from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from npcbridge.errors import ConfigParseError

LOGGER = logging.getLogger("npcbridge.config.store")

DEFAULT_STOP_SEQUENCE = "\\n||$||Player:||$||[INST]||$||</s>"
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant roleplaying as a character in the World of Warcraft.\n"
    "Follow these rules strictly:\n"
    "1. Always stay in character.\n"
    "2. Do not use newline characters in your response.\n"
    "3. Keep your responses to a single, concise paragraph.\n"
    "4. Never speak for the player."
)

# Order matters: this is the on-disk and on-the-wire order.
PERSISTED_KEYS: tuple[str, ...] = (
    "host",
    "port",
    "max_context_length",
    "max_length",
    "temperature",
    "repetition_penalty",
    "top_p",
    "top_k",
)
TEXT_KEYS: tuple[str, ...] = ("stop_sequence", "system_prompt")
CHARACTER_KEY_PREFIX = "character."

_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)
_UNESCAPES = {"n": "\n", "r": "\r", "\\": "\\"}


class AiConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", allow_inf_nan=False)

    host: str = Field(default="127.0.0.1", min_length=1, max_length=253)
    port: int = Field(default=5001, ge=1, le=65535)
    max_context_length: int = Field(default=8192, ge=0)
    max_length: int = Field(default=128, ge=0)
    temperature: float = 0.8
    repetition_penalty: float = 1.1
    top_p: float = 0.9
    top_k: int = Field(default=40, ge=0)
    stop_sequence: str = DEFAULT_STOP_SEQUENCE
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    # Sorted (name, card) pairs.
    character_cards: tuple[tuple[str, str], ...] = ()

    @field_validator("character_cards", mode="before")
    @classmethod
    def _cards_as_pairs(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            value = value.items()
        return tuple(sorted((str(name), str(card)) for name, card in value))

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    def character_card(self, name: str) -> str:
        for card_name, card in self.character_cards:
            if card_name == name:
                return card
        return ""


def escape_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def unescape_value(value: str) -> str:
    return _ESCAPE_RE.sub(lambda match: _UNESCAPES.get(match.group(1), match.group(0)), value)


def _validated(base: AiConfig, updates: Mapping[str, Any]) -> AiConfig:
    data = base.model_dump()
    data.update(updates)
    try:
        return AiConfig.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = first.get("loc") or ("?",)
        field = str(loc[0])
        raise ConfigParseError(field, str(updates.get(field, "")), first.get("msg", "")) from None


def dump_config_text(config: AiConfig) -> str:
    lines = [f"{key}={_format_persisted(getattr(config, key))}" for key in PERSISTED_KEYS]
    for key in TEXT_KEYS:
        lines.append(f"{key}={escape_value(getattr(config, key))}")
    for name, card in config.character_cards:
        lines.append(f"{CHARACTER_KEY_PREFIX}{name}={escape_value(card)}")
    return "\n".join(lines) + "\n"


def _format_persisted(value: Any) -> str:
    if isinstance(value, float):
        return repr(value)
    return str(value)


class ConfigStore:
    def __init__(self, path: Path | None = None, initial: AiConfig | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._config = initial if initial is not None else AiConfig()

    def snapshot(self) -> AiConfig:
        with self._lock:
            return self._config

    @property
    def address(self) -> str:
        return self.snapshot().address

    def apply_update(self, key: str, value: str) -> AiConfig:
        return self.apply_updates([(key, value)])

    def apply_updates(
        self,
        pairs: Mapping[str, str] | Iterable[tuple[str, str]],
        *,
        allowed_keys: Iterable[str] = PERSISTED_KEYS,
    ) -> AiConfig:
        allowed = set(allowed_keys)
        items = pairs.items() if isinstance(pairs, Mapping) else pairs
        parsed: dict[str, str] = {}
        for key, value in items:
            key = key.strip()
            if key not in allowed:
                LOGGER.debug("Ignoring unknown config key %r", key)
                continue
            parsed[key] = value.strip()

        with self._lock:
            updated = _validated(self._config, parsed)
            self._config = updated
        return updated

    def replace(self, config: AiConfig) -> None:
        with self._lock:
            self._config = config

    def load(self) -> AiConfig:
        if self.path is None:
            return self.snapshot()
        if not self.path.exists():
            LOGGER.info("[AI MANAGER] %s not found. Creating with defaults.", self.path)
            self.save()
            return self.snapshot()

        working = self.snapshot()
        cards = dict(working.character_cards)
        text_values: dict[str, str] = {}
        for raw_line in self.path.read_text(encoding="utf-8").splitlines():
            line = raw_line.rstrip("\r")
            if not line.strip() or line.lstrip().startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()

            if key in PERSISTED_KEYS:
                try:
                    working = _validated(working, {key: value.strip()})
                except ConfigParseError as exc:
                    LOGGER.warning("[AI MANAGER] Keeping previous %s: %s", key, exc)
            elif key in TEXT_KEYS:
                text_values[key] = unescape_value(value)
            elif key.startswith(CHARACTER_KEY_PREFIX) and len(key) > len(CHARACTER_KEY_PREFIX):
                cards[key[len(CHARACTER_KEY_PREFIX) :]] = unescape_value(value)
            else:
                LOGGER.debug("Ignoring unknown config key %r in %s", key, self.path)

        working = working.model_copy(update={**text_values, "character_cards": tuple(sorted(cards.items()))})
        self.replace(working)
        LOGGER.info("[AI MANAGER] Configuration loaded from %s (%s).", self.path, working.address)
        return working

    def save(self) -> bool:
        if self.path is None:
            return False
        config = self.snapshot()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(dump_config_text(config), encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("[AI MANAGER] Could not write to %s: %s", self.path, exc)
            return False
        LOGGER.info("[AI MANAGER] Configuration saved.")
        return True
