from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from npcbridge.config.store import PERSISTED_KEYS, AiConfig

CONTROL_MARKER = "AIMGR"
GET_CONFIG_TOKEN = "GET_CONFIG"
SAVE_CONFIG_TOKEN = "SAVE_CONFIG"
CONFIG_REPLY_PREFIX = "[AIMgr_CONFIG]"
STATUS_REPLY_PREFIX = "[AIMgr_STATUS]"


@dataclass(frozen=True)
class ControlMessage:
    kind: Literal["get_config", "save_config"]
    pairs: list[tuple[str, str]] = field(default_factory=list)


def parse_save_pairs(data: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    start = 0
    while start < len(data):
        end_key = data.find("=", start)
        if end_key < 0:
            break
        end_value = data.find(";", end_key)
        if end_value < 0:
            break
        pairs.append((data[start:end_key], data[end_key + 1 : end_value]))
        start = end_value + 1
    return pairs


def parse_control_message(message: str) -> ControlMessage | None:
    if CONTROL_MARKER not in message:
        return None
    if GET_CONFIG_TOKEN in message:
        return ControlMessage(kind="get_config")
    token_at = message.find(SAVE_CONFIG_TOKEN)
    if token_at < 0:
        return None
    # One separator character follows the token.
    data = message[token_at + len(SAVE_CONFIG_TOKEN) + 1 :]
    return ControlMessage(kind="save_config", pairs=parse_save_pairs(data))


def _format_reply_value(value: object) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def format_config_reply(config: AiConfig) -> str:
    body = "".join(f"{key}={_format_reply_value(getattr(config, key))};" for key in PERSISTED_KEYS)
    return CONFIG_REPLY_PREFIX + body


def format_status_reply(is_connected: bool) -> str:
    return f"{STATUS_REPLY_PREFIX}status={'true' if is_connected else 'false'}"
