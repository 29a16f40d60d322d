from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _is_enabled(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, low: int, high: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(low, min(high, value))


def _env_float(name: str, default: float, low: float, high: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(low, min(high, value))


def load_env_file(env_path: Path) -> None:
    if not env_path.exists():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = value.strip()
        if value and value[0] == value[-1] and value[0] in {'"', "'"}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


@dataclass(frozen=True)
class BridgeSettings:
    config_path: Path = Path("AI_Mod_Config.conf")
    worker_threads: int = 8
    generate_timeout_sec: float = 60.0
    status_timeout_sec: float = 2.0
    dialogue_replies_per_tick: int = 1
    speech_delay_ms: int = 50
    history_max_chars: int = 6000
    tick_interval_sec: float = 0.1
    debug: bool = False

    @classmethod
    def from_env(cls) -> "BridgeSettings":
        config_path = os.getenv("NPCBRIDGE_CONFIG_PATH", "").strip() or "AI_Mod_Config.conf"

        history_max_chars = _env_int("NPCBRIDGE_HISTORY_MAX_CHARS", 6000, 0, 200_000)
        if 0 < history_max_chars < 200:
            history_max_chars = 200

        return cls(
            config_path=Path(config_path),
            worker_threads=_env_int("NPCBRIDGE_WORKER_THREADS", 8, 1, 64),
            generate_timeout_sec=_env_float("NPCBRIDGE_GENERATE_TIMEOUT_SEC", 60.0, 1.0, 600.0),
            status_timeout_sec=_env_float("NPCBRIDGE_STATUS_TIMEOUT_SEC", 2.0, 0.5, 30.0),
            dialogue_replies_per_tick=_env_int("NPCBRIDGE_DIALOGUE_REPLIES_PER_TICK", 1, 1, 32),
            speech_delay_ms=_env_int("NPCBRIDGE_SPEECH_DELAY_MS", 50, 0, 5000),
            history_max_chars=history_max_chars,
            tick_interval_sec=_env_float("NPCBRIDGE_TICK_INTERVAL_SEC", 0.1, 0.01, 5.0),
            debug=_is_enabled(os.getenv("NPCBRIDGE_DEBUG")),
        )
