from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

ENV_PREFIX = "DRAGONS_KEEP_"


@dataclass(frozen=True, slots=True)
class Settings:
    default_speed: float = 30.0
    sight_radius: float = 40.0
    code_prefix: str = "DRGN"
    default_room: str = "lobby"
    # None disables idle-room eviction.
    room_idle_ttl_s: float | None = None
    eviction_interval_s: float = 60.0
    outbox_size: int = 64
    enforce_game_master: bool = False
    log_level: str = "INFO"


def _get(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring %s%s=%r: not a number", ENV_PREFIX, name, raw)
        return default
    if not math.isfinite(value) or value < 0:
        logger.warning("Ignoring %s%s=%r: must be a finite, non-negative number", ENV_PREFIX, name, raw)
        return default
    return value


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s%s=%r: not an integer", ENV_PREFIX, name, raw)
        return default
    if value < 1:
        logger.warning("Ignoring %s%s=%r: must be positive", ENV_PREFIX, name, raw)
        return default
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(env, name)
    if raw is None:
        return default
    return raw.casefold() in {"1", "true", "yes", "on"}


def _log_level(env: Mapping[str, str], default: str) -> str:
    raw = _get(env, "LOG_LEVEL")
    if raw is None:
        return default
    level = raw.upper()
    if not isinstance(logging.getLevelName(level), int):
        logger.warning("Ignoring %sLOG_LEVEL=%r: unknown level", ENV_PREFIX, raw)
        return default
    return level


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from `DRAGONS_KEEP_*` environment variables."""

    env = os.environ if env is None else env
    defaults = Settings()

    return Settings(
        default_speed=_float(env, "DEFAULT_SPEED", defaults.default_speed),
        sight_radius=_float(env, "SIGHT_RADIUS", defaults.sight_radius),
        code_prefix=(_get(env, "CODE_PREFIX") or defaults.code_prefix).upper(),
        default_room=_get(env, "DEFAULT_ROOM") or defaults.default_room,
        room_idle_ttl_s=_float(env, "ROOM_IDLE_TTL", 0.0) or None,
        eviction_interval_s=_float(env, "EVICTION_INTERVAL", defaults.eviction_interval_s) or defaults.eviction_interval_s,
        outbox_size=_int(env, "OUTBOX_SIZE", defaults.outbox_size),
        enforce_game_master=_bool(env, "ENFORCE_DM", defaults.enforce_game_master),
        log_level=_log_level(env, defaults.log_level),
    )


def get_bind_address() -> tuple[str, int]:
    host = os.environ.get("HOST", "0.0.0.0")
    try:
        port = int(os.environ.get("PORT", "3000"))
    except ValueError:
        logger.warning("Ignoring PORT=%r: not an integer", os.environ.get("PORT"))
        port = 3000
    return host, port
