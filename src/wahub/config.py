from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .constants import (
    DEFAULT_BOT_REPLY,
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_COUNTRY_CODE,
    DEFAULT_HOST,
    DEFAULT_MEDIA_DIR,
    DEFAULT_PORT,
    DEFAULT_PROBE_INTERVAL_S,
    DEFAULT_RECONNECT_DELAY_S,
    DEFAULT_RETENTION,
    DEFAULT_SESSION_ID,
    DEFAULT_SESSIONS_DIR,
    DEFAULT_WEBHOOK_QUEUE_SIZE,
    DEFAULT_WEBHOOK_TIMEOUT_S,
    LOCAL_MAX_DIGITS,
    MOBILE_COLLAPSE_INDEX,
    MOBILE_COLLAPSE_LENGTH,
    S_WHATSAPP_NET,
)
from .exceptions import ConfigError

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


@dataclass(frozen=True, slots=True)
class NumberPolicy:
    """
    How bare subscriber numbers are turned into conversation ids.

    The defaults reproduce the Brazilian dual-format heuristic: a 13-digit
    number starting with the country code loses the mobile `9` at index 4
    (`55 11 9 8765 4321` -> `55 11 8765 4321`). This is locale-specific and can
    be turned off with `collapse_mobile_digit=False`.
    """

    country_code: str = DEFAULT_COUNTRY_CODE
    local_max_digits: int = LOCAL_MAX_DIGITS
    collapse_mobile_digit: bool = True
    collapse_length: int = MOBILE_COLLAPSE_LENGTH
    collapse_index: int = MOBILE_COLLAPSE_INDEX
    suffix: str = S_WHATSAPP_NET


@dataclass(slots=True)
class HubConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    sessions_dir: Path = Path(DEFAULT_SESSIONS_DIR)
    media_dir: Path = Path(DEFAULT_MEDIA_DIR)
    default_sessions: tuple[str, ...] = (DEFAULT_SESSION_ID,)
    resume_sessions: bool = True

    retention: int = DEFAULT_RETENTION
    reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S
    probe_interval_s: float = DEFAULT_PROBE_INTERVAL_S
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S

    bot_enabled: bool = False
    bot_reply: str = DEFAULT_BOT_REPLY
    auto_read: bool = False

    webhook_url: str | None = None
    webhook_timeout_s: float = DEFAULT_WEBHOOK_TIMEOUT_S
    webhook_queue_size: int = DEFAULT_WEBHOOK_QUEUE_SIZE

    numbers: NumberPolicy = field(default_factory=NumberPolicy)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> HubConfig:
        """
        Build a config from `WAHUB_*` environment variables (plus `PORT`).

        Every invalid value is collected and reported in a single `ConfigError`.
        """

        env = os.environ if environ is None else environ
        problems: list[str] = []

        def _int(name: str, default: int, *, minimum: int = 0) -> int:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = int(raw)
            except ValueError:
                problems.append(f"{name} must be an integer (got {raw!r})")
                return default
            if value < minimum:
                problems.append(f"{name} must be >= {minimum} (got {value})")
                return default
            return value

        def _float(name: str, default: float) -> float:
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                value = float(raw)
            except ValueError:
                problems.append(f"{name} must be a number (got {raw!r})")
                return default
            if value < 0:
                problems.append(f"{name} must be >= 0 (got {value})")
                return default
            return value

        def _bool(name: str, default: bool) -> bool:
            raw = env.get(name)
            if raw is None:
                return default
            v = raw.strip().lower()
            if v in _TRUE:
                return True
            if v in _FALSE:
                return False
            problems.append(f"{name} must be a boolean (got {raw!r})")
            return default

        port = _int("WAHUB_PORT", _int("PORT", DEFAULT_PORT, minimum=1), minimum=1)

        sessions_raw = env.get("WAHUB_SESSIONS")
        default_sessions: tuple[str, ...] = (DEFAULT_SESSION_ID,)
        if sessions_raw is not None:
            default_sessions = tuple(s.strip() for s in sessions_raw.split(",") if s.strip())

        country_code = env.get("WAHUB_COUNTRY_CODE", DEFAULT_COUNTRY_CODE).strip()
        if not country_code.isdigit():
            problems.append(f"WAHUB_COUNTRY_CODE must be digits (got {country_code!r})")
            country_code = DEFAULT_COUNTRY_CODE

        log_level = env.get("WAHUB_LOG_LEVEL", "INFO").strip().upper()
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            problems.append(f"WAHUB_LOG_LEVEL is not a logging level (got {log_level!r})")
            log_level = "INFO"

        cfg = cls(
            host=env.get("WAHUB_HOST", DEFAULT_HOST),
            port=port,
            sessions_dir=Path(env.get("WAHUB_SESSIONS_DIR", DEFAULT_SESSIONS_DIR)).expanduser(),
            media_dir=Path(env.get("WAHUB_MEDIA_DIR", DEFAULT_MEDIA_DIR)).expanduser(),
            default_sessions=default_sessions,
            resume_sessions=_bool("WAHUB_RESUME_SESSIONS", True),
            retention=_int("WAHUB_RETENTION", DEFAULT_RETENTION, minimum=1),
            reconnect_delay_s=_float("WAHUB_RECONNECT_DELAY", DEFAULT_RECONNECT_DELAY_S),
            probe_interval_s=_float("WAHUB_PROBE_INTERVAL", DEFAULT_PROBE_INTERVAL_S),
            connect_timeout_s=_float("WAHUB_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT_S),
            bot_enabled=_bool("WAHUB_BOT", False),
            bot_reply=env.get("WAHUB_BOT_REPLY", DEFAULT_BOT_REPLY),
            auto_read=_bool("WAHUB_AUTO_READ", False),
            webhook_url=(env.get("WAHUB_WEBHOOK_URL") or "").strip() or None,
            webhook_timeout_s=_float("WAHUB_WEBHOOK_TIMEOUT", DEFAULT_WEBHOOK_TIMEOUT_S),
            webhook_queue_size=_int(
                "WAHUB_WEBHOOK_QUEUE", DEFAULT_WEBHOOK_QUEUE_SIZE, minimum=1
            ),
            numbers=NumberPolicy(
                country_code=country_code,
                collapse_mobile_digit=_bool("WAHUB_COLLAPSE_MOBILE_DIGIT", True),
            ),
            log_level=log_level,
        )

        if problems:
            raise ConfigError(problems)
        return cfg
