"""
Client configuration loader.

Reads shared/config/client.json and applies environment overrides.

Design rules:
- Import-safe (no side effects)
- Missing file or bad shapes fall back to defaults with a warning
- Environment wins over the JSON file (DINICHAT_* variables)
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from shared.logging.logger import get_logger

log = get_logger("shared.config.client")

_CONFIG_PATH = Path(__file__).parent / "client.json"

MEGABYTE = 1024 * 1024


@dataclass
class ActorConfig:
    url: str = "http://127.0.0.1:4943"
    request_timeout: float = 15.0


@dataclass
class RetryConfig:
    """
    Backoff for a query class: min(base_delay * 2**attempt, cap_delay).
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    cap_delay: float = 10.0


@dataclass
class PollingConfig:
    messages_interval: float = 1.5
    count_interval: float = 5.0
    recent_limit: int = 100
    messages_retry: RetryConfig = field(default_factory=RetryConfig)
    count_retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_attempts=2))


@dataclass
class CacheConfig:
    profile_stale_seconds: float = 30.0
    emojis_stale_seconds: float = 30.0
    retain_seconds: float = 300.0
    read_retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_attempts=2))
    write_retries: int = 2


@dataclass
class UploadLimits:
    media_max_bytes: int = 50 * MEGABYTE
    picture_max_bytes: int = 5 * MEGABYTE
    emoji_max_bytes: int = 2 * MEGABYTE


@dataclass
class AssetConfig:
    base_path: str = "/assets/generated"
    default_picture_count: int = 8
    placeholder_background: str = "#cde5aa"
    placeholder_foreground: str = "#ffffff"


@dataclass
class ClientConfig:
    actor: ActorConfig = field(default_factory=ActorConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    uploads: UploadLimits = field(default_factory=UploadLimits)
    assets: AssetConfig = field(default_factory=AssetConfig)
    session_path: str = ".dinichat/session.json"
    default_username_color: str = "#cde5aa"


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"client config not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            log.warning("client config root is not an object; ignoring")
    except Exception as e:
        log.warning(f"Failed to load client config ({e}); using defaults")

    return {}


def _as_float(raw: Dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    try:
        result = float(value)
    except (TypeError, ValueError):
        log.warning(f"{key} must be numeric; defaulting to {default}")
        return default
    if math.isnan(result) or result < 0:
        log.warning(f"{key} must be a non-negative number; defaulting to {default}")
        return default
    return result


def _as_int(raw: Dict[str, Any], key: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool):
        log.warning(f"{key} must be an integer; defaulting to {default}")
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        log.warning(f"{key} must be an integer; defaulting to {default}")
        return default


def _section(raw: Any, key: str) -> Dict[str, Any]:
    value = raw.get(key) if isinstance(raw, dict) else None
    return value if isinstance(value, dict) else {}


def _load_retry(raw: Dict[str, Any], default: RetryConfig) -> RetryConfig:
    if not raw:
        return default
    return RetryConfig(
        max_attempts=_as_int(raw, "max_attempts", default.max_attempts),
        base_delay=_as_float(raw, "base_delay", default.base_delay),
        cap_delay=_as_float(raw, "cap_delay", default.cap_delay),
    )


def _load_actor(raw: Dict[str, Any]) -> ActorConfig:
    defaults = ActorConfig()
    url = raw.get("url", defaults.url)
    return ActorConfig(
        url=str(url) if url else defaults.url,
        request_timeout=_as_float(raw, "request_timeout", defaults.request_timeout),
    )


def _load_polling(raw: Dict[str, Any]) -> PollingConfig:
    defaults = PollingConfig()
    return PollingConfig(
        messages_interval=_as_float(raw, "messages_interval", defaults.messages_interval),
        count_interval=_as_float(raw, "count_interval", defaults.count_interval),
        recent_limit=_as_int(raw, "recent_limit", defaults.recent_limit),
        messages_retry=_load_retry(_section(raw, "messages_retry"), defaults.messages_retry),
        count_retry=_load_retry(_section(raw, "count_retry"), defaults.count_retry),
    )


def _load_cache(raw: Dict[str, Any]) -> CacheConfig:
    defaults = CacheConfig()
    return CacheConfig(
        profile_stale_seconds=_as_float(raw, "profile_stale_seconds", defaults.profile_stale_seconds),
        emojis_stale_seconds=_as_float(raw, "emojis_stale_seconds", defaults.emojis_stale_seconds),
        retain_seconds=_as_float(raw, "retain_seconds", defaults.retain_seconds),
        read_retry=_load_retry(_section(raw, "read_retry"), defaults.read_retry),
        write_retries=_as_int(raw, "write_retries", defaults.write_retries),
    )


def _load_uploads(raw: Dict[str, Any]) -> UploadLimits:
    defaults = UploadLimits()
    return UploadLimits(
        media_max_bytes=_as_int(raw, "media_max_bytes", defaults.media_max_bytes),
        picture_max_bytes=_as_int(raw, "picture_max_bytes", defaults.picture_max_bytes),
        emoji_max_bytes=_as_int(raw, "emoji_max_bytes", defaults.emoji_max_bytes),
    )


def _load_assets(raw: Dict[str, Any]) -> AssetConfig:
    defaults = AssetConfig()
    return AssetConfig(
        base_path=str(raw.get("base_path", defaults.base_path)).rstrip("/"),
        default_picture_count=_as_int(raw, "default_picture_count", defaults.default_picture_count),
        placeholder_background=str(raw.get("placeholder_background", defaults.placeholder_background)),
        placeholder_foreground=str(raw.get("placeholder_foreground", defaults.placeholder_foreground)),
    )


def _apply_env(cfg: ClientConfig) -> ClientConfig:
    actor_url = os.getenv("DINICHAT_ACTOR_URL")
    if actor_url:
        cfg.actor.url = actor_url

    timeout = os.getenv("DINICHAT_REQUEST_TIMEOUT")
    if timeout:
        cfg.actor.request_timeout = _as_float(
            {"request_timeout": timeout}, "request_timeout", cfg.actor.request_timeout
        )

    session_path = os.getenv("DINICHAT_SESSION_PATH")
    if session_path:
        cfg.session_path = session_path

    return cfg


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

def load_client_config(
    raw: Optional[Dict[str, Any]] = None,
    *,
    path: Optional[Path] = None,
    use_env: bool = True,
) -> ClientConfig:
    """
    Build a ClientConfig.

    Expected shape (every key optional):
    {
        "actor":   { "url": "...", "request_timeout": 15 },
        "polling": { "messages_interval": 1.5, "count_interval": 5,
                     "recent_limit": 100,
                     "messages_retry": { "max_attempts": 3, ... } },
        "cache":   { "profile_stale_seconds": 30, "write_retries": 2 },
        "uploads": { "media_max_bytes": 52428800, ... },
        "assets":  { "base_path": "/assets/generated" },
        "session_path": ".dinichat/session.json",
        "default_username_color": "#cde5aa"
    }
    """
    if raw is None:
        raw = _load_json(path or _CONFIG_PATH)

    defaults = ClientConfig()
    session_path = raw.get("session_path", defaults.session_path)
    color = raw.get("default_username_color", defaults.default_username_color)

    cfg = ClientConfig(
        actor=_load_actor(_section(raw, "actor")),
        polling=_load_polling(_section(raw, "polling")),
        cache=_load_cache(_section(raw, "cache")),
        uploads=_load_uploads(_section(raw, "uploads")),
        assets=_load_assets(_section(raw, "assets")),
        session_path=str(session_path) if session_path else defaults.session_path,
        default_username_color=str(color) if color else defaults.default_username_color,
    )

    if use_env:
        cfg = _apply_env(cfg)

    log.debug(
        f"Client config loaded: actor={cfg.actor.url} "
        f"messages_interval={cfg.polling.messages_interval}s "
        f"count_interval={cfg.polling.count_interval}s"
    )
    return cfg
