from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    redis_url: str
    client_origin: str = "*"
    stream_ttl_s: int = 60 * 30
    search_ttl_s: int = 60 * 60 * 24 * 7
    lock_ttl_s: int = 30
    resolve_timeout_s: float = 20.0
    resolve_wait_attempts: int = 20
    resolve_wait_interval_s: float = 0.5
    upstream_timeout_s: float = 30.0
    stream_chunk_size: int = 64 * 1024
    stream_content_type: str = "audio/mpeg"
    download_dir: str = os.path.join(tempfile.gettempdir(), "playproxy")
    debug: bool = False


def _load_dotenv_files() -> None:
    # server/playproxy/config.py -> server/ (parents[1]) -> repo root (parents[2])
    server_dir = Path(__file__).resolve().parents[1]
    repo_root = Path(__file__).resolve().parents[2]
    # Load root first, then allow server/.env to override.
    load_dotenv(repo_root / ".env", override=False)
    load_dotenv(server_dir / ".env", override=True)


def _get_setting(name: str) -> str:
    return os.environ.get(name, "").strip()


def _require_env(name: str) -> str:
    value = _get_setting(name)
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}")
    return value


def _int_setting(name: str, default: int, *, minimum: int = 1) -> int:
    raw = _get_setting(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as err:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from err
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_setting(name: str, default: float) -> float:
    raw = _get_setting(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as err:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from err
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def load_settings() -> Settings:
    _load_dotenv_files()
    defaults = Settings(redis_url="")
    settings = Settings(
        redis_url=_require_env("REDIS_URL"),
        client_origin=(_get_setting("CLIENT_ORIGIN") or "*").rstrip("/"),
        stream_ttl_s=_int_setting("STREAM_TTL_S", defaults.stream_ttl_s),
        search_ttl_s=_int_setting("SEARCH_TTL_S", defaults.search_ttl_s),
        lock_ttl_s=_int_setting("LOCK_TTL_S", defaults.lock_ttl_s),
        resolve_timeout_s=_float_setting("RESOLVE_TIMEOUT_S", defaults.resolve_timeout_s),
        resolve_wait_attempts=_int_setting(
            "RESOLVE_WAIT_ATTEMPTS", defaults.resolve_wait_attempts, minimum=0
        ),
        resolve_wait_interval_s=_float_setting(
            "RESOLVE_WAIT_INTERVAL_S", defaults.resolve_wait_interval_s
        ),
        upstream_timeout_s=_float_setting("UPSTREAM_TIMEOUT_S", defaults.upstream_timeout_s),
        stream_chunk_size=_int_setting("STREAM_CHUNK_SIZE", defaults.stream_chunk_size),
        stream_content_type=_get_setting("STREAM_CONTENT_TYPE") or defaults.stream_content_type,
        download_dir=_get_setting("DOWNLOAD_DIR") or defaults.download_dir,
        debug=_get_setting("PLAYPROXY_DEBUG").lower() in {"1", "true", "yes"},
    )
    if settings.lock_ttl_s <= settings.resolve_timeout_s:
        # A lock that can expire mid-resolution lets a second resolver in.
        raise ConfigError(
            f"LOCK_TTL_S ({settings.lock_ttl_s}) must exceed RESOLVE_TIMEOUT_S "
            f"({settings.resolve_timeout_s})"
        )
    return settings
