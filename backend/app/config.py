"""
Orchestrator configuration.

Values come from the environment (a .env file is loaded first). An optional
YAML file named by COUNCIL_CONFIG provides defaults; environment variables
win over it.

Example council.yaml:

    members:
      - http://localhost:9001
      - http://localhost:9002
    chairman_url: http://localhost:9100
    timeout_ms: 60000
    heartbeat:
      interval_ms: 15000
      timeout_ms: 5000
    persistence:
      enabled: true
      redis_url: redis://localhost:6379/0
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

from app.services.council_errors import ConfigError

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_CHAIRMAN_URL = "http://localhost:9100"
DEFAULT_TIMEOUT_MS = 60000
DEFAULT_HEARTBEAT_INTERVAL_MS = 15000
DEFAULT_HEARTBEAT_TIMEOUT_MS = 5000
MIN_HEARTBEAT_MS = 1000
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_KEY_PREFIX = "council"
DEFAULT_BOOTSTRAP_LIMIT = 20
DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:5174"


@dataclass(frozen=True)
class Settings:
    member_urls: list[str]
    chairman_url: str = DEFAULT_CHAIRMAN_URL
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    heartbeat_interval_ms: int = DEFAULT_HEARTBEAT_INTERVAL_MS
    heartbeat_timeout_ms: int = DEFAULT_HEARTBEAT_TIMEOUT_MS
    persistence_enabled: bool = True
    redis_url: str = DEFAULT_REDIS_URL
    persistence_key_prefix: str = DEFAULT_KEY_PREFIX
    persistence_bootstrap_limit: int = DEFAULT_BOOTSTRAP_LIMIT


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _load_yaml(path: str) -> dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return _split_csv(value)
    return [str(item).strip() for item in value if str(item).strip()]


def _dedupe(urls: list[str]) -> list[str]:
    seen: set[str] = set()
    unique = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment and the optional YAML file.

    Raises:
        ConfigError: no members, malformed URLs or unreadable config file
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    file_config: dict[str, Any] = {}
    config_path = environ.get("COUNCIL_CONFIG")
    if config_path:
        file_config = _load_yaml(config_path)
        logger.info(f"Loaded council config from {config_path}")

    heartbeat_config = file_config.get("heartbeat") or {}
    persistence_config = file_config.get("persistence") or {}

    def pick(env_key: str, file_value: Any) -> Any:
        value = environ.get(env_key)
        return value if value not in (None, "") else file_value

    member_urls = _dedupe(_as_list(pick("COUNCIL_MEMBERS", file_config.get("members"))))
    if not member_urls:
        raise ConfigError("COUNCIL_MEMBERS is required and must include at least one URL.")

    chairman_url = str(pick("CHAIRMAN_URL", file_config.get("chairman_url")) or DEFAULT_CHAIRMAN_URL)

    invalid = [url for url in member_urls + [chairman_url] if not _is_http_url(url)]
    if invalid:
        raise ConfigError(
            f"Backend URLs must be absolute http(s) URLs: {invalid}",
            metadata={"invalid_urls": invalid},
        )

    timeout_ms = _parse_int(pick("ORCH_TIMEOUT_MS", file_config.get("timeout_ms")), DEFAULT_TIMEOUT_MS)
    heartbeat_interval_ms = _parse_int(
        pick("HEARTBEAT_INTERVAL_MS", heartbeat_config.get("interval_ms")),
        DEFAULT_HEARTBEAT_INTERVAL_MS,
    )
    heartbeat_timeout_ms = _parse_int(
        pick("HEARTBEAT_TIMEOUT_MS", heartbeat_config.get("timeout_ms")),
        DEFAULT_HEARTBEAT_TIMEOUT_MS,
    )

    return Settings(
        member_urls=member_urls,
        chairman_url=chairman_url,
        timeout_ms=timeout_ms if timeout_ms > 0 else DEFAULT_TIMEOUT_MS,
        heartbeat_interval_ms=max(heartbeat_interval_ms, MIN_HEARTBEAT_MS),
        heartbeat_timeout_ms=max(heartbeat_timeout_ms, MIN_HEARTBEAT_MS),
        persistence_enabled=_parse_bool(
            pick("PERSISTENCE_ENABLED", persistence_config.get("enabled")), True
        ),
        redis_url=str(pick("REDIS_URL", persistence_config.get("redis_url")) or DEFAULT_REDIS_URL),
        persistence_key_prefix=str(
            pick("PERSISTENCE_KEY_PREFIX", persistence_config.get("key_prefix")) or DEFAULT_KEY_PREFIX
        ),
        persistence_bootstrap_limit=_parse_int(
            pick("PERSISTENCE_BOOTSTRAP_LIMIT", persistence_config.get("bootstrap_limit")),
            DEFAULT_BOOTSTRAP_LIMIT,
        ),
    )


def load_cors_origins(environ: Optional[Mapping[str, str]] = None) -> list[str]:
    """CORS origins are needed when the app is built, before full settings load."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    return _split_csv(environ.get("CORS_ORIGINS") or DEFAULT_CORS_ORIGINS)
