"""Configuration loader for the chat relay.

Reads an optional JSON config file containing upstream, rate-limit and
serving parameters, then applies environment overrides. The upstream API
key is resolved from an environment variable at request time.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

DEFAULT_PORT = 3000


class ConfigError(ValueError):
    """Raised when the configuration file or environment is invalid."""


@dataclass
class UpstreamConfig:
    """Configuration for the upstream chat-completions service."""

    base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    connect_timeout: float = 10.0
    read_timeout: Optional[float] = 300.0

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env) or None

    @property
    def completions_url(self) -> str:
        return "{}/chat/completions".format(self.base_url.rstrip("/"))


@dataclass
class RateLimitConfig:
    """Fixed-window rate-limit parameters (per client key)."""

    points: int = 60
    duration: float = 60.0
    max_keys: int = 10000


@dataclass
class RelayConfig:
    """Top-level relay configuration."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_file: str = "logs/relay.log"
    static_dir: Optional[str] = "public"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    max_body_bytes: int = 1024 * 1024
    safety_rules_file: Optional[str] = None


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError("Config section '{}' must be an object".format(name))
    return value


def _optional_float(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError("{} must be a number or null, got {!r}".format(name, value))


def _port_from_env(default: int) -> int:
    value = os.getenv("PORT")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError("PORT must be an integer, got {!r}".format(value))


def load_config(path: Optional[Union[str, Path]] = None) -> RelayConfig:
    """Load relay configuration from an optional JSON file and the environment.

    Args:
        path: Path to the JSON config file. Falls back to the RELAY_CONFIG
            environment variable; when neither is set, defaults are used.

    Returns:
        A fully resolved RelayConfig instance.

    Raises:
        FileNotFoundError: If an explicit config file does not exist.
        ConfigError: If the config file or environment contains invalid data.
    """
    if path is None:
        path = os.getenv("RELAY_CONFIG") or None

    raw: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigError("Invalid JSON in {}: {}".format(path, exc))
        if not isinstance(raw, dict):
            raise ConfigError("Config file must contain a JSON object")

    defaults = RelayConfig()

    upstream_raw = _section(raw, "upstream")
    upstream_defaults = defaults.upstream
    upstream = UpstreamConfig(
        base_url=upstream_raw.get("base_url", upstream_defaults.base_url),
        api_key_env=upstream_raw.get("api_key_env", upstream_defaults.api_key_env),
        model=upstream_raw.get("model", upstream_defaults.model),
        temperature=float(
            upstream_raw.get("temperature", upstream_defaults.temperature)
        ),
        connect_timeout=float(
            upstream_raw.get("connect_timeout", upstream_defaults.connect_timeout)
        ),
        read_timeout=_optional_float(
            upstream_raw.get("read_timeout", upstream_defaults.read_timeout),
            "upstream.read_timeout",
        ),
    )

    rate_limit_raw = _section(raw, "rate_limit")
    rate_limit = RateLimitConfig(
        points=int(rate_limit_raw.get("points", defaults.rate_limit.points)),
        duration=float(rate_limit_raw.get("duration", defaults.rate_limit.duration)),
        max_keys=int(rate_limit_raw.get("max_keys", defaults.rate_limit.max_keys)),
    )
    if rate_limit.points < 1 or rate_limit.duration <= 0 or rate_limit.max_keys < 1:
        raise ConfigError(
            "rate_limit.points, rate_limit.duration and rate_limit.max_keys "
            "must be positive"
        )

    cors_origins = raw.get("cors_origins", defaults.cors_origins)
    if not isinstance(cors_origins, list):
        raise ConfigError("cors_origins must be a list of origins")

    return RelayConfig(
        upstream=upstream,
        rate_limit=rate_limit,
        host=os.getenv("HOST") or raw.get("host", defaults.host),
        port=_port_from_env(int(raw.get("port", defaults.port))),
        log_file=raw.get("log_file", defaults.log_file),
        static_dir=raw.get("static_dir", defaults.static_dir),
        cors_origins=cors_origins,
        max_body_bytes=int(raw.get("max_body_bytes", defaults.max_body_bytes)),
        safety_rules_file=raw.get("safety_rules_file"),
    )
