"""
Engine configuration and logging setup.

Precedence, lowest first: built-in defaults, TOML file, ``EMBER_CHAT_*`` environment
variables, explicit overrides (CLI flags). The TOML file lives at
``~/.config/ember-chat/config.toml`` unless ``EMBER_CHAT_CONFIG`` points elsewhere::

    base_url = "http://localhost:11434"
    backend = "remote"            # or "local"
    default_role = "chat"
    reveal_thinking = true        # omit to follow each role's own setting
    log_level = "info"

    [chat_sampling]
    temperature = 0.6
    top_p = 0.9
    num_ctx = 32768

    [generate_sampling]
    temperature = 0.3
    top_p = 0.6
"""

from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .backends import CHAT_SAMPLING, DEFAULT_BASE_URL, GENERATE_SAMPLING, SamplingParams
from .exceptions import ConfigError
from .roles import DEFAULT_ROLE_ID
from .think_filter import DEFAULT_MARKER

logger = logging.getLogger("ember_chat.config")

CONFIG_ENV_VAR = "EMBER_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/ember-chat/config.toml")
BACKENDS = ("remote", "local")

_ENV_OVERRIDES = {
    "EMBER_CHAT_BASE_URL": "base_url",
    "EMBER_CHAT_BACKEND": "backend",
    "EMBER_CHAT_LOG_LEVEL": "log_level",
    "EMBER_CHAT_ROLE": "default_role",
}


@dataclass(frozen=True)
class EngineConfig:
    base_url: str = DEFAULT_BASE_URL
    backend: str = "remote"
    request_timeout: float | None = None
    connect_timeout: float = 10.0
    default_role: str = DEFAULT_ROLE_ID
    reveal_thinking: bool | None = None
    think_marker: str = DEFAULT_MARKER
    log_level: str = "warning"
    chat_sampling: SamplingParams = field(default=CHAT_SAMPLING)
    generate_sampling: SamplingParams = field(default=GENERATE_SAMPLING)

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ConfigError(f"backend must be one of {BACKENDS}; got {self.backend!r}")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"base_url must be an http(s) URL; got {self.base_url!r}")
        if self.connect_timeout <= 0:
            raise ConfigError("connect_timeout must be > 0")
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ConfigError("request_timeout must be > 0 (or unset for no limit)")

    def with_overrides(self, **overrides: Any) -> EngineConfig:
        """Copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return dataclasses.replace(self, **changes)


def _sampling_from_table(table: Any, fallback: SamplingParams, name: str) -> SamplingParams:
    if not isinstance(table, dict):
        raise ConfigError(f"[{name}] must be a table")
    allowed = {f.name for f in dataclasses.fields(SamplingParams)}
    unknown = set(table) - allowed
    if unknown:
        raise ConfigError(f"Unknown keys in [{name}]: {', '.join(sorted(unknown))}")
    return dataclasses.replace(fallback, **table)


def _from_mapping(data: dict[str, Any], base: EngineConfig) -> EngineConfig:
    allowed = {f.name for f in dataclasses.fields(EngineConfig)}
    unknown = set(data) - allowed
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    values = dict(data)
    if "chat_sampling" in values:
        values["chat_sampling"] = _sampling_from_table(
            values["chat_sampling"], base.chat_sampling, "chat_sampling"
        )
    if "generate_sampling" in values:
        values["generate_sampling"] = _sampling_from_table(
            values["generate_sampling"], base.generate_sampling, "generate_sampling"
        )
    try:
        return dataclasses.replace(base, **values)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


def load_toml(path: Path) -> dict[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def load_config(
    path: str | Path | None = None, env: dict[str, str] | None = None
) -> EngineConfig:
    """Resolve configuration from file and environment.

    An explicit *path* must exist. The default path is optional.
    """
    env = dict(os.environ) if env is None else env
    config = EngineConfig()

    explicit = path is not None or CONFIG_ENV_VAR in env
    config_path = Path(path or env.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH).expanduser()
    if config_path.is_file():
        try:
            data = load_toml(config_path)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        config = _from_mapping(data, config)
        logger.debug("[EmberChat Config] Loaded %s", config_path)
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    env_values = {field_name: env[var] for var, field_name in _ENV_OVERRIDES.items() if var in env}
    if env_values:
        config = _from_mapping(env_values, config)
    return config


def resolve_log_level(level: str | int, fallback: int = logging.WARNING) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        if level.isdigit():
            return int(level)
        resolved = logging.getLevelName(level.upper())
        if isinstance(resolved, int):
            return resolved
    logger.warning(
        "[EmberChat Config] Unsupported log level '%s'; falling back to %s.",
        level,
        logging.getLevelName(fallback),
    )
    return fallback


def configure_logging(level: str | int) -> None:
    """Root logging setup for the CLI. Library code never calls this."""
    logging.basicConfig(
        level=resolve_log_level(level),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
