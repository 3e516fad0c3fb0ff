"""Load board settings from `.lane_board/config.yaml` and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    ENV_DEVELOPMENT,
    ENV_PRODUCTION,
    LANE_ORDER,
    STATE_DIR_NAME,
)
from .errors import ConfigurationError
from .io_utils import load_yaml_with_error
from .task_engine.store import BoardStorage, MemoryBoardStorage, YamlBoardStorage

VALID_STORAGE = {"memory", "yaml"}
VALID_ENVIRONMENTS = {ENV_DEVELOPMENT, ENV_PRODUCTION, "test"}
VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}

ENV_OVERRIDES = {
    "LANE_BOARD_ENV": "environment",
    "LANE_BOARD_STORAGE": "storage",
    "LANE_BOARD_DATA_DIR": "data_dir",
    "LANE_BOARD_CACHE_TTL": "cache_ttl",
    "LANE_BOARD_HEARTBEAT_INTERVAL": "heartbeat_interval",
    "LANE_BOARD_LOG_LEVEL": "log_level",
}


@dataclass
class BoardSettings:
    environment: str = ENV_DEVELOPMENT
    storage: str = "memory"
    data_dir: Path = field(default_factory=lambda: Path.cwd() / STATE_DIR_NAME)
    cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS
    heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS
    log_level: str = "INFO"
    transitions: Optional[dict[str, list[str]]] = None
    host: str = "127.0.0.1"
    port: int = 8765

    @property
    def production(self) -> bool:
        return self.environment == ENV_PRODUCTION


def load_board_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Directory holding `.lane_board/`.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = project_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = load_yaml_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _as_float(key: str, raw: Any, *, minimum: float = 0.0) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be a number, got {raw!r}", config_key=key) from None
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum:g}, got {value:g}", config_key=key)
    return value


def _parse_transitions(raw: Any) -> Optional[dict[str, list[str]]]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError("transitions must be a mapping of lane -> [lanes]", config_key="transitions")
    table: dict[str, list[str]] = {}
    for source, targets in raw.items():
        if source not in LANE_ORDER:
            raise ConfigurationError(f"Unknown lane in transitions: {source}", config_key="transitions")
        if not isinstance(targets, list) or any(t not in LANE_ORDER for t in targets):
            raise ConfigurationError(f"Invalid targets for lane {source}: {targets!r}", config_key="transitions")
        table[str(source)] = [str(t) for t in targets]
    return table


def load_settings(
    project_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BoardSettings:
    """Merge defaults, the config file and `LANE_BOARD_*` environment overrides.

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid.
    """
    project_dir = Path(project_dir) if project_dir is not None else Path.cwd()
    environ = os.environ if environ is None else environ

    config, err = load_board_config(project_dir)
    if err:
        raise ConfigurationError(f"Cannot read config file: {err}", config_key=CONFIG_FILE)

    merged: dict[str, Any] = dict(config)
    for env_key, setting in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value not in (None, ""):
            merged[setting] = value

    settings = BoardSettings(data_dir=project_dir / STATE_DIR_NAME)

    environment = str(merged.get("environment", settings.environment)).strip().lower()
    if environment not in VALID_ENVIRONMENTS:
        raise ConfigurationError(f"Unknown environment: {environment}", config_key="environment")
    settings.environment = environment

    storage = str(merged.get("storage", settings.storage)).strip().lower()
    if storage not in VALID_STORAGE:
        raise ConfigurationError(
            f"Unknown storage backend: {storage}. Must be one of: {', '.join(sorted(VALID_STORAGE))}",
            config_key="storage",
        )
    settings.storage = storage

    if merged.get("data_dir"):
        data_dir = Path(str(merged["data_dir"])).expanduser()
        settings.data_dir = data_dir if data_dir.is_absolute() else project_dir / data_dir

    if "cache_ttl" in merged:
        settings.cache_ttl = _as_float("cache_ttl", merged["cache_ttl"])
    if "heartbeat_interval" in merged:
        settings.heartbeat_interval = _as_float("heartbeat_interval", merged["heartbeat_interval"])

    log_level = str(merged.get("log_level", settings.log_level)).strip().upper()
    if log_level not in VALID_LOG_LEVELS:
        raise ConfigurationError(f"Unknown log level: {log_level}", config_key="log_level")
    settings.log_level = log_level

    settings.transitions = _parse_transitions(merged.get("transitions"))

    if merged.get("host"):
        settings.host = str(merged["host"])
    if "port" in merged:
        try:
            settings.port = int(merged["port"])
        except (TypeError, ValueError):
            raise ConfigurationError(f"port must be an integer, got {merged['port']!r}", config_key="port") from None

    return settings


def build_storage(settings: BoardSettings) -> BoardStorage:
    if settings.storage == "yaml":
        return YamlBoardStorage(settings.data_dir)
    return MemoryBoardStorage()
