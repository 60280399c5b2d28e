"""YAML configuration loader.

Loads a single YAML file on top of the env-derived defaults. Every
section and key is optional; unknown keys are logged and ignored.

Example YAML:
    server:
      host: 127.0.0.1
      port: 3001
      public_url: http://127.0.0.1:3001

    agent:
      command: claude
      model: claude-sonnet-4-5
      stop_grace_seconds: 5
      init_timeout_seconds: 15
      env:
        ANTHROPIC_LOG: debug

    permissions:
      timeout_seconds: 60
      poll_interval_seconds: 0.25
      mcp_server_name: gatehouse-permissions

    streams:
      queue_size: 1000
      heartbeat_seconds: 30

    logging:
      level: INFO
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import GatehouseConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# section -> {yaml key: (config field, converter)}
_SECTIONS: dict[str, dict[str, tuple[str, Any]]] = {
    "server": {
        "host": ("host", str),
        "port": ("port", int),
        "public_url": ("public_url", str),
    },
    "agent": {
        "command": ("agent_command", str),
        "model": ("default_model", str),
        "env": ("agent_env", dict),
        "stop_grace_seconds": ("stop_grace_seconds", float),
        "max_line_bytes": ("max_line_bytes", int),
        "stderr_tail_bytes": ("stderr_tail_bytes", int),
        "wait_for_init": ("wait_for_init", bool),
        "init_timeout_seconds": ("init_timeout_seconds", float),
    },
    "permissions": {
        "timeout_seconds": ("permission_timeout_seconds", float),
        "poll_interval_seconds": ("permission_poll_interval_seconds", float),
        "mcp_server_name": ("mcp_server_name", str),
    },
    "streams": {
        "queue_size": ("observer_queue_size", int),
        "heartbeat_seconds": ("heartbeat_interval_seconds", float),
    },
    "logging": {
        "level": ("log_level", str),
        "requests": ("log_requests", bool),
    },
}


def load_yaml_config(
    path: str | Path,
    base: GatehouseConfig | None = None,
) -> GatehouseConfig:
    """Load and parse a YAML config file.

    Values from *path* override *base* (``GatehouseConfig.from_env()``
    when omitted). Raises FileNotFoundError / yaml.YAMLError as-is and
    ConfigError when the document has the wrong shape.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    config = base if base is not None else GatehouseConfig.from_env()
    overrides: dict[str, Any] = {}
    for section, value in raw.items():
        fields = _SECTIONS.get(section)
        if fields is None:
            logger.warning("load_yaml_config: ignoring unknown section '%s'", section)
            continue
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ConfigError(str(path), f"section '{section}' must be a mapping")
        for key, item in value.items():
            target = fields.get(key)
            if target is None:
                logger.warning(
                    "load_yaml_config: ignoring unknown key '%s.%s'", section, key,
                )
                continue
            field_name, convert = target
            overrides[field_name] = _convert(path, f"{section}.{key}", item, convert)

    if "agent_env" in overrides:
        overrides["agent_env"] = {
            str(k): str(v) for k, v in overrides["agent_env"].items()
        }
    logger.info(
        "Parsed YAML config %s: %s",
        path.name, ", ".join(sorted(overrides)) if overrides else "(no overrides)",
    )
    return dataclasses.replace(config, **overrides)


def _convert(path: Path, key: str, value: Any, convert: Any) -> Any:
    if convert is dict:
        if not isinstance(value, dict):
            raise ConfigError(str(path), f"'{key}' must be a mapping")
        return value
    if convert is bool:
        if isinstance(value, bool):
            return value
        raise ConfigError(str(path), f"'{key}' must be true or false")
    try:
        return convert(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(path), f"'{key}': {exc}") from exc
