"""YAML configuration loader.

Loads a single YAML file layered over environment/default settings.

Example YAML:
    relay:
      backend: server
      poll_interval_seconds: 0.1
      permission_timeout_seconds: 120

    backends:
      exec:
        command: droid
        model: claude-sonnet-4-5-20250929
        api_key_env: FACTORY_API_KEY
        enabled_tools: [Read, Execute]
      server:
        command: opencode
        port: 4096
        hostname: 127.0.0.1
        start_server: true
        model: anthropic/claude-3-5-sonnet-20241022
"""
from __future__ import annotations

import logging
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from .config import (
    BACKEND_TYPES,
    ExecBackendConfig,
    RelayConfig,
    ServerBackendConfig,
)
from .errors import ConfigError

logger = logging.getLogger(__name__)

# Types accepted per field; int is accepted wherever float is.
_FIELD_TYPES: dict[type, dict[str, tuple[type, ...]]] = {
    RelayConfig: {
        "backend": (str,),
        "cwd": (str,),
        "poll_interval_seconds": (int, float),
        "keepalive_interval_seconds": (int, float),
        "permission_timeout_seconds": (int, float),
        "probe_timeout_seconds": (int, float),
        "event_queue_size": (int,),
        "log_level": (str,),
    },
    ExecBackendConfig: {
        "command": (str,),
        "model": (str,),
        "api_key_env": (str,),
        "enabled_tools": (list,),
        "cwd": (str,),
    },
    ServerBackendConfig: {
        "command": (str,),
        "model": (str,),
        "base_url": (str,),
        "port": (int,),
        "hostname": (str,),
        "start_server": (bool,),
        "startup_timeout_seconds": (int, float),
        "health_poll_interval_seconds": (int, float),
        "request_timeout_seconds": (int, float),
        "session_title": (str,),
        "cwd": (str,),
    },
}


def _apply_section(
    path: Path,
    section: str,
    target: Any,
    raw: dict[str, Any] | None,
) -> Any:
    """Return a copy of *target* with keys from *raw* applied."""
    if raw is None:
        return target
    if not isinstance(raw, dict):
        raise ConfigError(str(path), f"section '{section}' must be a mapping")

    allowed = _FIELD_TYPES[type(target)]
    known = {f.name for f in fields(target)}
    changes: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known or key not in allowed:
            logger.warning(
                "load_yaml_config: ignoring unknown key %s.%s in %s",
                section, key, path,
            )
            continue
        expected = allowed[key]
        # bool is a subclass of int; only accept it where bool is expected
        if isinstance(value, bool) and bool not in expected:
            valid = False
        else:
            valid = isinstance(value, expected)
        if not valid:
            names = "/".join(t.__name__ for t in expected)
            raise ConfigError(
                str(path),
                f"{section}.{key} must be {names}, got {type(value).__name__}",
            )
        if float in expected and isinstance(value, int):
            value = float(value)
        changes[key] = value
    return replace(target, **changes) if changes else target


def load_yaml_config(
    path: str | Path,
    base: RelayConfig | None = None,
) -> RelayConfig:
    """Load and parse a YAML config file.

    Values in the file override *base* (defaults when omitted).
    Unknown keys are logged and ignored; wrongly typed values raise
    ConfigError.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(str(path), f"YAML parse error: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base or RelayConfig()
    config = _apply_section(path, "relay", config, raw.get("relay"))

    backends_raw = raw.get("backends") or {}
    if not isinstance(backends_raw, dict):
        raise ConfigError(str(path), "section 'backends' must be a mapping")
    for name in backends_raw:
        if name not in BACKEND_TYPES:
            logger.warning(
                "load_yaml_config: unknown backend '%s' in %s, skipping",
                name, path,
            )

    config = replace(
        config,
        exec_backend=_apply_section(
            path, "backends.exec", config.exec_backend,
            backends_raw.get("exec"),
        ),
        server_backend=_apply_section(
            path, "backends.server", config.server_backend,
            backends_raw.get("server"),
        ),
    )

    if config.backend not in BACKEND_TYPES:
        raise ConfigError(
            str(path),
            f"relay.backend must be one of {', '.join(BACKEND_TYPES)}",
        )
    if any(not isinstance(t, str) for t in config.exec_backend.enabled_tools):
        raise ConfigError(str(path), "backends.exec.enabled_tools must be strings")

    logger.info(
        "load_yaml_config: backend=%s exec_model=%s server_model=%s",
        config.backend, config.exec_backend.model, config.server_backend.model,
    )
    return config
