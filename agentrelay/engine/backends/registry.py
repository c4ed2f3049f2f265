"""Backend construction from configuration."""
from __future__ import annotations

import logging

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.models import PermissionMode

from .base import AgentBackend
from .exec_backend import ExecBackend
from .server_backend import ServerBackend

logger = logging.getLogger(__name__)

_BACKEND_CLASSES: dict[str, type[AgentBackend]] = {
    "exec": ExecBackend,
    "server": ServerBackend,
}


def backend_names() -> list[str]:
    return sorted(_BACKEND_CLASSES)


def build_backend(
    config: RelayConfig,
    *,
    permission_mode: PermissionMode = PermissionMode.DEFAULT,
    model: str | None = None,
) -> AgentBackend:
    """Create the backend selected by ``config.backend``.

    *model* overrides the configured model for this run only.
    """
    if config.backend not in _BACKEND_CLASSES:
        raise ValueError(
            f"Unknown backend '{config.backend}'. "
            f"Available: {', '.join(backend_names())}"
        )

    if config.backend == "exec":
        cfg = config.exec_backend
        backend: AgentBackend = ExecBackend(
            cfg.command,
            model=model or cfg.model,
            permission_mode=permission_mode,
            api_key_env=cfg.api_key_env,
            enabled_tools=cfg.enabled_tools,
            cwd=cfg.cwd or config.cwd,
            probe_timeout=config.probe_timeout_seconds,
        )
    else:
        cfg = config.server_backend
        backend = ServerBackend(
            cfg.command,
            model=model or cfg.model,
            permission_mode=permission_mode,
            base_url=cfg.base_url,
            port=cfg.port,
            hostname=cfg.hostname,
            start_server=cfg.start_server,
            startup_timeout=cfg.startup_timeout_seconds,
            health_poll_interval=cfg.health_poll_interval_seconds,
            request_timeout=cfg.request_timeout_seconds,
            session_title=cfg.session_title,
            cwd=cfg.cwd or config.cwd,
            probe_timeout=config.probe_timeout_seconds,
        )

    logger.info(
        "Built %s backend (command=%s model=%s mode=%s)",
        backend.name, backend.command, backend.model, permission_mode.value,
    )
    return backend
