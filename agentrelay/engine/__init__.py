"""Session engine: queue, run state, backends and orchestrator."""
from .models import IDLE, Mode, PermissionMode, QueueItem, RunPhase, RunState
from .config import ExecBackendConfig, RelayConfig, ServerBackendConfig
from .errors import (
    BackendStartupError,
    BackendUnavailableError,
    ConfigError,
    InvalidTransitionError,
    RelayError,
    ServerRequestError,
    SpawnError,
)
from .message_queue import CoalescingMessageQueue

__all__ = [
    # Orchestrator (lazy import to avoid circular deps)
    "SessionOrchestrator",
    "PendingPermissions",
    # Models
    "IDLE",
    "Mode",
    "PermissionMode",
    "QueueItem",
    "RunPhase",
    "RunState",
    "CoalescingMessageQueue",
    # Config
    "RelayConfig",
    "ExecBackendConfig",
    "ServerBackendConfig",
    "load_yaml_config",
    # Backends (lazy import)
    "AgentBackend",
    "build_backend",
    # Errors
    "BackendStartupError",
    "BackendUnavailableError",
    "ConfigError",
    "InvalidTransitionError",
    "RelayError",
    "ServerRequestError",
    "SpawnError",
]


def __getattr__(name: str):
    if name == "SessionOrchestrator":
        from .orchestrator import SessionOrchestrator
        return SessionOrchestrator
    if name == "PendingPermissions":
        from .permissions import PendingPermissions
        return PendingPermissions
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "AgentBackend":
        from .backends.base import AgentBackend
        return AgentBackend
    if name == "build_backend":
        from .backends.registry import build_backend
        return build_backend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
