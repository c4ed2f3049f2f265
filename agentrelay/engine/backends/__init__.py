"""Backend abstraction over coding-agent runtimes."""
from .base import AgentBackend
from .registry import backend_names, build_backend
from .exec_backend import ExecBackend, ExecStreamTranslator
from .server_backend import ServerBackend, ServerEventTranslator
from .server_client import ServerClient

__all__ = [
    "AgentBackend",
    "backend_names",
    "build_backend",
    "ExecBackend",
    "ExecStreamTranslator",
    "ServerBackend",
    "ServerEventTranslator",
    "ServerClient",
]
