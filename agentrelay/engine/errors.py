"""Exception hierarchy for the session orchestrator.

Specific exceptions for each failure mode. Per-invocation failures
are converted to a terminal error status inside the backends; these
types cover startup, configuration, and programming errors.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base exception for all agentrelay errors."""


class BackendUnavailableError(RelayError):
    """Backend tool or server is not installed or not reachable."""
    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' is not available: {reason}")


class BackendStartupError(RelayError):
    """Backend server process failed to become ready."""
    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' failed to start: {reason}")


class SpawnError(RelayError):
    """A backend subprocess could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command}: {reason}")


class ServerRequestError(RelayError):
    """The backend server answered with a non-OK status."""
    def __init__(self, method: str, path: str, status: int, body: str = ""):
        self.method = method
        self.path = path
        self.status = status
        self.body = body
        detail = f" - {body}" if body else ""
        super().__init__(f"{method} {path} failed: {status}{detail}")


class InvalidTransitionError(RelayError, ValueError):
    """Run state moved along an edge the state machine does not allow."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none"
        super().__init__(
            f"Invalid state transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class ConfigError(RelayError):
    """Configuration file is malformed."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid config {path}: {reason}")
