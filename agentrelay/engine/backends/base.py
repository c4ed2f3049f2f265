"""Abstract base for agent backends.

Each backend wraps a different coding-agent runtime (a CLI spawned
per invocation, or a long-lived HTTP server). The orchestrator calls
invoke() for every dispatched prompt and only ever sees canonical
events; the backend's own stream format stays behind its translator.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import shutil
from typing import AsyncIterator

from agentrelay.adapters.events import CanonicalEvent
from agentrelay.engine.models import PermissionMode

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0


async def run_probe(
    command: str,
    args: list[str],
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    env: dict[str, str] | None = None,
) -> tuple[int | None, str]:
    """Run a short-lived command and capture stdout.

    Returns (returncode, stdout). returncode is None when the command
    could not be started or did not finish within *timeout*; callers
    treat that as "not installed".
    """
    try:
        # args passed as a list, no shell
        proc = await asyncio.create_subprocess_exec(
            command, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except OSError as exc:
        logger.debug("Probe %s %s failed to start: %s", command, args, exc)
        return None, ""

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Probe %s %s timed out after %.1fs", command, args, timeout,
        )
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        return None, ""
    return proc.returncode, stdout.decode("utf-8", errors="replace")


class AgentBackend(abc.ABC):
    """Abstract backend interface.

    Implementations:
    - ExecBackend: spawns a CLI per invocation, parses JSONL stdout
    - ServerBackend: drives a local HTTP server with an SSE feed
    """

    def __init__(
        self,
        command: str,
        *,
        model: str,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        self._command = self.resolve_command(command)
        self._model = model
        self._default_model = model
        self._permission_mode = permission_mode
        self._probe_timeout = probe_timeout
        self._session_token: str | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'exec', 'server')."""

    @abc.abstractmethod
    async def invoke(
        self,
        prompt: str,
        session_token: str | None = None,
    ) -> AsyncIterator[CanonicalEvent]:
        """Run one prompt.

        Yields Status(starting) first, then content and tool events,
        then exactly one terminal Status (idle, error or stopped).
        After the stream ends, session_token holds the continuation
        token for the next invocation.
        """
        yield  # pragma: no cover

    @abc.abstractmethod
    async def cancel(self) -> bool:
        """Request cancellation of the in-flight invocation.

        Returns True if something was actually cancelled. Safe to
        call when idle.
        """

    async def start(self) -> None:
        """One-time preparation before the first invocation.

        Default no-op. Override in backends that keep a server
        or subscription alive.
        """
        return None

    async def dispose(self) -> None:
        """Release all held resources. Must be idempotent."""
        await self.cancel()

    async def respond_to_permission(self, request_id: str, approved: bool) -> bool:
        """Answer a forwarded permission request.

        Default: backends that gate tools by autonomy level have
        nothing to answer.
        """
        logger.debug(
            "[%s] Permission response ignored (handled by autonomy level): %s %s",
            self.name, request_id, approved,
        )
        return False

    def set_model(self, model: str | None) -> None:
        """Set the model for the next invocation. None restores the default."""
        self._model = model or self._default_model
        logger.debug("[%s] Model set to: %s", self.name, self._model)

    @property
    def model(self) -> str:
        return self._model

    def set_permission_mode(self, mode: PermissionMode) -> None:
        """Set the permission mode for the next invocation."""
        self._permission_mode = mode
        logger.debug("[%s] Permission mode set to: %s", self.name, mode.value)

    @property
    def permission_mode(self) -> PermissionMode:
        return self._permission_mode

    @property
    def session_token(self) -> str | None:
        """Opaque continuation token from the latest invocation."""
        return self._session_token

    @property
    def command(self) -> str:
        return self._command

    async def is_available(self) -> bool:
        """Check the backend CLI answers `--version` within the probe timeout."""
        returncode, _ = await run_probe(
            self._command, ["--version"], timeout=self._probe_timeout,
        )
        return returncode == 0

    async def get_version(self) -> str | None:
        """Return the backend CLI version string, or None if unavailable."""
        returncode, stdout = await run_probe(
            self._command, ["--version"], timeout=self._probe_timeout,
        )
        if returncode != 0:
            return None
        return stdout.strip() or None

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a backend binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s",
                    command, fallback,
                )
                return fallback
            return command
        return fallback or command
