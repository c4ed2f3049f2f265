"""Transport side of the relay.

TransportBridge turns canonical events and turn boundaries into the
message vocabulary a remote operator understands. ConsoleTransport is
a line-oriented stand-in for a remote channel: prompts and commands
come in on stdin, outgoing messages are printed as JSON lines.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from typing import Any, Protocol, TextIO, runtime_checkable

from agentrelay.adapters.events import (
    CanonicalEvent,
    FileEdit,
    PermissionRequest,
    TerminalOutput,
    TokenUsage,
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Ordered, reliable channel to the remote operator."""

    async def send_session_event(self, event: dict[str, Any]) -> None: ...

    async def send_message(self, message: dict[str, Any]) -> None: ...

    async def keep_alive(self, thinking: bool) -> None: ...

    async def close(self) -> None: ...


def _message_id() -> str:
    return str(uuid.uuid4())


class TransportBridge:
    """Maps canonical events to transport messages.

    Registered as an EventBus handler for per-event messages; the
    orchestrator calls the turn-level helpers directly.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    @property
    def transport(self) -> Transport:
        return self._transport

    async def handle(self, event: CanonicalEvent) -> None:
        """EventBus handler for tool, file, terminal and usage events."""
        message = self.to_message(event)
        if message is not None:
            await self._transport.send_message(message)

    @staticmethod
    def to_message(event: CanonicalEvent) -> dict[str, Any] | None:
        """Transport message for *event*, or None when it has none.

        Model output and status are turn-level and handled by the
        orchestrator.
        """
        if isinstance(event, ToolCall):
            return {
                "type": "tool-call",
                "name": event.name,
                "input": event.args,
                "callId": event.call_id,
                "id": _message_id(),
            }
        if isinstance(event, ToolResult):
            return {
                "type": "tool-result",
                "name": event.name,
                "output": event.result,
                "callId": event.call_id,
                "id": _message_id(),
            }
        if isinstance(event, FileEdit):
            message = {
                "type": "fs-edit",
                "description": event.description,
                "id": _message_id(),
            }
            if event.diff is not None:
                message["diff"] = event.diff
            if event.path is not None:
                message["path"] = event.path
            return message
        if isinstance(event, TerminalOutput):
            return {"type": "terminal-output", "data": event.data, "id": _message_id()}
        if isinstance(event, PermissionRequest):
            return {
                "type": "permission-request",
                "permissionId": event.id,
                "reason": event.reason,
                "payload": event.payload,
                "id": _message_id(),
            }
        if isinstance(event, TokenUsage):
            return {
                "type": "token-count",
                "turns": event.turns,
                "durationMs": event.duration_ms,
                "id": _message_id(),
            }
        return None

    async def task_started(self) -> None:
        await self._transport.send_message({"type": "task_started", "id": _message_id()})

    async def task_complete(self) -> None:
        await self._transport.send_message({"type": "task_complete", "id": _message_id()})

    async def turn_aborted(self) -> None:
        await self._transport.send_message({"type": "turn_aborted", "id": _message_id()})

    async def agent_message(self, text: str) -> None:
        await self._transport.send_message(
            {"type": "message", "message": text, "id": _message_id()},
        )

    async def ready(self) -> None:
        await self._transport.send_session_event({"type": "ready"})

    async def keep_alive(self, thinking: bool) -> None:
        await self._transport.keep_alive(thinking)


class ConsoleTransport:
    """stdin/stdout transport used by the `agentrelay` command.

    Input lines are prompts, except for these commands:
      /abort             cancel the running turn
      /model <m|none>    change (or clear) the model for the next prompt
      /mode <mode>       change the permission mode for the next prompt
      /allow <id>        approve a forwarded permission request
      /deny <id>         deny a forwarded permission request
      /quit              shut down
    """

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
    ) -> None:
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _write(self, record: dict[str, Any]) -> None:
        self._stdout.write(json.dumps(record, default=str) + "\n")
        self._stdout.flush()

    async def send_session_event(self, event: dict[str, Any]) -> None:
        if not self._closed:
            self._write({"kind": "session-event", **event})

    async def send_message(self, message: dict[str, Any]) -> None:
        if not self._closed:
            self._write({"kind": "message", **message})

    async def keep_alive(self, thinking: bool) -> None:
        logger.debug("keep-alive thinking=%s", thinking)

    async def close(self) -> None:
        self._closed = True

    async def _readline(self) -> str:
        return await asyncio.to_thread(self._stdin.readline)

    async def serve(self, orchestrator: Any) -> None:
        """Feed stdin into *orchestrator* until EOF or /quit."""
        while not self._closed:
            line = await self._readline()
            if not line:
                logger.info("stdin closed, shutting down")
                break
            text = line.strip()
            if not text:
                continue
            if not text.startswith("/"):
                orchestrator.handle_user_message(text)
                continue

            command, _, arg = text.partition(" ")
            arg = arg.strip()
            if command == "/quit":
                break
            if command == "/abort":
                await orchestrator.abort()
            elif command == "/model" and arg:
                model = None if arg.lower() == "none" else arg
                orchestrator.handle_mode_update({"model": model})
            elif command == "/mode" and arg:
                orchestrator.handle_mode_update({"permissionMode": arg})
            elif command in ("/allow", "/deny") and arg:
                orchestrator.resolve_permission(arg, command == "/allow")
            else:
                logger.warning("Unknown command: %s", text)
