"""OpenCode server backend.

Starts (or attaches to) an `opencode serve` process once, creates one
conversation on it and keeps a subscription to its event feed open.
Each invocation posts a prompt and waits for the reply; live feed
events for the active conversation are interleaved into the
invocation's output while the request is in flight.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator

import aiohttp

from agentrelay.adapters.events import (
    CanonicalEvent,
    FileEdit,
    ModelOutput,
    PermissionRequest,
    Status,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_RUNNING,
    STATUS_STARTING,
    STATUS_STOPPED,
    TerminalOutput,
    ToolCall,
    ToolResult,
)
from agentrelay.engine.config import (
    DEFAULT_OPENCODE_HOSTNAME,
    DEFAULT_OPENCODE_MODEL,
    DEFAULT_OPENCODE_PORT,
)
from agentrelay.engine.errors import (
    BackendStartupError,
    BackendUnavailableError,
    ServerRequestError,
)
from agentrelay.engine.models import PermissionMode

from .base import DEFAULT_PROBE_TIMEOUT, AgentBackend
from .server_client import ServerClient

logger = logging.getLogger(__name__)

FILE_EDIT_TOOLS = frozenset({"write", "edit"})
TERMINAL_TOOLS = frozenset({"bash"})

STREAM_CLOSED = "event stream closed"

# Failures of a single HTTP exchange with the server.
_REQUEST_ERRORS = (
    aiohttp.ClientError,
    ServerRequestError,
    asyncio.TimeoutError,
    OSError,
)


def _tool_events(
    name: str,
    result: Any,
    call_id: str,
    path: str | None = None,
) -> list[CanonicalEvent]:
    events: list[CanonicalEvent] = [
        ToolResult(name=name, result=result, call_id=call_id),
    ]
    if name in FILE_EDIT_TOOLS:
        events.append(FileEdit(
            description=f"File modified by {name}",
            path=path,
            diff=result if isinstance(result, str) else None,
        ))
    if name in TERMINAL_TOOLS:
        events.append(TerminalOutput(
            data=result if isinstance(result, str) else json.dumps(result),
        ))
    return events


class ServerEventTranslator:
    """Maps server feed events and reply parts to canonical events."""

    @staticmethod
    def event_session_id(event: dict[str, Any]) -> str | None:
        """Conversation an event belongs to, when the event says."""
        props = event.get("properties") or {}
        if not isinstance(props, dict):
            return None
        if props.get("sessionID"):
            return props["sessionID"]
        for key in ("info", "part"):
            nested = props.get(key)
            if isinstance(nested, dict) and nested.get("sessionID"):
                return nested["sessionID"]
        return None

    def translate_event(self, event: dict[str, Any]) -> list[CanonicalEvent]:
        etype = event.get("type", "")
        props = event.get("properties") or {}
        if not isinstance(props, dict):
            props = {}

        if etype in ("message.created", "message.updated", "message.delta"):
            content = props.get("content")
            if content:
                return [ModelOutput(text_delta=str(content))]
            return []

        if etype in ("tool.called", "tool.start"):
            args = props.get("arguments") or props.get("args") or {}
            return [ToolCall(
                name=props.get("name") or props.get("tool") or "unknown",
                args=args if isinstance(args, dict) else {},
                call_id=props.get("id") or str(uuid.uuid4()),
            )]

        if etype in ("tool.result", "tool.end"):
            return _tool_events(
                props.get("name") or props.get("tool") or "unknown",
                props.get("result"),
                props.get("id") or "",
                path=props.get("path"),
            )

        if etype in ("permission.requested", "permission.required"):
            return [PermissionRequest(
                id=props.get("id") or "",
                reason=(
                    props.get("reason")
                    or props.get("message")
                    or "Permission required"
                ),
                payload=props,
            )]

        if etype == "session.status":
            status = props.get("status")
            if status == "running":
                return [Status(phase=STATUS_RUNNING)]
            if status == "error":
                return [Status(
                    phase=STATUS_ERROR,
                    detail=props.get("message") or "Unknown error",
                )]
            # idle/completed: the invocation emits its own terminal status
            return []

        if etype == "error":
            return [Status(
                phase=STATUS_ERROR,
                detail=props.get("message") or "Unknown error",
            )]

        return []

    def translate_parts(self, parts: list[dict[str, Any]]) -> list[CanonicalEvent]:
        """Translate the inline parts of a prompt reply."""
        events: list[CanonicalEvent] = []
        for part in parts:
            ptype = part.get("type")
            if ptype == "text":
                if part.get("text"):
                    events.append(ModelOutput(full_text=part["text"]))
            elif ptype == "tool_call":
                args = part.get("args") or {}
                events.append(ToolCall(
                    name=part.get("toolName") or "unknown",
                    args=args if isinstance(args, dict) else {},
                    call_id=part.get("toolCallId") or str(uuid.uuid4()),
                ))
            elif ptype == "tool_result":
                events.extend(_tool_events(
                    part.get("toolName") or "unknown",
                    part.get("result"),
                    part.get("toolCallId") or "",
                ))
        return events


class ServerBackend(AgentBackend):
    """Backend backed by a local OpenCode HTTP server."""

    def __init__(
        self,
        command: str = "opencode",
        *,
        model: str = DEFAULT_OPENCODE_MODEL,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        base_url: str | None = None,
        port: int = DEFAULT_OPENCODE_PORT,
        hostname: str = DEFAULT_OPENCODE_HOSTNAME,
        start_server: bool = True,
        startup_timeout: float = 30.0,
        health_poll_interval: float = 1.0,
        request_timeout: float = 600.0,
        session_title: str = "agentrelay session",
        cwd: str | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        client: ServerClient | None = None,
    ) -> None:
        super().__init__(
            command,
            model=model,
            permission_mode=permission_mode,
            probe_timeout=probe_timeout,
        )
        self._client = client or ServerClient(
            base_url,
            hostname=hostname,
            port=port,
            request_timeout=request_timeout,
        )
        self._start_server = start_server
        self._startup_timeout = startup_timeout
        self._health_poll_interval = health_poll_interval
        self._session_title = session_title
        self._cwd = cwd
        self._translator = ServerEventTranslator()

        self._started = False
        # Server spawned or attached; kept across a failed start() so a
        # retry does not launch a second server.
        self._connected = False
        self._disposed = False
        self._start_lock = asyncio.Lock()
        self._subscription_task: asyncio.Task | None = None
        self._request_task: asyncio.Task | None = None
        self._live: asyncio.Queue | None = None
        self._live_session: str | None = None
        self._cancel_requested = False
        # True from the start of invoke() until the prompt is posted; a
        # cancel() in that window is latched in _cancel_pending.
        self._preparing = False
        self._cancel_pending = False

    @property
    def name(self) -> str:
        return "server"

    @property
    def client(self) -> ServerClient:
        return self._client

    @property
    def is_running(self) -> bool:
        return self._request_task is not None and not self._request_task.done()

    async def is_available(self) -> bool:
        """Attached servers are probed by health check, not by CLI."""
        if self._start_server:
            return await super().is_available()
        try:
            health = await self._client.health(timeout=self._probe_timeout)
        except _REQUEST_ERRORS as exc:
            logger.debug("[server] Health probe failed: %s", exc)
            return False
        return bool(health.get("healthy"))

    async def start(self) -> None:
        """Connect to the server, open the feed and create a conversation."""
        async with self._start_lock:
            if self._started:
                return
            if not self._connected:
                await self._connect()
            self._disposed = False
            task = self._subscription_task
            if task is None or task.done():
                self._subscription_task = asyncio.create_task(self._subscribe())
            if not self._session_token:
                session = await self._client.create_session(self._session_title)
                self._session_token = session["id"]
                logger.debug("[server] Session created: %s", self._session_token)
            self._started = True

    async def _connect(self) -> None:
        if self._start_server:
            await self._client.start_server(
                self._command,
                timeout=self._startup_timeout,
                poll_interval=self._health_poll_interval,
                cwd=self._cwd,
            )
        else:
            try:
                health = await self._client.health()
            except _REQUEST_ERRORS as exc:
                raise BackendUnavailableError(
                    "server", f"no server at {self._client.base_url}: {exc}",
                ) from exc
            if not health.get("healthy"):
                raise BackendUnavailableError(
                    "server", f"server at {self._client.base_url} is unhealthy",
                )
            logger.info(
                "[server] Attached to %s (version %s)",
                self._client.base_url, health.get("version", "?"),
            )
        self._connected = True

    # ── Event feed ────────────────────────────────────────────

    async def _subscribe(self) -> None:
        reason = STREAM_CLOSED
        try:
            async for raw in self._client.events():
                await self._handle_feed_event(raw)
        except asyncio.CancelledError:
            raise
        except _REQUEST_ERRORS as exc:
            reason = f"{STREAM_CLOSED}: {exc}"

        if self._disposed:
            return
        logger.warning("[server] Event subscription ended: %s", reason)
        self._deliver(Status(phase=STATUS_ERROR, detail=reason))

    async def _handle_feed_event(self, raw: dict[str, Any]) -> None:
        logger.debug("[server] Event: %s", raw.get("type"))
        session_id = self._translator.event_session_id(raw)
        active = self._live_session or self._session_token
        if session_id and session_id != active:
            return
        for event in self._translator.translate_event(raw):
            if isinstance(event, PermissionRequest) and self._permission_mode.auto_approves:
                await self._auto_approve(event)
                continue
            self._deliver(event)

    async def _auto_approve(self, request: PermissionRequest) -> None:
        logger.info(
            "[server] Auto-approving permission %s (%s mode)",
            request.id, self._permission_mode.value,
        )
        await self.respond_to_permission(request.id, True)

    def _deliver(self, event: CanonicalEvent) -> None:
        if self._live is None:
            logger.debug(
                "[server] Dropping %s event outside an invocation",
                event.event_type,
            )
            return
        self._live.put_nowait(event)

    # ── Invocation ────────────────────────────────────────────

    async def invoke(
        self,
        prompt: str,
        session_token: str | None = None,
    ) -> AsyncIterator[CanonicalEvent]:
        """Post one prompt and stream its events."""
        self._preparing = True
        self._cancel_pending = False
        try:
            async for event in self._run(prompt, session_token):
                yield event
        finally:
            self._preparing = False
            self._cancel_pending = False

    async def _run(
        self,
        prompt: str,
        session_token: str | None,
    ) -> AsyncIterator[CanonicalEvent]:
        yield Status(phase=STATUS_STARTING)

        try:
            await self.start()
        except (BackendStartupError, BackendUnavailableError) as exc:
            logger.error("[server] %s", exc)
            yield Status(phase=STATUS_ERROR, detail=str(exc))
            return
        except _REQUEST_ERRORS as exc:
            logger.error("[server] Failed to create session: %s", exc)
            yield Status(phase=STATUS_ERROR, detail=str(exc))
            return

        session_id = session_token or self._session_token
        if self._cancel_pending:
            logger.debug("[server] Cancelled before prompt (session=%s)", session_id)
            await self._abort(session_id)
            yield Status(phase=STATUS_STOPPED)
            return

        live: asyncio.Queue = asyncio.Queue()
        self._live = live
        self._live_session = session_id
        self._cancel_requested = False
        request = asyncio.create_task(
            self._client.send_prompt(session_id, prompt, model=self._model),
        )
        self._request_task = request
        self._preparing = False
        logger.debug(
            "[server] Prompt sent (session=%s model=%s)", session_id, self._model,
        )

        stream_error: str | None = None
        getter: asyncio.Task | None = None
        try:
            while not request.done():
                getter = asyncio.create_task(live.get())
                done, _ = await asyncio.wait(
                    {request, getter}, return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    getter.cancel()
                    continue
                event = getter.result()
                if isinstance(event, Status) and event.phase == STATUS_ERROR:
                    stream_error = event.detail or "Unknown error"
                    break
                yield event

            while stream_error is None and not live.empty():
                event = live.get_nowait()
                if isinstance(event, Status) and event.phase == STATUS_ERROR:
                    stream_error = event.detail or "Unknown error"
                    break
                yield event
        finally:
            self._live = None
            self._live_session = None
            self._request_task = None
            if getter is not None and not getter.done():
                getter.cancel()
            if not request.done():
                request.cancel()

        if self._cancel_requested or request.cancelled():
            self._cancel_requested = False
            yield Status(phase=STATUS_STOPPED)
            return
        if stream_error is not None:
            logger.warning("[server] Invocation failed: %s", stream_error)
            yield Status(phase=STATUS_ERROR, detail=stream_error)
            return
        exc = request.exception()
        if exc is not None:
            logger.warning("[server] Prompt request failed: %s", exc)
            yield Status(phase=STATUS_ERROR, detail=str(exc) or type(exc).__name__)
            return

        response = request.result() or {}
        for event in self._translator.translate_parts(response.get("parts") or []):
            yield event
        yield Status(phase=STATUS_IDLE)

    async def cancel(self) -> bool:
        """Abort the in-flight prompt on the server and locally.

        A cancel that arrives before invoke() has posted its prompt is
        latched; the prompt is then never sent.
        """
        request = self._request_task
        if request is None or request.done():
            if self._preparing:
                logger.debug("[server] Cancel requested before prompt")
                self._cancel_pending = True
                return True
            return False
        self._cancel_requested = True
        await self._abort(self._live_session or self._session_token)
        request.cancel()
        return True

    async def _abort(self, session_id: str | None) -> None:
        if not session_id:
            return
        try:
            if not await self._client.abort_session(session_id):
                logger.warning("[server] Server refused abort for session %s", session_id)
        except _REQUEST_ERRORS as exc:
            logger.warning("[server] Abort request failed: %s", exc)

    async def respond_to_permission(self, request_id: str, approved: bool) -> bool:
        session_id = self._live_session or self._session_token
        if not session_id:
            logger.debug("[server] No session for permission response")
            return False
        try:
            return await self._client.respond_to_permission(
                session_id, request_id, approved,
            )
        except _REQUEST_ERRORS as exc:
            logger.warning(
                "[server] Permission response for %s failed: %s", request_id, exc,
            )
            return False

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        await self.cancel()
        task = self._subscription_task
        self._subscription_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._client.close()
        self._session_token = None
        self._started = False
        self._connected = False
