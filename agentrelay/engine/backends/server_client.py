"""HTTP client for a local OpenCode server.

The client can either start its own `opencode serve` process or
attach to a server that is already running. All bodies are JSON;
live progress arrives over the `/event` text/event-stream feed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

import aiohttp

from agentrelay.engine.config import (
    DEFAULT_OPENCODE_HOSTNAME,
    DEFAULT_OPENCODE_PORT,
)
from agentrelay.engine.errors import BackendStartupError, ServerRequestError

from .streams import LineBuffer, parse_sse_line

logger = logging.getLogger(__name__)

READY_MARKERS = ("listening", "started")


def parse_model_string(model: str | None) -> dict[str, str] | None:
    """Split a `provider/model` identifier into the request shape.

    Returns None for anything that is not exactly two non-empty parts.
    """
    if not model:
        return None
    parts = model.split("/")
    if len(parts) != 2 or not all(parts):
        return None
    return {"providerID": parts[0], "modelID": parts[1]}


def format_model_string(model: dict[str, str]) -> str:
    return f"{model['providerID']}/{model['modelID']}"


class ServerClient:
    """Thin async wrapper over the server's REST + SSE API."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        hostname: str = DEFAULT_OPENCODE_HOSTNAME,
        port: int = DEFAULT_OPENCODE_PORT,
        request_timeout: float = 600.0,
    ) -> None:
        self._hostname = hostname
        self._port = port
        self._base_url = (base_url or f"http://{hostname}:{port}").rstrip("/")
        self._request_timeout = request_timeout
        self._http: aiohttp.ClientSession | None = None
        self._server_process: asyncio.subprocess.Process | None = None
        self._drain_tasks: list[asyncio.Task] = []

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def server_process(self) -> asyncio.subprocess.Process | None:
        return self._server_process

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            )
        return self._http

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        expect_json: bool = True,
        timeout: float | None = None,
    ) -> Any:
        kwargs: dict[str, Any] = {}
        if json_body is not None:
            kwargs["json"] = json_body
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        async with self._session().request(
            method, f"{self._base_url}{path}", **kwargs,
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise ServerRequestError(method, path, resp.status, body)
            if not expect_json:
                return None
            return await resp.json(content_type=None)

    async def _ok(self, method: str, path: str, json_body: Any = None) -> bool:
        """Issue a request and report only whether it succeeded."""
        kwargs: dict[str, Any] = {}
        if json_body is not None:
            kwargs["json"] = json_body
        async with self._session().request(
            method, f"{self._base_url}{path}", **kwargs,
        ) as resp:
            if resp.status >= 400:
                logger.debug(
                    "[server] %s %s -> %d", method, path, resp.status,
                )
            return resp.status < 400

    # ── REST API ──────────────────────────────────────────────

    async def health(self, timeout: float | None = 5.0) -> dict[str, Any]:
        return await self._request("GET", "/global/health", timeout=timeout)

    async def create_session(self, title: str | None = None) -> dict[str, Any]:
        return await self._request("POST", "/session", json_body={"title": title})

    async def get_session(self, session_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/session/{session_id}")

    async def list_sessions(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/session")

    async def delete_session(self, session_id: str) -> bool:
        return await self._ok("DELETE", f"/session/{session_id}")

    async def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/session/{session_id}/message")

    @staticmethod
    def _prompt_body(
        text: str,
        model: str | None,
        system: str | None = None,
        no_reply: bool = False,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        parsed = parse_model_string(model)
        if parsed:
            body["model"] = parsed
        elif model:
            logger.warning(
                "[server] Ignoring model '%s' (expected provider/model)", model,
            )
        if no_reply:
            body["noReply"] = True
        if system:
            body["system"] = system
        return body

    async def send_prompt(
        self,
        session_id: str,
        text: str,
        *,
        model: str | None = None,
        system: str | None = None,
        no_reply: bool = False,
    ) -> dict[str, Any]:
        """Send a prompt and wait for the full response message."""
        return await self._request(
            "POST",
            f"/session/{session_id}/message",
            json_body=self._prompt_body(text, model, system, no_reply),
        )

    async def send_prompt_async(
        self,
        session_id: str,
        text: str,
        *,
        model: str | None = None,
    ) -> None:
        """Send a prompt without waiting for the reply."""
        await self._request(
            "POST",
            f"/session/{session_id}/prompt_async",
            json_body=self._prompt_body(text, model),
            expect_json=False,
        )

    async def abort_session(self, session_id: str) -> bool:
        return await self._ok("POST", f"/session/{session_id}/abort")

    async def respond_to_permission(
        self,
        session_id: str,
        permission_id: str,
        allow: bool,
        remember: bool | None = None,
    ) -> bool:
        body: dict[str, Any] = {"response": "allow" if allow else "deny"}
        if remember is not None:
            body["remember"] = remember
        return await self._ok(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            json_body=body,
        )

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield JSON records from the server-sent event feed.

        Returns when the server closes the stream.
        """
        async with self._session().get(
            f"{self._base_url}/event",
            headers={"Accept": "text/event-stream"},
            timeout=aiohttp.ClientTimeout(total=None, sock_read=None),
        ) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise ServerRequestError("GET", "/event", resp.status, body)
            buffer = LineBuffer()
            async for chunk in resp.content.iter_any():
                for line in buffer.feed(chunk):
                    record = parse_sse_line(line)
                    if record is not None:
                        yield record

    # ── Server process ────────────────────────────────────────

    async def _poll_health(self, interval: float) -> None:
        while True:
            try:
                health = await self.health(timeout=interval)
                if health.get("healthy"):
                    logger.debug("[server] Health check passed: %s", health)
                    return
            except (aiohttp.ClientError, ServerRequestError, asyncio.TimeoutError, OSError):
                pass  # not up yet
            await asyncio.sleep(interval)

    async def _drain_stdout(
        self,
        stream: asyncio.StreamReader,
        ready: asyncio.Event,
    ) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            logger.debug("[server] stdout: %s", text)
            if not ready.is_set() and any(m in text for m in READY_MARKERS):
                ready.set()

    @staticmethod
    async def _drain_stderr(stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            logger.debug(
                "[server] stderr: %s",
                line.decode("utf-8", errors="replace").strip(),
            )

    async def start_server(
        self,
        command: str = "opencode",
        *,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        cwd: str | None = None,
    ) -> None:
        """Spawn `opencode serve` and wait until it is ready.

        Readiness is whichever comes first: a listening marker on
        stdout or a healthy answer from the health endpoint.
        """
        running = self._server_process
        if running is not None and running.returncode is None:
            logger.debug("[server] Server already running (pid=%s)", running.pid)
            return
        args = [
            "serve",
            "--port", str(self._port),
            "--hostname", self._hostname,
        ]
        logger.debug("[server] Starting server: %s %s", command, " ".join(args))
        try:
            # args passed as a list, no shell
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            raise BackendStartupError("server", str(exc)) from exc
        self._server_process = proc

        ready = asyncio.Event()
        self._drain_tasks = [
            asyncio.create_task(self._drain_stdout(proc.stdout, ready)),
            asyncio.create_task(self._drain_stderr(proc.stderr)),
        ]

        marker_task = asyncio.create_task(ready.wait())
        health_task = asyncio.create_task(self._poll_health(poll_interval))
        exit_task = asyncio.create_task(proc.wait())
        racers = {marker_task, health_task, exit_task}
        try:
            done, _ = await asyncio.wait(
                racers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in racers:
                if not task.done():
                    task.cancel()

        if marker_task in done:
            # Give it a moment to fully initialize
            await asyncio.sleep(0.5)
            logger.info("[server] Server started (stdout marker) pid=%d", proc.pid)
            return
        if health_task in done and health_task.exception() is None:
            logger.info("[server] Server started (health check) pid=%d", proc.pid)
            return

        if exit_task in done:
            reason = f"server exited with code {proc.returncode}"
        else:
            reason = f"startup timeout after {timeout:.0f}s"
        await self.stop_server()
        raise BackendStartupError("server", reason)

    async def stop_server(self) -> None:
        """Terminate the server process started by start_server()."""
        for task in self._drain_tasks:
            task.cancel()
        self._drain_tasks = []
        proc = self._server_process
        self._server_process = None
        if proc is None or proc.returncode is not None:
            return
        pid = proc.pid
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
            logger.info("[server] Server stopped (pid=%d)", pid)
        except ProcessLookupError:
            pass

    async def close(self) -> None:
        """Close the HTTP session and stop any owned server process."""
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
        await self.stop_server()
