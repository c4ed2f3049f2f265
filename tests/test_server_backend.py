"""Tests for ServerClient and ServerBackend against a fake OpenCode server."""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from agentrelay.adapters.events import (
    FileEdit,
    ModelOutput,
    PermissionRequest,
    Status,
    TerminalOutput,
    ToolCall,
    ToolResult,
)
from agentrelay.engine.backends.server_backend import ServerBackend, ServerEventTranslator
from agentrelay.engine.backends.server_client import ServerClient, parse_model_string
from agentrelay.engine.errors import (
    BackendStartupError,
    BackendUnavailableError,
    ServerRequestError,
)
from agentrelay.engine.models import PermissionMode

SESSION_ID = "ses_test"
UNREACHABLE = "http://127.0.0.1:1"


class FakeOpencodeServer:
    """Just enough of `opencode serve` for the client and backend."""

    def __init__(self) -> None:
        self.prompts: list[dict] = []
        self.async_prompts: list[dict] = []
        self.aborts: list[str] = []
        self.permission_responses: list[tuple[str, dict]] = []
        self.reply_parts: list[dict] = [{"type": "text", "text": "done"}]
        self.reply_status = 200
        self.reply_gate: asyncio.Event | None = None
        self.abort_ok = True
        self.session_failures = 0
        self.live_events: list[dict] = []
        self.streams: list[asyncio.Queue] = []
        self.stream_connected = asyncio.Event()

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/global/health", self.health)
        app.router.add_post("/session", self.create_session)
        app.router.add_get("/session", self.list_sessions)
        app.router.add_get("/session/{id}", self.get_session)
        app.router.add_delete("/session/{id}", self.delete_session)
        app.router.add_get("/session/{id}/message", self.get_messages)
        app.router.add_post("/session/{id}/message", self.message)
        app.router.add_post("/session/{id}/prompt_async", self.prompt_async)
        app.router.add_post("/session/{id}/abort", self.abort)
        app.router.add_post("/session/{id}/permissions/{pid}", self.permission)
        app.router.add_get("/event", self.events)
        return app

    async def publish(self, payload: dict | str) -> None:
        for queue in self.streams:
            await queue.put(payload)

    async def end_streams(self) -> None:
        for queue in self.streams:
            await queue.put(None)

    def release(self) -> None:
        if self.reply_gate is not None:
            self.reply_gate.set()

    async def health(self, request):
        return web.json_response({"healthy": True, "version": "0.9.9"})

    async def create_session(self, request):
        body = await request.json()
        if self.session_failures > 0:
            self.session_failures -= 1
            return web.json_response({"error": "storage busy"}, status=500)
        return web.json_response({"id": SESSION_ID, "title": body.get("title")})

    async def list_sessions(self, request):
        return web.json_response([{"id": SESSION_ID}])

    async def get_session(self, request):
        return web.json_response({"id": request.match_info["id"]})

    async def delete_session(self, request):
        return web.json_response(True)

    async def get_messages(self, request):
        return web.json_response([])

    async def message(self, request):
        self.prompts.append(await request.json())
        for event in self.live_events:
            await self.publish(event)
        if self.reply_gate is not None:
            await self.reply_gate.wait()
        if self.reply_status != 200:
            return web.json_response({"error": "model exploded"}, status=self.reply_status)
        return web.json_response({"info": {"id": "msg_1"}, "parts": self.reply_parts})

    async def prompt_async(self, request):
        self.async_prompts.append(await request.json())
        return web.Response(status=204)

    async def abort(self, request):
        self.aborts.append(request.match_info["id"])
        self.release()
        if not self.abort_ok:
            return web.json_response({"error": "cannot abort"}, status=409)
        return web.json_response(True)

    async def permission(self, request):
        self.permission_responses.append(
            (request.match_info["pid"], await request.json()),
        )
        return web.json_response(True)

    async def events(self, request):
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        queue: asyncio.Queue = asyncio.Queue()
        self.streams.append(queue)
        self.stream_connected.set()
        await resp.write(b": connected\n\n")
        while True:
            payload = await queue.get()
            if payload is None:
                break
            if isinstance(payload, str):
                await resp.write(payload.encode("utf-8"))
            else:
                await resp.write(f"data: {json.dumps(payload)}\n\n".encode("utf-8"))
        return resp


class ServerTestCase(AioHTTPTestCase):
    async def get_application(self):
        self.fake = FakeOpencodeServer()
        return self.fake.app()

    async def asyncTearDown(self):
        self.fake.release()
        await self.fake.end_streams()
        await super().asyncTearDown()

    @property
    def base_url(self) -> str:
        return str(self.server.make_url(""))


class TestServerClient(ServerTestCase):
    async def test_rest_endpoints(self):
        client = ServerClient(self.base_url)
        try:
            assert (await client.health())["healthy"] is True
            session = await client.create_session("relay test")
            assert session == {"id": SESSION_ID, "title": "relay test"}
            assert await client.list_sessions() == [{"id": SESSION_ID}]
            assert (await client.get_session("ses_x"))["id"] == "ses_x"
            assert await client.get_messages(SESSION_ID) == []
            assert await client.delete_session(SESSION_ID) is True
            assert await client.abort_session(SESSION_ID) is True

            await client.send_prompt_async(SESSION_ID, "later", model="a/b")
            assert self.fake.async_prompts[0]["parts"] == [{"type": "text", "text": "later"}]

            assert await client.respond_to_permission(SESSION_ID, "perm_1", False) is True
            assert self.fake.permission_responses == [("perm_1", {"response": "deny"})]
        finally:
            await client.close()

    async def test_send_prompt_encodes_model(self):
        client = ServerClient(self.base_url)
        try:
            reply = await client.send_prompt(SESSION_ID, "hi", model="anthropic/claude-x")
            assert reply["parts"] == [{"type": "text", "text": "done"}]
            assert self.fake.prompts[-1]["model"] == {
                "providerID": "anthropic", "modelID": "claude-x",
            }

            await client.send_prompt(SESSION_ID, "hi", model="not-a-compound-id")
            assert "model" not in self.fake.prompts[-1]
        finally:
            await client.close()

    async def test_error_status_raises(self):
        self.fake.reply_status = 500
        client = ServerClient(self.base_url)
        try:
            with pytest.raises(ServerRequestError) as exc_info:
                await client.send_prompt(SESSION_ID, "hi")
            assert exc_info.value.status == 500
            assert "model exploded" in exc_info.value.body
        finally:
            await client.close()

    async def test_refused_abort_returns_false(self):
        self.fake.abort_ok = False
        client = ServerClient(self.base_url)
        try:
            assert await client.abort_session(SESSION_ID) is False
        finally:
            await client.close()

    async def test_event_stream_skips_malformed_data(self):
        client = ServerClient(self.base_url)
        received: list[dict] = []

        async def read():
            async for record in client.events():
                received.append(record)

        reader = asyncio.create_task(read())
        try:
            await asyncio.wait_for(self.fake.stream_connected.wait(), timeout=5)
            await self.fake.publish({"type": "one"})
            await self.fake.publish("data: {broken\n\n")
            await self.fake.publish("event: message\ndata: {\"type\": \"two\"}\n\n")
            await self.fake.end_streams()
            await asyncio.wait_for(reader, timeout=5)
        finally:
            await client.close()

        assert received == [{"type": "one"}, {"type": "two"}]

    async def test_start_server_ready_by_health_check(self):
        client = ServerClient(self.base_url)
        proc = FakeServerProcess()
        with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
            await client.start_server("opencode", timeout=5, poll_interval=0.05)
        args, _ = mock_exec.call_args
        assert args[:2] == ("opencode", "serve")
        assert "--port" in args and "--hostname" in args
        assert client.server_process is proc

        await client.close()
        assert proc.terminated
        assert client.server_process is None

    async def test_start_server_twice_keeps_running_process(self):
        client = ServerClient(self.base_url)
        proc = FakeServerProcess()
        try:
            with patch("asyncio.create_subprocess_exec", return_value=proc) as mock_exec:
                await client.start_server("opencode", timeout=5, poll_interval=0.05)
                await client.start_server("opencode", timeout=5, poll_interval=0.05)
            assert mock_exec.call_count == 1
            assert client.server_process is proc
        finally:
            await client.close()


class TestServerBackend(ServerTestCase):
    def _backend(self, **kwargs) -> ServerBackend:
        return ServerBackend(
            command="opencode",
            base_url=self.base_url,
            start_server=False,
            **kwargs,
        )

    async def _started(self, **kwargs) -> ServerBackend:
        backend = self._backend(**kwargs)
        await backend.start()
        await asyncio.wait_for(self.fake.stream_connected.wait(), timeout=5)
        return backend

    async def test_invoke_emits_reply_parts_then_idle(self):
        self.fake.reply_parts = [
            {"type": "text", "text": "a.txt\nb.txt"},
            {"type": "tool_result", "toolName": "bash", "toolCallId": "t1", "result": "ok"},
        ]
        backend = await self._started()
        try:
            events = [e async for e in backend.invoke("list files")]
        finally:
            await backend.dispose()

        assert events[0] == Status(phase="starting")
        assert events[1] == ModelOutput(full_text="a.txt\nb.txt")
        assert isinstance(events[2], ToolResult)
        assert isinstance(events[3], TerminalOutput)
        assert events[-1] == Status(phase="idle")
        assert backend.session_token is None  # cleared by dispose

    async def test_session_reused_across_invocations(self):
        backend = await self._started()
        try:
            assert backend.session_token == SESSION_ID
            await asyncio.wait_for(_drain(backend.invoke("one")), timeout=5)
            await asyncio.wait_for(_drain(backend.invoke("two")), timeout=5)
        finally:
            await backend.dispose()
        assert len(self.fake.prompts) == 2

    async def test_live_events_interleave_and_other_sessions_are_filtered(self):
        self.fake.reply_gate = asyncio.Event()
        self.fake.live_events = [
            {"type": "message.delta", "properties": {"sessionID": SESSION_ID, "content": "Hel"}},
            {"type": "message.delta", "properties": {"sessionID": "ses_other", "content": "nope"}},
            {"type": "tool.called", "properties": {
                "sessionID": SESSION_ID, "name": "bash", "id": "t1", "args": {"command": "ls"},
            }},
            {"type": "session.status", "properties": {"sessionID": SESSION_ID, "status": "idle"}},
        ]
        backend = await self._started()
        events = []
        try:
            async for event in backend.invoke("hi"):
                events.append(event)
                if isinstance(event, ToolCall):
                    self.fake.release()
        finally:
            await backend.dispose()

        assert events[1] == ModelOutput(text_delta="Hel")
        assert events[2] == ToolCall(name="bash", args={"command": "ls"}, call_id="t1")
        assert events[3] == ModelOutput(full_text="done")
        terminal = [e for e in events if isinstance(e, Status) and e.is_terminal]
        assert terminal == [Status(phase="idle")]
        assert all(getattr(e, "text_delta", None) != "nope" for e in events)

    async def test_permission_forwarded_in_default_mode(self):
        self.fake.reply_gate = asyncio.Event()
        self.fake.live_events = [{"type": "permission.requested", "properties": {
            "sessionID": SESSION_ID, "id": "perm_1", "message": "run rm?",
        }}]
        backend = await self._started()
        events = []
        try:
            async for event in backend.invoke("hi"):
                events.append(event)
                if isinstance(event, PermissionRequest):
                    assert await backend.respond_to_permission(event.id, True) is True
                    self.fake.release()
        finally:
            await backend.dispose()

        request = next(e for e in events if isinstance(e, PermissionRequest))
        assert request.id == "perm_1"
        assert request.reason == "run rm?"
        assert self.fake.permission_responses == [("perm_1", {"response": "allow"})]

    async def test_permission_auto_approved_in_yolo_mode(self):
        self.fake.reply_gate = asyncio.Event()
        self.fake.live_events = [
            {"type": "permission.required", "properties": {"sessionID": SESSION_ID, "id": "perm_2"}},
            {"type": "tool.start", "properties": {"sessionID": SESSION_ID, "tool": "edit", "id": "t2"}},
        ]
        backend = await self._started(permission_mode=PermissionMode.YOLO)
        events = []
        try:
            async for event in backend.invoke("hi"):
                events.append(event)
                if isinstance(event, ToolCall):
                    self.fake.release()
        finally:
            await backend.dispose()

        assert not any(isinstance(e, PermissionRequest) for e in events)
        assert self.fake.permission_responses == [("perm_2", {"response": "allow"})]

    async def test_cancel_aborts_and_ends_with_stopped(self):
        self.fake.reply_gate = asyncio.Event()
        backend = await self._started()
        events = []

        async def consume():
            async for event in backend.invoke("long task"):
                events.append(event)

        task = asyncio.create_task(consume())
        try:
            while not self.fake.prompts:
                await asyncio.sleep(0.01)
            assert backend.is_running
            assert await backend.cancel() is True
            await asyncio.wait_for(task, timeout=5)
            assert await backend.cancel() is False
        finally:
            await backend.dispose()

        assert events[-1] == Status(phase="stopped")
        assert self.fake.aborts == [SESSION_ID]

    async def test_refused_abort_still_cancels_locally(self):
        self.fake.reply_gate = asyncio.Event()
        self.fake.abort_ok = False
        backend = await self._started()
        events = []

        async def consume():
            async for event in backend.invoke("long task"):
                events.append(event)

        task = asyncio.create_task(consume())
        try:
            while not self.fake.prompts:
                await asyncio.sleep(0.01)
            with self.assertLogs("agentrelay.engine.backends.server_backend", "WARNING") as logs:
                assert await backend.cancel() is True
            await asyncio.wait_for(task, timeout=5)
        finally:
            await backend.dispose()

        assert any("refused abort" in line for line in logs.output)
        assert events[-1] == Status(phase="stopped")

    async def test_cancel_before_prompt_is_posted(self):
        backend = self._backend()
        events = []
        try:
            async for event in backend.invoke("never sent"):
                events.append(event)
                if event == Status(phase="starting"):
                    assert await backend.cancel() is True
        finally:
            await backend.dispose()

        assert [e.phase for e in events] == ["starting", "stopped"]
        assert self.fake.prompts == []
        assert self.fake.aborts == [SESSION_ID]

    async def test_start_retry_after_session_failure_reuses_server_and_feed(self):
        self.fake.session_failures = 1
        client = ServerClient(self.base_url)
        backend = ServerBackend(command="opencode", start_server=True, client=client)
        with patch.object(client, "start_server", AsyncMock()) as start_server:
            try:
                first = await asyncio.wait_for(_drain(backend.invoke("one")), timeout=5)
                feed = backend._subscription_task
                await asyncio.wait_for(self.fake.stream_connected.wait(), timeout=5)
                second = await asyncio.wait_for(_drain(backend.invoke("two")), timeout=5)
                assert backend._subscription_task is feed
            finally:
                await backend.dispose()

        assert first[-1].phase == "error"
        assert "500" in first[-1].detail
        assert second[-1] == Status(phase="idle")
        assert start_server.await_count == 1
        assert len(self.fake.streams) == 1
        assert len(self.fake.prompts) == 1

    async def test_error_response_is_error_status(self):
        self.fake.reply_status = 500
        backend = await self._started()
        try:
            events = [e async for e in backend.invoke("hi")]
        finally:
            await backend.dispose()

        assert events[-1].phase == "error"
        assert "500" in events[-1].detail

    async def test_stream_closing_mid_invocation_is_error(self):
        self.fake.reply_gate = asyncio.Event()
        backend = await self._started()
        events = []

        async def consume():
            async for event in backend.invoke("hi"):
                events.append(event)

        task = asyncio.create_task(consume())
        try:
            while not self.fake.prompts:
                await asyncio.sleep(0.01)
            await self.fake.end_streams()
            await asyncio.wait_for(task, timeout=5)
        finally:
            await backend.dispose()

        assert events[-1] == Status(phase="error", detail="event stream closed")

    async def test_availability_uses_health_for_attached_server(self):
        backend = self._backend()
        try:
            assert await backend.is_available() is True
        finally:
            await backend.dispose()

    async def test_dispose_is_idempotent(self):
        backend = await self._started()
        await backend.dispose()
        await backend.dispose()


async def _drain(stream) -> list:
    return [event async for event in stream]


# ── Server process startup ──

class _LineStream:
    def __init__(self, lines: list[bytes], done: asyncio.Event):
        self._lines = list(lines)
        self._done = done

    async def readline(self) -> bytes:
        if self._lines:
            return self._lines.pop(0)
        await self._done.wait()
        return b""


class FakeServerProcess:
    def __init__(self, stdout_lines: list[bytes] | None = None, exit_code: int | None = None):
        self.pid = 999
        self.returncode: int | None = None
        self.terminated = False
        self._exit_code = exit_code
        self._done = asyncio.Event()
        self.stdout = _LineStream(stdout_lines or [], self._done)
        self.stderr = _LineStream([], self._done)
        if exit_code is not None:
            self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        if self.returncode is None:
            self.returncode = self._exit_code if self._exit_code is not None else -15
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self._done.set()

    def kill(self) -> None:
        self.terminate()


@pytest.mark.asyncio
async def test_start_server_ready_by_stdout_marker():
    client = ServerClient(UNREACHABLE)
    proc = FakeServerProcess([b"opencode server listening on http://127.0.0.1:4096\n"])
    with patch("asyncio.create_subprocess_exec", return_value=proc):
        await client.start_server("opencode", timeout=5, poll_interval=0.05)
    assert not proc.terminated
    await client.close()
    assert proc.terminated


@pytest.mark.asyncio
async def test_start_server_exit_before_ready():
    client = ServerClient(UNREACHABLE)
    proc = FakeServerProcess(exit_code=1)
    with patch("asyncio.create_subprocess_exec", return_value=proc):
        with pytest.raises(BackendStartupError, match="exited with code 1"):
            await client.start_server("opencode", timeout=5, poll_interval=0.05)
    await client.close()


@pytest.mark.asyncio
async def test_start_server_timeout_kills_process():
    client = ServerClient(UNREACHABLE)
    proc = FakeServerProcess()
    with patch("asyncio.create_subprocess_exec", return_value=proc):
        with pytest.raises(BackendStartupError, match="timeout"):
            await client.start_server("opencode", timeout=0.2, poll_interval=0.05)
    assert proc.terminated
    await client.close()


@pytest.mark.asyncio
async def test_start_server_missing_binary():
    client = ServerClient(UNREACHABLE)
    with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("opencode")):
        with pytest.raises(BackendStartupError):
            await client.start_server("opencode", timeout=1)
    await client.close()


@pytest.mark.asyncio
async def test_attach_to_missing_server_is_unavailable():
    backend = ServerBackend(command="opencode", base_url=UNREACHABLE, start_server=False)
    try:
        with pytest.raises(BackendUnavailableError):
            await backend.start()
        events = [e async for e in backend.invoke("hi")]
    finally:
        await backend.dispose()
    assert [e.phase for e in events] == ["starting", "error"]


# ── Translator ──

def test_translate_tool_end_with_file_edit():
    translator = ServerEventTranslator()
    events = translator.translate_event({"type": "tool.end", "properties": {
        "name": "write", "id": "t9", "path": "src/app.py", "result": "+line",
    }})
    assert events[0] == ToolResult(name="write", result="+line", call_id="t9")
    assert events[1] == FileEdit(
        description="File modified by write", diff="+line", path="src/app.py",
    )


def test_translate_status_and_error_events():
    translator = ServerEventTranslator()
    assert translator.translate_event(
        {"type": "session.status", "properties": {"status": "running"}},
    ) == [Status(phase="running")]
    assert translator.translate_event(
        {"type": "session.status", "properties": {"status": "completed"}},
    ) == []
    assert translator.translate_event(
        {"type": "error", "properties": {}},
    ) == [Status(phase="error", detail="Unknown error")]
    assert translator.translate_event({"type": "server.heartbeat"}) == []


def test_translate_tool_call_defaults():
    translator = ServerEventTranslator()
    [call] = translator.translate_event({"type": "tool.called", "properties": {}})
    assert call.name == "unknown"
    assert call.args == {}
    assert call.call_id


def test_event_session_id_lookup():
    lookup = ServerEventTranslator.event_session_id
    assert lookup({"properties": {"sessionID": "a"}}) == "a"
    assert lookup({"properties": {"info": {"sessionID": "b"}}}) == "b"
    assert lookup({"properties": {"part": {"sessionID": "c"}}}) == "c"
    assert lookup({"type": "server.connected"}) is None


def test_parse_model_string():
    assert parse_model_string("openai/gpt-4o") == {"providerID": "openai", "modelID": "gpt-4o"}
    assert parse_model_string("gpt-4o") is None
    assert parse_model_string("a/b/c") is None
    assert parse_model_string("/b") is None
    assert parse_model_string(None) is None
