"""Factory Droid CLI backend.

Uses `droid exec -o stream-json` once per invocation and translates
its newline-delimited JSON records into canonical events.

Auth: the API key is read from the configured environment variable
and handed to the subprocess environment, never on the command line.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator

from agentrelay.adapters.events import (
    CanonicalEvent,
    FileEdit,
    ModelOutput,
    SessionInit,
    Status,
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_STARTING,
    STATUS_STOPPED,
    TerminalOutput,
    TokenUsage,
    ToolCall,
    ToolResult,
)
from agentrelay.engine.config import FACTORY_API_KEY_ENV, DEFAULT_DROID_MODEL
from agentrelay.engine.errors import SpawnError
from agentrelay.engine.models import PermissionMode

from .base import DEFAULT_PROBE_TIMEOUT, AgentBackend, run_probe
from .streams import LineBuffer, parse_record

logger = logging.getLogger(__name__)

FILE_EDIT_TOOLS = frozenset({"Write", "Edit", "ApplyPatch", "MultiEdit"})
TERMINAL_TOOLS = frozenset({"Execute"})

_READ_CHUNK = 64 * 1024
_STDERR_TAIL = 8 * 1024


def permission_mode_to_auto_level(mode: PermissionMode) -> str | None:
    """Map a permission mode to a droid `--auto` level.

    default/read-only run with no --auto flag (droid's read-only
    default); safe-yolo allows safe edits; yolo allows everything.
    """
    if mode == PermissionMode.SAFE_YOLO:
        return "low"
    if mode == PermissionMode.YOLO:
        return "high"
    return None


class ExecStreamTranslator:
    """Maps droid stream-json records to canonical events.

    Record types:
      system (subtype init): session id, tools, model, cwd
      message: user/assistant text
      tool_call: toolName, parameters
      tool_result: toolId, value, isError
      completion: finalText, numTurns, durationMs
    """

    def __init__(self) -> None:
        self.session_id: str | None = None
        self.final_text: str | None = None
        self._streamed: list[str] = []

    @property
    def streamed_text(self) -> str:
        return "".join(self._streamed)

    def translate(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        rtype = record.get("type", "")

        if rtype == "system":
            session_id = record.get("session_id") or ""
            if session_id:
                self.session_id = session_id
            logger.debug("[exec] Session initialized: %s", session_id)
            return [SessionInit(
                session_id=session_id,
                model=record.get("model"),
                tools=list(record.get("tools") or []),
                cwd=record.get("cwd"),
            )]

        if rtype == "message":
            if record.get("role") != "assistant":
                return []
            text = record.get("text") or ""
            if not text:
                return []
            self._streamed.append(text)
            return [ModelOutput(text_delta=text)]

        if rtype == "tool_call":
            params = record.get("parameters")
            return [ToolCall(
                name=record.get("toolName", ""),
                args=params if isinstance(params, dict) else {},
                call_id=record.get("id", ""),
            )]

        if rtype == "tool_result":
            tool = record.get("toolId", "")
            value = record.get("value")
            events: list[CanonicalEvent] = [ToolResult(
                name=tool,
                result=value,
                call_id=record.get("id", ""),
            )]
            if tool in FILE_EDIT_TOOLS:
                events.append(FileEdit(
                    description=f"File modified by {tool}",
                    diff=value if isinstance(value, str) else None,
                ))
            if tool in TERMINAL_TOOLS:
                events.append(TerminalOutput(
                    data=value if isinstance(value, str) else json.dumps(value),
                ))
            return events

        if rtype == "completion":
            session_id = record.get("session_id")
            if session_id:
                self.session_id = session_id
            final_text = record.get("finalText") or ""
            self.final_text = final_text
            events = []
            # Already-streamed text is not repeated as a second message.
            if final_text and final_text != self.streamed_text:
                events.append(ModelOutput(full_text=final_text))
            events.append(TokenUsage(
                turns=int(record.get("numTurns") or 0),
                duration_ms=int(record.get("durationMs") or 0),
            ))
            logger.debug(
                "[exec] Completion: %s turns, %s ms",
                record.get("numTurns"), record.get("durationMs"),
            )
            return events

        logger.debug("[exec] Ignoring record type %r", rtype)
        return []


class ExecBackend(AgentBackend):
    """Backend backed by the Factory Droid CLI (`droid exec`)."""

    def __init__(
        self,
        command: str = "droid",
        *,
        model: str = DEFAULT_DROID_MODEL,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
        api_key_env: str = FACTORY_API_KEY_ENV,
        api_key: str | None = None,
        enabled_tools: list[str] | None = None,
        cwd: str | None = None,
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    ) -> None:
        super().__init__(
            command,
            model=model,
            permission_mode=permission_mode,
            probe_timeout=probe_timeout,
        )
        self._api_key_env = api_key_env
        self._api_key = api_key
        self._enabled_tools = list(enabled_tools or [])
        self._cwd = cwd
        self._process: asyncio.subprocess.Process | None = None
        self._cancelled_process: asyncio.subprocess.Process | None = None
        # True from the start of invoke() until its process exists; a
        # cancel() in that window is latched in _cancel_pending.
        self._spawning = False
        self._cancel_pending = False

    @property
    def name(self) -> str:
        return "exec"

    @property
    def cwd(self) -> str | None:
        return self._cwd

    @property
    def auto_level(self) -> str | None:
        return permission_mode_to_auto_level(self._permission_mode)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def _build_env(self) -> dict[str, str] | None:
        """Build subprocess environment with the API key."""
        key = self._api_key or os.environ.get(self._api_key_env)
        if not key:
            return None
        env = os.environ.copy()
        env[FACTORY_API_KEY_ENV] = key
        return env

    def build_args(
        self,
        prompt: str,
        *,
        output_format: str = "stream-json",
        session_id: str | None = None,
    ) -> list[str]:
        """Build `droid exec` arguments. The prompt is always last."""
        args = ["exec", "-o", output_format]
        auto = self.auto_level
        if auto:
            args.extend(["--auto", auto])
        if session_id:
            args.extend(["-s", session_id])
        args.extend(["-m", self._model])
        if self._enabled_tools:
            args.extend(["--enabled-tools", ",".join(self._enabled_tools)])
        args.append(prompt)
        return args

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        try:
            # args passed as a list, no shell
            return await asyncio.create_subprocess_exec(
                self._command, *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=self._cwd,
            )
        except OSError as exc:
            raise SpawnError(self._command, str(exc)) from exc

    @staticmethod
    async def _drain_stderr(stream: asyncio.StreamReader | None) -> str:
        """Collect stderr for diagnostics, keeping only the tail."""
        if stream is None:
            return ""
        tail = b""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            logger.debug("[exec] stderr: %s", chunk.decode("utf-8", "replace").strip())
            tail = (tail + chunk)[-_STDERR_TAIL:]
        return tail.decode("utf-8", errors="replace").strip()

    async def invoke(
        self,
        prompt: str,
        session_token: str | None = None,
    ) -> AsyncIterator[CanonicalEvent]:
        """Run one prompt via `droid exec -o stream-json`."""
        self._spawning = True
        self._cancel_pending = False
        try:
            async for event in self._run(prompt, session_token):
                yield event
        finally:
            self._spawning = False
            self._cancel_pending = False

    async def _run(
        self,
        prompt: str,
        session_token: str | None,
    ) -> AsyncIterator[CanonicalEvent]:
        yield Status(phase=STATUS_STARTING)
        if self._cancel_pending:
            logger.debug("[exec] Cancelled before spawn")
            yield Status(phase=STATUS_STOPPED)
            return

        token = session_token or self._session_token
        args = self.build_args(prompt, session_id=token)
        logger.debug(
            "[exec] Streaming: %s exec (model=%s auto=%s session=%s)",
            self._command, self._model, self.auto_level, token,
        )

        try:
            proc = await self._spawn(args)
        except SpawnError as exc:
            self._spawning = False
            logger.error("[exec] %s", exc)
            yield Status(phase=STATUS_ERROR, detail=str(exc))
            return

        self._process = proc
        self._spawning = False
        if self._cancel_pending:
            logger.debug("[exec] Cancelled during spawn (pid=%s)", proc.pid)
            self._cancelled_process = proc
            self._process = None
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        translator = ExecStreamTranslator()
        buffer = LineBuffer()
        stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))
        stderr_text = ""
        try:
            while True:
                chunk = await proc.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    if not line.strip():
                        continue
                    record = parse_record(line)
                    if record is None:
                        logger.warning(
                            "[exec] Skipping malformed stream line: %s",
                            line[:100],
                        )
                        continue
                    for event in translator.translate(record):
                        yield event

            tail = buffer.flush()
            if tail.strip():
                record = parse_record(tail)
                if record is None:
                    logger.debug(
                        "[exec] Dropping unparsable trailing fragment: %s",
                        tail[:100],
                    )
                else:
                    for event in translator.translate(record):
                        yield event

            returncode = await proc.wait()
            stderr_text = await stderr_task
        finally:
            if proc.returncode is None:
                # Consumer stopped early; do not leave the process behind.
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
            if not stderr_task.done():
                stderr_task.cancel()
            if self._process is proc:
                self._process = None

        if translator.session_id:
            self._session_token = translator.session_id

        if self._cancelled_process is proc:
            self._cancelled_process = None
            yield Status(phase=STATUS_STOPPED)
        elif returncode != 0:
            detail = stderr_text or f"{self._command} exited with code {returncode}"
            logger.warning("[exec] Invocation failed (rc=%s): %s", returncode, detail)
            yield Status(phase=STATUS_ERROR, detail=detail)
        else:
            yield Status(phase=STATUS_IDLE)

    async def cancel(self) -> bool:
        """Send SIGTERM to the live process.

        A cancel that arrives while invoke() is still spawning is latched
        and applied as soon as the process exists.
        """
        proc = self._process
        if proc is None or proc.returncode is not None:
            if self._spawning:
                logger.debug("[exec] Cancel requested before spawn")
                self._cancel_pending = True
                return True
            return False
        logger.debug("[exec] Cancelling current process (pid=%s)", proc.pid)
        self._cancelled_process = proc
        self._process = None
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
        return True

    async def exec_once(self, prompt: str) -> dict[str, Any]:
        """Run a prompt with `-o json` and return the single result object.

        Falls back to a plain-text result when stdout is not JSON.
        """
        args = self.build_args(
            prompt, output_format="json", session_id=self._session_token,
        )
        proc = await self._spawn(args)
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip()
            raise SpawnError(
                self._command,
                f"exited with code {proc.returncode}: {error or 'Unknown error'}",
            )
        text = stdout.decode("utf-8", errors="replace")
        try:
            result = json.loads(text)
        except (json.JSONDecodeError, ValueError):
            result = None
        if not isinstance(result, dict):
            return {
                "type": "result",
                "is_error": False,
                "duration_ms": 0,
                "num_turns": 1,
                "result": text,
                "session_id": "",
            }
        if result.get("session_id"):
            self._session_token = result["session_id"]
        return result

    async def list_tools(self) -> list[str]:
        """Return the tool names reported by `droid exec --list-tools`."""
        returncode, stdout = await run_probe(
            self._command,
            ["exec", "--list-tools"],
            timeout=self._probe_timeout,
            env=self._build_env(),
        )
        if returncode != 0:
            return []
        return [
            line.strip() for line in stdout.splitlines()
            if line.strip() and not line.strip().startswith("#")
        ]

    async def dispose(self) -> None:
        await self.cancel()
        self._session_token = None
