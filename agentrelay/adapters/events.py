"""Canonical event types emitted by agent backends.

Backends translate their own stream formats into these dataclasses;
nothing backend-specific travels past the translator. The orchestrator
stamps each event with the generation of the invocation that
produced it so events from a cancelled invocation can be discarded.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
STATUS_IDLE = "idle"
STATUS_STOPPED = "stopped"
STATUS_ERROR = "error"

TERMINAL_STATUSES = frozenset({STATUS_IDLE, STATUS_STOPPED, STATUS_ERROR})


@dataclass
class CanonicalEvent:
    """Base event from an agent backend."""
    event_type: str = ""
    generation: int = 0


@dataclass
class ModelOutput(CanonicalEvent):
    event_type: str = "model_output"
    text_delta: str | None = None
    full_text: str | None = None


@dataclass
class Status(CanonicalEvent):
    event_type: str = "status"
    phase: str = STATUS_IDLE
    detail: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_STATUSES


@dataclass
class ToolCall(CanonicalEvent):
    event_type: str = "tool_call"
    name: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass
class ToolResult(CanonicalEvent):
    event_type: str = "tool_result"
    name: str = ""
    result: Any = None
    call_id: str = ""


@dataclass
class FileEdit(CanonicalEvent):
    """A file was modified by a tool call."""
    event_type: str = "file_edit"
    description: str = ""
    diff: str | None = None
    path: str | None = None


@dataclass
class TerminalOutput(CanonicalEvent):
    event_type: str = "terminal_output"
    data: str = ""


@dataclass
class PermissionRequest(CanonicalEvent):
    event_type: str = "permission_request"
    id: str = ""
    reason: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenUsage(CanonicalEvent):
    event_type: str = "token_usage"
    turns: int = 0
    duration_ms: int = 0


@dataclass
class SessionInit(CanonicalEvent):
    """Backend announced the conversation it is continuing."""
    event_type: str = "session_init"
    session_id: str = ""
    model: str | None = None
    tools: list = field(default_factory=list)
    cwd: str | None = None


# Events that move the orchestrator from STARTING to RUNNING.
CONTENT_EVENT_TYPES = frozenset({
    "model_output",
    "tool_call",
    "tool_result",
    "file_edit",
    "terminal_output",
    "permission_request",
})


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[CanonicalEvent]] = {
    "model_output": ModelOutput,
    "status": Status,
    "tool_call": ToolCall,
    "tool_result": ToolResult,
    "file_edit": FileEdit,
    "terminal_output": TerminalOutput,
    "permission_request": PermissionRequest,
    "token_usage": TokenUsage,
    "session_init": SessionInit,
}


def is_terminal(event: CanonicalEvent) -> bool:
    """True for the status event that closes an invocation."""
    return isinstance(event, Status) and event.is_terminal


def event_to_dict(event: CanonicalEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> CanonicalEvent:
    """Convert a plain dict back to a typed event dataclass."""
    event_type = data.get("event", data.get("event_type", ""))
    cls = _EVENT_MAP.get(event_type, CanonicalEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)
