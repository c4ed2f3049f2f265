"""Core data models for the session orchestrator.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum


class PermissionMode(str, Enum):
    """Permission modes accepted from the remote operator."""
    DEFAULT = "default"
    READ_ONLY = "read-only"
    SAFE_YOLO = "safe-yolo"
    YOLO = "yolo"

    @classmethod
    def parse(cls, value: object) -> PermissionMode | None:
        """Return the matching mode, or None for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None

    @property
    def auto_approves(self) -> bool:
        """Whether tool permission requests are approved without asking."""
        return self in (PermissionMode.SAFE_YOLO, PermissionMode.YOLO)


_UNSET = object()


@dataclass(frozen=True)
class Mode:
    """Permission level and model in effect for one prompt.

    Immutable: use with_changes() to derive a new Mode.
    """
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    model: str | None = None

    def fingerprint(self) -> str:
        """Stable hash identifying "same mode" for coalescing."""
        canonical = json.dumps(
            {
                "model": self.model,
                "permissionMode": self.permission_mode.value,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def with_changes(
        self,
        *,
        permission_mode: PermissionMode | None = None,
        model: object = _UNSET,
    ) -> Mode:
        """Return a copy with the given fields replaced.

        Pass ``model=None`` to clear the model override; omit it to
        keep the current one.
        """
        changes: dict[str, object] = {}
        if permission_mode is not None:
            changes["permission_mode"] = permission_mode
        if model is not _UNSET:
            changes["model"] = model
        if not changes:
            return self
        return replace(self, **changes)


@dataclass(frozen=True)
class QueueItem:
    """A pending prompt, owned by the queue until dequeued."""
    prompt: str
    mode: Mode
    enqueued_at: float = field(default_factory=time.monotonic)


class RunPhase(str, Enum):
    """Orchestrator run phases. See lifecycle.py for transition rules."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class RunState:
    """Current run phase plus error detail when phase is ERROR."""
    phase: RunPhase = RunPhase.IDLE
    detail: str | None = None

    @property
    def is_active(self) -> bool:
        return self.phase in (
            RunPhase.STARTING, RunPhase.RUNNING, RunPhase.STOPPING,
        )

    def __str__(self) -> str:
        if self.detail:
            return f"{self.phase.value}({self.detail})"
        return self.phase.value


IDLE = RunState(RunPhase.IDLE)
