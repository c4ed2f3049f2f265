"""Tests for Mode, PermissionMode and the run state machine."""
from __future__ import annotations

import pytest

from agentrelay.engine.errors import InvalidTransitionError
from agentrelay.engine.lifecycle import VALID_TRANSITIONS, validate_transition
from agentrelay.engine.models import (
    IDLE,
    Mode,
    PermissionMode,
    RunPhase,
    RunState,
)


def test_equal_modes_have_equal_fingerprints():
    a = Mode(PermissionMode.YOLO, "model-x")
    b = Mode(PermissionMode.YOLO, "model-x")
    assert a.fingerprint() == b.fingerprint()


def test_fingerprint_changes_with_either_field():
    base = Mode(PermissionMode.DEFAULT, "m")
    assert base.fingerprint() != Mode(PermissionMode.YOLO, "m").fingerprint()
    assert base.fingerprint() != Mode(PermissionMode.DEFAULT, None).fingerprint()


def test_with_changes_keeps_model_unless_given():
    mode = Mode(PermissionMode.DEFAULT, "m")
    assert mode.with_changes(permission_mode=PermissionMode.YOLO).model == "m"
    assert mode.with_changes(model=None).model is None
    assert mode.with_changes() is mode


def test_permission_mode_parse():
    assert PermissionMode.parse("safe-yolo") is PermissionMode.SAFE_YOLO
    assert PermissionMode.parse(PermissionMode.YOLO) is PermissionMode.YOLO
    assert PermissionMode.parse("bypass") is None


def test_auto_approves_only_yolo_modes():
    assert PermissionMode.SAFE_YOLO.auto_approves
    assert PermissionMode.YOLO.auto_approves
    assert not PermissionMode.DEFAULT.auto_approves
    assert not PermissionMode.READ_ONLY.auto_approves


def test_run_state_str_and_activity():
    assert str(IDLE) == "idle"
    assert not IDLE.is_active
    err = RunState(RunPhase.ERROR, "boom")
    assert str(err) == "error(boom)"
    assert RunState(RunPhase.STOPPING).is_active


@pytest.mark.parametrize("current,target", [
    (RunPhase.IDLE, RunPhase.STARTING),
    (RunPhase.STARTING, RunPhase.RUNNING),
    (RunPhase.RUNNING, RunPhase.IDLE),
    (RunPhase.RUNNING, RunPhase.STARTING),
    (RunPhase.RUNNING, RunPhase.STOPPING),
    (RunPhase.STOPPING, RunPhase.IDLE),
    (RunPhase.ERROR, RunPhase.STARTING),
])
def test_valid_transitions(current, target):
    validate_transition(current, target)


def test_invalid_transition_raises():
    with pytest.raises(InvalidTransitionError) as exc_info:
        validate_transition(RunPhase.IDLE, RunPhase.RUNNING)
    assert exc_info.value.current == "idle"
    assert exc_info.value.target == "running"


def test_every_phase_has_a_transition_entry():
    assert set(VALID_TRANSITIONS) == set(RunPhase)
