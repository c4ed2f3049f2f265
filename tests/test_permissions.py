"""Tests for PendingPermissions (bounded wait, default deny)."""
from __future__ import annotations

import asyncio

import pytest

from agentrelay.engine.permissions import PendingPermissions


@pytest.mark.asyncio
async def test_resolve_completes_waiter():
    pending = PendingPermissions(timeout=5.0)
    waiter = asyncio.create_task(pending.wait("perm-1"))
    await asyncio.sleep(0)

    assert "perm-1" in pending
    assert pending.resolve("perm-1", True) is True
    assert await waiter is True
    assert len(pending) == 0


@pytest.mark.asyncio
async def test_timeout_denies():
    pending = PendingPermissions(timeout=0.05)
    assert await pending.wait("perm-1") is False
    assert len(pending) == 0


@pytest.mark.asyncio
async def test_unknown_id_is_ignored():
    pending = PendingPermissions()
    assert pending.resolve("nope", True) is False


@pytest.mark.asyncio
async def test_deny_all_before_waiter_starts_is_not_lost():
    pending = PendingPermissions(timeout=5.0)
    decision = pending.request("perm-1")

    assert pending.deny_all() == 1
    assert await asyncio.wait_for(decision, timeout=1.0) is False


@pytest.mark.asyncio
async def test_resolve_before_waiter_starts_is_not_lost():
    pending = PendingPermissions(timeout=5.0)
    decision = pending.request("perm-1")

    assert pending.resolve("perm-1", True) is True
    assert await asyncio.wait_for(decision, timeout=1.0) is True


@pytest.mark.asyncio
async def test_zero_timeout_waits_indefinitely():
    pending = PendingPermissions(timeout=0)
    waiter = asyncio.create_task(pending.wait("perm-1"))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    pending.resolve("perm-1", False)
    assert await waiter is False
