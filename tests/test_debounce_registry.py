"""Debounced action registry and session registry tests."""

from __future__ import annotations

import asyncio

import pytest

from swarmsync.engine.config import SyncConfig
from swarmsync.engine.debounce import DebouncedActions
from swarmsync.engine.models import SessionInfo
from swarmsync.engine.registry import SessionRegistry


# ── Debounce ──


@pytest.mark.asyncio
async def test_burst_collapses_into_one_run():
    actions = DebouncedActions()
    runs: list[str] = []

    async def record():
        runs.append("ran")

    for _ in range(10):
        actions.schedule("output", "agent-1", 0.02, record)
    assert actions.pending_count == 1
    await asyncio.sleep(0.06)
    await actions.drain()
    assert runs == ["ran"]
    assert actions.pending_count == 0


@pytest.mark.asyncio
async def test_keys_are_independent():
    actions = DebouncedActions()
    runs: list[str] = []

    def make(label):
        async def run():
            runs.append(label)
        return run

    actions.schedule("output", "agent-1", 0.01, make("out-1"))
    actions.schedule("output", "agent-2", 0.01, make("out-2"))
    actions.schedule("signal", "agent-1", 0.01, make("sig-1"))
    await asyncio.sleep(0.05)
    await actions.drain()
    assert sorted(runs) == ["out-1", "out-2", "sig-1"]


@pytest.mark.asyncio
async def test_cancel_resource_cancels_all_kinds():
    actions = DebouncedActions()
    runs: list[str] = []

    async def record():
        runs.append("ran")

    actions.schedule("output", "agent-1", 0.01, record)
    actions.schedule("question", "agent-1", 0.01, record)
    actions.schedule("output", "agent-2", 0.01, record)
    assert actions.cancel_resource("agent-1") == 2
    assert not actions.is_pending("output", "agent-1")
    await asyncio.sleep(0.05)
    await actions.drain()
    assert runs == ["ran"]


@pytest.mark.asyncio
async def test_failing_action_does_not_escape():
    actions = DebouncedActions()

    async def boom():
        raise RuntimeError("nope")

    actions.schedule("signal", "agent-1", 0.0, boom)
    await asyncio.sleep(0.02)
    await actions.drain()
    assert actions.pending_count == 0


# ── Session registry ──


def test_registry_filters_prefixes():
    registry = SessionRegistry(SyncConfig())
    assert registry.is_managed("agent-1")
    assert not registry.is_managed("agent-pending-1")
    assert not registry.is_managed("dev")
    assert registry.agent_name("agent-frontend") == "frontend"


def test_reconcile_diff_and_attached_updates():
    registry = SessionRegistry(SyncConfig())
    diff = registry.reconcile([SessionInfo("agent-1"), SessionInfo("agent-2")])
    assert [s.name for s in diff.created] == ["agent-1", "agent-2"]
    assert diff.destroyed == []

    diff = registry.reconcile([SessionInfo("agent-2", attached=True), SessionInfo("agent-3")])
    assert [s.name for s in diff.created] == ["agent-3"]
    assert [s.name for s in diff.destroyed] == ["agent-1"]
    assert registry.get("agent-2").attached is True
    assert "agent-1" not in registry
    assert len(registry) == 2

    assert not registry.reconcile([SessionInfo("agent-2"), SessionInfo("agent-3")])
