"""Unit tests for EngineClient recovery replay."""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from enginehost.client import EngineClient
from enginehost.config import EngineHostConfig
from enginehost.exceptions import WorkerRemoteError
from enginehost.supervisor.manager import RecoveryState


class FakeSupervisor:
    """Hands out whichever proxy is ``current``; records recovery state."""

    def __init__(self) -> None:
        self.config = EngineHostConfig()
        self.current: MagicMock = _proxy(1)
        self.recovery_state: RecoveryState | None = None

    async def ensure_worker(self) -> MagicMock:
        return self.current

    def record_recovery_state(self, tool: str, arguments: dict[str, Any] | None = None) -> None:
        self.recovery_state = RecoveryState(tool=tool, arguments=dict(arguments or {}))


def _proxy(pid: int) -> MagicMock:
    proxy = MagicMock()
    proxy.pid = pid
    proxy.invoke = AsyncMock(return_value={"ok": True})
    return proxy


@pytest.mark.asyncio
async def test_call_without_recovery_state_does_not_replay():
    supervisor = FakeSupervisor()
    client = EngineClient(supervisor)

    assert await client.call_tool("list_files", {"pattern": "*.py"}) == {"ok": True}
    supervisor.current.invoke.assert_awaited_once_with(
        "list_files", {"pattern": "*.py"}, timeout=30.0,
    )
    assert client.replay_count == 0


@pytest.mark.asyncio
async def test_initialize_records_recovery_state():
    supervisor = FakeSupervisor()
    client = EngineClient(supervisor)

    await client.initialize("/src/app")
    assert supervisor.recovery_state.tool == "load_workspace"
    assert supervisor.recovery_state.arguments == {"path": "/src/app"}


@pytest.mark.asyncio
async def test_failed_initialization_is_not_recorded():
    supervisor = FakeSupervisor()
    supervisor.current.invoke.side_effect = WorkerRemoteError(-32603, "Tool error: nope")
    client = EngineClient(supervisor)

    with pytest.raises(WorkerRemoteError):
        await client.initialize("/missing")
    assert supervisor.recovery_state is None


@pytest.mark.asyncio
async def test_new_worker_is_reinitialized_before_call():
    supervisor = FakeSupervisor()
    client = EngineClient(supervisor, default_timeout=5.0)
    await client.initialize("/src/app")

    respawned = _proxy(2)
    supervisor.current = respawned
    await client.call_tool("list_files")

    assert respawned.invoke.await_args_list == [
        call("load_workspace", {"path": "/src/app"}, timeout=5.0),
        call("list_files", None, timeout=5.0),
    ]
    assert client.replay_count == 1

    # Same worker again: no second replay.
    await client.call_tool("health_check")
    assert respawned.invoke.await_count == 3
    assert client.replay_count == 1


@pytest.mark.asyncio
async def test_init_call_on_new_worker_skips_replay():
    supervisor = FakeSupervisor()
    client = EngineClient(supervisor)
    await client.initialize("/src/old")

    respawned = _proxy(2)
    supervisor.current = respawned
    await client.initialize("/src/new")

    respawned.invoke.assert_awaited_once_with("load_workspace", {"path": "/src/new"}, timeout=30.0)
    assert supervisor.recovery_state.arguments == {"path": "/src/new"}


@pytest.mark.asyncio
async def test_failed_replay_surfaces_and_is_retried():
    supervisor = FakeSupervisor()
    client = EngineClient(supervisor)
    await client.initialize("/src/app")

    respawned = _proxy(2)
    respawned.invoke.side_effect = [
        WorkerRemoteError(-32603, "Tool error: disk"),
        {"path": "/src/app"},
        {"files": []},
    ]
    supervisor.current = respawned

    with pytest.raises(WorkerRemoteError):
        await client.call_tool("list_files")
    assert await client.call_tool("list_files") == {"files": []}
    assert respawned.invoke.await_count == 3
    assert client.replay_count == 1


@pytest.mark.asyncio
async def test_explicit_timeout_overrides_default():
    supervisor = FakeSupervisor()
    client = EngineClient(supervisor)
    await client.call_tool("echo", {"x": 1}, timeout=0.5)
    supervisor.current.invoke.assert_awaited_once_with("echo", {"x": 1}, timeout=0.5)
