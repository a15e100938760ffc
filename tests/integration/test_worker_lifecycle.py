"""Integration tests for the worker lifecycle against real subprocesses."""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio

import pytest

psutil = pytest.importorskip("psutil")

from enginehost.exceptions import (
    MalformedResponseError,
    RequestTimeoutError,
    SpawnError,
    TransportClosedError,
    WorkerNotRunningError,
    WorkerRemoteError,
)
from enginehost.supervisor.ipc import ErrorCode
from enginehost.supervisor.manager import WorkerSupervisor
from enginehost.supervisor.process_handle import WorkerState

pytestmark = pytest.mark.integration


async def _wait_gone(proc, timeout: float) -> bool:
    """Wait until *proc* is reaped or a zombie (orphans may not be reaped in containers)."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        try:
            if proc.status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        await asyncio.sleep(0.05)
    return False


@pytest.mark.asyncio
async def test_spawn_and_ping(make_config, stderr_sink):
    """A spawned worker answers pings and reports itself running."""
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        assert proxy.pid and proxy.pid > 0
        assert psutil.pid_exists(proxy.pid)
        assert await proxy.ping(timeout=5.0) is True

        status = supervisor.get_status()
        assert status["running"] is True
        assert status["pid"] == proxy.pid
        assert status["spawn_count"] == 1
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_concurrent_ensure_worker_starts_one_process(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxies = await asyncio.gather(*(supervisor.ensure_worker() for _ in range(5)))
        assert len({id(p) for p in proxies}) == 1
        assert supervisor.spawn_count == 1
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_protocol_round_trip_and_shutdown(make_config, stderr_sink):
    """ping, unknown tool, protocol shutdown, then exit within a second."""
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()

        response = await proxy.send_request("ping", {}, timeout=5.0)
        assert response.result["pong"] is True

        with pytest.raises(WorkerRemoteError) as exc_info:
            await proxy.invoke("does_not_exist", timeout=5.0)
        assert exc_info.value.code == ErrorCode.METHOD_NOT_FOUND
        assert exc_info.value.message == "Unknown tool: does_not_exist"

        assert await proxy.request_shutdown(timeout=5.0) == {"message": "Shutting down"}
        await asyncio.wait_for(asyncio.shield(proxy.worker.exited), timeout=2.0)

        assert proxy.worker.state is WorkerState.EXITED
        assert await proxy.ping(timeout=1.0) is False
        with pytest.raises(WorkerNotRunningError):
            await proxy.invoke("echo", timeout=1.0)
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_tool_results_and_errors(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        assert await proxy.invoke("echo", {"msg": "héllo\nworld"}, timeout=5.0) == {
            "echo": {"msg": "héllo\nworld"},
        }
        with pytest.raises(WorkerRemoteError) as exc_info:
            await proxy.invoke("fail", {"message": "kaput"}, timeout=5.0)
        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR
        assert exc_info.value.message == "Tool error: kaput"

        # The worker survives operation failures.
        assert await proxy.ping(timeout=5.0) is True
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_engine_prints_do_not_corrupt_protocol(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        assert await proxy.invoke("print_noise", timeout=5.0) == {"printed": True}
        assert await proxy.ping(timeout=5.0) is True

        for _ in range(50):
            if "noise from engine" in stderr_sink.getvalue():
                break
            await asyncio.sleep(0.05)
        assert "noise from engine" in stderr_sink.getvalue()
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_timed_out_call_leaves_worker_usable(make_config, stderr_sink):
    """The late response of a timed-out call must not answer the next one."""
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        with pytest.raises(RequestTimeoutError):
            await proxy.invoke("sleep", {"seconds": 1.0}, timeout=0.2)
        assert proxy.is_alive

        response = await proxy.send_request("ping", {}, timeout=5.0)
        assert response.result["pong"] is True
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_worker_side_operation_timeout(make_config, stderr_sink):
    supervisor = WorkerSupervisor(
        make_config(worker={"timeout_seconds": 0.3}), stderr_sink=stderr_sink,
    )
    try:
        proxy = await supervisor.ensure_worker()
        with pytest.raises(WorkerRemoteError) as exc_info:
            await proxy.invoke("sleep", {"seconds": 3.0}, timeout=5.0)
        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR
        assert "timed out" in exc_info.value.message
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_worker_environment_contract(make_config, stderr_sink, monkeypatch):
    monkeypatch.setenv("ENGINEHOST_WORKSPACE", "/should/not/leak")
    supervisor = WorkerSupervisor(
        make_config(worker={"max_diagnostics": 7, "absolute_paths": True, "workspace": "/x"}),
        stderr_sink=stderr_sink,
    )
    try:
        proxy = await supervisor.ensure_worker()
        env = await proxy.invoke("env", timeout=5.0)
        assert env["ENGINEHOST_MAX_DIAGNOSTICS"] == "7"
        assert env["ENGINEHOST_ABSOLUTE_PATHS"] == "true"
        assert env["ENGINEHOST_LOG_LEVEL"] == "DEBUG"
        assert env["ENGINEHOST_WORKSPACE"] is None
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_respawn_after_out_of_band_kill(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        old_pid = proxy.pid

        psutil.Process(old_pid).kill()
        await asyncio.wait_for(asyncio.shield(proxy.worker.exited), timeout=5.0)
        assert not supervisor.is_worker_running

        new_proxy = await supervisor.ensure_worker()
        assert new_proxy is not proxy
        assert new_proxy.pid != old_pid
        assert supervisor.spawn_count == 2
        assert supervisor.last_exit_code is not None and supervisor.last_exit_code != 0
        assert await new_proxy.ping(timeout=5.0) is True
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_crash_mid_call_fails_call_then_respawns(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        with pytest.raises(TransportClosedError):
            await proxy.invoke("crash", {"code": 3}, timeout=5.0)

        await asyncio.wait_for(asyncio.shield(proxy.worker.exited), timeout=5.0)
        assert supervisor.last_exit_code == 3

        new_proxy = await supervisor.ensure_worker()
        assert new_proxy.pid != proxy.worker.process.pid
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_garbage_on_stdout_fails_call_then_respawns(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        old_pid = proxy.pid
        with pytest.raises(MalformedResponseError):
            await proxy.invoke("corrupt_stdout", timeout=5.0)
        assert proxy.worker.is_running()

        new_proxy = await supervisor.ensure_worker()
        assert new_proxy is not proxy
        assert new_proxy.pid != old_pid
        assert supervisor.spawn_count == 2
        assert await new_proxy.ping(timeout=5.0) is True
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_graceful_shutdown(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    proxy = await supervisor.ensure_worker()
    worker = proxy.worker

    assert await supervisor.shutdown_worker() is True
    assert worker.state is WorkerState.EXITED
    assert worker.stats.exit_code == 0
    assert supervisor.worker_pid is None
    await supervisor.close()


@pytest.mark.asyncio
async def test_forced_shutdown_kills_process_tree(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(kill_wait_timeout=5.0), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        worker = proxy.worker
        child_pid = (await proxy.invoke("spawn_child", timeout=5.0))["child_pid"]
        child = psutil.Process(child_pid)

        # Block the worker's event loop so stdin EOF goes unnoticed.
        with pytest.raises(RequestTimeoutError):
            await proxy.invoke("hang", {"seconds": 30}, timeout=0.3)

        assert await supervisor.shutdown_worker(graceful_timeout=0.5) is True
        assert worker.state is WorkerState.EXITED
        assert await _wait_gone(child, timeout=5.0)
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_unforced_shutdown_of_hung_worker(make_config, stderr_sink):
    supervisor = WorkerSupervisor(make_config(), stderr_sink=stderr_sink)
    try:
        proxy = await supervisor.ensure_worker()
        old_worker = proxy.worker
        with pytest.raises(RequestTimeoutError):
            await proxy.invoke("hang", {"seconds": 30}, timeout=0.3)

        old_process = psutil.Process(old_worker.pid)

        assert await supervisor.shutdown_worker(force=False, graceful_timeout=0.3) is False
        assert not old_worker.is_running()
        assert not supervisor.is_worker_running
        assert await _wait_gone(old_process, timeout=5.0)

        new_proxy = await supervisor.ensure_worker()
        assert new_proxy is not proxy
        assert await new_proxy.ping(timeout=5.0) is True
    finally:
        await supervisor.close()


@pytest.mark.asyncio
async def test_spawn_failure(make_config, stderr_sink):
    supervisor = WorkerSupervisor(
        make_config(python_executable="/nonexistent/enginehost-python"),
        stderr_sink=stderr_sink,
    )
    with pytest.raises(SpawnError):
        await supervisor.ensure_worker()
    assert supervisor.spawn_count == 0
    await supervisor.close()
