"""
Worker Supervisor - owns the lifecycle of the analysis worker process.
"""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import functools
import logging
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TextIO

import psutil

from enginehost.config import EngineHostConfig, load_config
from enginehost.exceptions import SpawnError
from enginehost.supervisor.process_handle import WorkerProcess, resolve_executable
from enginehost.supervisor.proxy import WorkerProxy
from enginehost.time_utils import now_utc

logger = logging.getLogger(__name__)

WORKER_FLAG = "--worker"
WORKER_MODULE = "enginehost"


@dataclass
class RecoveryState:
    """Last successful initialization call, replayed by callers after a respawn."""
    tool: str
    arguments: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=now_utc)


# ── Worker Supervisor ─────────────────────────────────────────────

class WorkerSupervisor:
    """
    Supervisor for the single analysis worker process.

    Responsibilities:
    - Hand out a live proxy, spawning or respawning lazily
    - Serialize spawns so concurrent callers share one process
    - Graceful-then-forced shutdown
    - Forward the worker's stderr into the host's diagnostic stream

    Two locks: ``_state_lock`` is held only for field reads/writes (and is
    a thread lock so status can be read from other threads);
    ``_spawn_lock`` serializes spawn and shutdown without ever blocking a
    liveness check.
    """

    def __init__(
        self,
        config: EngineHostConfig | None = None,
        stderr_sink: TextIO | None = None,
    ):
        self.config = config or load_config()
        self._stderr_sink = stderr_sink

        self._state_lock = threading.Lock()
        self._spawn_lock = asyncio.Lock()

        self._worker: WorkerProcess | None = None
        self._proxy: WorkerProxy | None = None
        self._forward_task: asyncio.Task | None = None
        self._started_at: datetime | None = None
        self._spawn_count = 0
        self._last_exit_code: int | None = None
        self._recovery_state: RecoveryState | None = None
        self._closed = False

    # ── Status ────────────────────────────────────────────────────

    @property
    def is_worker_running(self) -> bool:
        with self._state_lock:
            return self._worker is not None and self._worker.is_running()

    @property
    def worker_pid(self) -> int | None:
        with self._state_lock:
            return self._worker.pid if self._worker is not None else None

    @property
    def worker_started_at(self) -> datetime | None:
        with self._state_lock:
            return self._started_at

    @property
    def worker_uptime(self) -> timedelta | None:
        started_at = self.worker_started_at
        if started_at is None or not self.is_worker_running:
            return None
        return now_utc() - started_at

    @property
    def spawn_count(self) -> int:
        """Number of worker processes created by this supervisor."""
        return self._spawn_count

    @property
    def last_exit_code(self) -> int | None:
        return self._last_exit_code

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the worker state for health reporting."""
        uptime = self.worker_uptime
        recovery = self._recovery_state
        started_at = self.worker_started_at
        return {
            "running": self.is_worker_running,
            "pid": self.worker_pid,
            "started_at": started_at.isoformat() if started_at else None,
            "uptime_seconds": round(uptime.total_seconds(), 3) if uptime else None,
            "spawn_count": self._spawn_count,
            "last_exit_code": self._last_exit_code,
            "recovery": {
                "tool": recovery.tool,
                "arguments": recovery.arguments,
                "recorded_at": recovery.recorded_at.isoformat(),
            } if recovery else None,
        }

    # ── Recovery state ────────────────────────────────────────────

    @property
    def recovery_state(self) -> RecoveryState | None:
        return self._recovery_state

    def record_recovery_state(self, tool: str, arguments: dict[str, Any] | None = None) -> None:
        """Remember the initialization call that a fresh worker will need."""
        self._recovery_state = RecoveryState(tool=tool, arguments=dict(arguments or {}))
        logger.debug("Recovery state recorded: %s", tool)

    def clear_recovery_state(self) -> None:
        self._recovery_state = None

    # ── Lifecycle ─────────────────────────────────────────────────

    async def ensure_worker(self) -> WorkerProxy:
        """Return a proxy to a running worker, spawning one if needed."""
        proxy = self._live_proxy()
        if proxy is not None:
            return proxy

        async with self._spawn_lock:
            # Another caller may have finished spawning while we waited.
            proxy = self._live_proxy()
            if proxy is not None:
                return proxy
            return await self._spawn()

    async def spawn_worker(self) -> WorkerProxy:
        """Spawn a new worker, tearing down any existing one first."""
        async with self._spawn_lock:
            return await self._spawn()

    async def shutdown_worker(
        self,
        force: bool = True,
        graceful_timeout: float | None = None,
    ) -> bool:
        """
        Stop the worker: EOF on stdin first, process-tree kill if that fails.

        Args:
            force: Kill the process tree when graceful shutdown times out
            graceful_timeout: Seconds to wait for a cooperative exit

        Returns:
            True when the worker exited on its own or was force-killed.
            False when force is off and the cooperative exit timed out; the
            worker is still torn down in that case.
        """
        async with self._spawn_lock:
            return await self._shutdown(force, graceful_timeout)

    async def close(self) -> None:
        """Dispose: force the worker down and refuse further spawns."""
        if self._closed:
            return
        self._closed = True
        async with self._spawn_lock:
            await self._shutdown(force=True, graceful_timeout=None)

    async def __aenter__(self) -> WorkerSupervisor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Internals ─────────────────────────────────────────────────

    def _live_proxy(self) -> WorkerProxy | None:
        with self._state_lock:
            if (
                self._proxy is not None
                and self._worker is not None
                and self._worker.is_running()
                and not self._proxy.is_disposed
                and not self._proxy.is_input_closed
                and not self._proxy.is_transport_closed
            ):
                return self._proxy
            return None

    def build_worker_command(self, executable: str) -> list[str]:
        return [executable, "-m", WORKER_MODULE, WORKER_FLAG]

    async def _spawn(self) -> WorkerProxy:
        """Spawn a worker.  Caller must hold ``_spawn_lock``."""
        if self._closed:
            raise SpawnError("Supervisor is closed")

        await self._teardown_worker()

        executable = resolve_executable(self.config.host.python_executable)
        command = self.build_worker_command(executable)
        env = self.config.worker.to_worker_env()
        logger.info("Spawning worker process: %s", " ".join(command))

        worker = WorkerProcess(command, env=env, cwd=self.config.host.worker_cwd)
        await worker.start()
        worker.exited.add_done_callback(functools.partial(self._on_worker_exited, worker))

        proxy = WorkerProxy(worker)
        forward_task = asyncio.create_task(
            self._forward_stderr(worker), name=f"worker-stderr-{worker.pid}",
        )
        forward_task.add_done_callback(self._on_forwarder_done)

        with self._state_lock:
            self._worker = worker
            self._proxy = proxy
            self._forward_task = forward_task
            self._started_at = worker.stats.started_at
            self._spawn_count += 1

        logger.info("Worker process ready for requests (PID %s)", worker.pid)

        ping_ok = await proxy.ping(timeout=self.config.host.spawn_ping_timeout)
        if not ping_ok:
            logger.warning("Worker did not respond to initial ping")

        return proxy

    async def _shutdown(self, force: bool, graceful_timeout: float | None) -> bool:
        if graceful_timeout is None:
            graceful_timeout = self.config.host.graceful_shutdown_timeout

        with self._state_lock:
            worker = self._worker
            proxy = self._proxy

        if worker is None or not worker.is_running():
            await self._teardown_worker()
            return True

        logger.info("Shutting down worker process (PID %s)...", worker.pid)

        if proxy is not None and await proxy.shutdown(timeout=graceful_timeout):
            logger.info("Worker shut down gracefully")
            await self._teardown_worker()
            return True

        if not force:
            logger.warning(
                "Worker did not exit within %.1fs; releasing it anyway (force=False)",
                graceful_timeout,
            )
            await self._teardown_worker()
            return False

        logger.warning("Graceful shutdown failed, force killing worker")
        try:
            worker.kill_tree()
            if not await worker.wait(timeout=self.config.host.kill_wait_timeout):
                logger.error("Worker did not exit after kill (PID %s)", worker.process.pid)
        except psutil.Error as e:
            logger.error("Error killing worker: %s", e)

        await self._teardown_worker()
        return True

    async def _teardown_worker(self) -> None:
        """Release the current worker/proxy pair.  Best effort."""
        with self._state_lock:
            worker, self._worker = self._worker, None
            proxy, self._proxy = self._proxy, None
            forward_task, self._forward_task = self._forward_task, None
            self._started_at = None

        if proxy is not None:
            await proxy.close()
        if worker is not None:
            await worker.close()
        if forward_task is not None and not forward_task.done():
            # stderr hits EOF once the process is gone; don't wait forever.
            _done, pending = await asyncio.wait({forward_task}, timeout=1.0)
            for task in pending:
                task.cancel()

    def _on_worker_exited(self, worker: WorkerProcess, exited: asyncio.Future[int]) -> None:
        if exited.cancelled():
            return
        exit_code = exited.result()
        self._last_exit_code = exit_code
        pid = worker.process.pid if worker.process else None
        logger.warning("Worker process exited (PID %s, exit code: %s)", pid, exit_code)

    async def _forward_stderr(self, worker: WorkerProcess) -> None:
        """Copy worker stderr lines into the host's diagnostic stream."""
        reader = worker.stderr
        while True:
            line_bytes = await reader.readline()
            if not line_bytes:
                break
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\r\n")
            if self.config.host.forward_stderr:
                sink = self._stderr_sink or sys.stderr
                sink.write(line + "\n")
                sink.flush()
            else:
                logger.debug("[worker] %s", line)

    @staticmethod
    def _on_forwarder_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Stderr forwarding ended: %s", exc)
