"""
Process handle for the analysis worker child process.
"""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

import psutil

from enginehost.exceptions import SpawnError
from enginehost.supervisor.ipc import IPC_BUFFER_LIMIT
from enginehost.time_utils import now_utc

logger = logging.getLogger(__name__)


# ── Process State ──────────────────────────────────────────────────

class WorkerState(Enum):
    """Lifecycle of one worker process.  Transitions only move forward."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"


@dataclass
class WorkerStats:
    """Process statistics."""
    started_at: datetime | None = None
    exited_at: datetime | None = None
    exit_code: int | None = None


# ── Worker Process ──────────────────────────────────────────────────

class WorkerProcess:
    """
    Handle for one worker OS process.

    Owns the ``asyncio.subprocess.Process`` and its three pipes.  A handle
    is never restarted: a respawn creates a new ``WorkerProcess``.
    """

    def __init__(
        self,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ):
        self.command = list(command)
        self.env = dict(env) if env is not None else None
        self.cwd = cwd

        self.process: asyncio.subprocess.Process | None = None
        self.stats = WorkerStats()
        self._state = WorkerState.NOT_STARTED
        self._exited: asyncio.Future[int] | None = None
        self._exit_watcher: asyncio.Task | None = None

    @property
    def state(self) -> WorkerState:
        if self._state is WorkerState.RUNNING and self.process is not None:
            if self.process.returncode is not None:
                self._mark_exited(self.process.returncode)
        return self._state

    @property
    def exited(self) -> asyncio.Future[int]:
        """One-shot signal resolved with the exit code when the process exits."""
        if self._exited is None:
            raise RuntimeError("Worker process not started")
        return self._exited

    @property
    def pid(self) -> int | None:
        """PID while running, otherwise None."""
        if self.state is WorkerState.RUNNING and self.process is not None:
            return self.process.pid
        return None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        assert self.process is not None and self.process.stdin is not None
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.process is not None and self.process.stdout is not None
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self.process is not None and self.process.stderr is not None
        return self.process.stderr

    def is_running(self) -> bool:
        return self.state is WorkerState.RUNNING

    async def start(self) -> None:
        """
        Start the child process with stdin/stdout/stderr as pipes.

        Raises:
            SpawnError: If the OS refuses to start the process.
        """
        if self._state is not WorkerState.NOT_STARTED:
            raise RuntimeError(f"Cannot start worker in state {self._state.value}")

        logger.debug("Command: %s", " ".join(self.command))
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                limit=IPC_BUFFER_LIMIT,
            )
        except OSError as e:
            logger.error("Failed to start worker process: %s", e)
            raise SpawnError(f"Failed to start worker process: {e}") from e

        self._state = WorkerState.RUNNING
        self.stats = WorkerStats(started_at=now_utc())
        self._exited = asyncio.get_running_loop().create_future()
        self._exit_watcher = asyncio.create_task(
            self._watch_exit(), name=f"worker-exit-{self.process.pid}",
        )
        logger.info("Worker process started (PID %s)", self.process.pid)

    async def _watch_exit(self) -> None:
        assert self.process is not None
        returncode = await self.process.wait()
        self._mark_exited(returncode)

    def _mark_exited(self, returncode: int) -> None:
        if self._state is WorkerState.EXITED:
            return
        self._state = WorkerState.EXITED
        self.stats.exit_code = returncode
        self.stats.exited_at = now_utc()
        if self._exited is not None and not self._exited.done():
            self._exited.set_result(returncode)

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait for the process to exit.  Returns False on timeout."""
        if self.process is None:
            return True
        try:
            async with asyncio.timeout(timeout):
                returncode = await self.process.wait()
        except TimeoutError:
            return False
        self._mark_exited(returncode)
        return True

    def kill_tree(self) -> None:
        """Kill the process and all of its descendants.

        Best effort: processes that are already gone are skipped.
        """
        if self.process is None or self.process.returncode is not None:
            return

        pid = self.process.pid
        try:
            parent = psutil.Process(pid)
            victims = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return
        victims.append(parent)

        logger.warning("Killing worker process tree (PID %s, %d processes)", pid, len(victims))
        for proc in victims:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("Access denied killing PID %s", proc.pid)

    async def close(self) -> None:
        """Release pipes and the exit watcher.  Kills the tree if still alive."""
        if self.process is None:
            return
        if self.process.returncode is None:
            self.kill_tree()
            await self.wait(timeout=2.0)

        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
            try:
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("stdin already closed for PID %s", self.process.pid)

        if self._exit_watcher is not None and not self._exit_watcher.done():
            self._exit_watcher.cancel()
            try:
                await self._exit_watcher
            except asyncio.CancelledError:
                pass
        self._exit_watcher = None


def resolve_executable(python_executable: str | None) -> str:
    """Return the interpreter used to re-invoke this package in worker mode.

    Raises:
        SpawnError: If no executable path can be determined.
    """
    candidate = python_executable or sys.executable
    if not candidate:
        raise SpawnError("Could not determine executable path for worker process")
    resolved = shutil.which(candidate)
    if resolved is None:
        raise SpawnError(f"Worker executable not found: {candidate}")
    return resolved
