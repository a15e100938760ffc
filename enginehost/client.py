# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of EngineHost, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Caller-side facade over :class:`WorkerSupervisor`.

``EngineClient`` is what host code uses to run tools.  It asks the
supervisor for a live proxy on every call and, when the proxy belongs to
a worker it has not talked to before, replays the recorded initialization
call so a respawn stays invisible to its own callers.

One client per supervisor: replay bookkeeping is per client.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from enginehost.supervisor.manager import WorkerSupervisor
from enginehost.supervisor.proxy import WorkerProxy

logger = logging.getLogger(__name__)

INIT_TOOLS = ("load_workspace",)


class EngineClient:
    """Run engine tools through a supervised worker."""

    def __init__(
        self,
        supervisor: WorkerSupervisor,
        init_tools: Iterable[str] = INIT_TOOLS,
        default_timeout: float | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.init_tools = frozenset(init_tools)
        self.default_timeout = (
            default_timeout
            if default_timeout is not None
            else supervisor.config.host.invoke_timeout
        )
        self._known_proxy: WorkerProxy | None = None
        self.replay_count = 0

    async def call_tool(
        self,
        tool: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke *tool* on the worker, spawning or re-initializing as needed.

        Errors from the worker (remote errors, timeouts, a worker dying
        mid-call) surface unchanged; the next call triggers a fresh spawn.
        """
        if timeout is None:
            timeout = self.default_timeout

        proxy = await self.supervisor.ensure_worker()
        if proxy is not self._known_proxy:
            if self._known_proxy is not None:
                logger.info("Worker changed (now PID %s)", proxy.pid)
            if tool not in self.init_tools:
                await self._replay_recovery(proxy, timeout)
            self._known_proxy = proxy

        result = await proxy.invoke(tool, arguments, timeout=timeout)
        if tool in self.init_tools:
            self.supervisor.record_recovery_state(tool, arguments)
        return result

    async def initialize(self, workspace: str, timeout: float | None = None) -> Any:
        """Load *workspace* into the worker and remember it for respawns."""
        return await self.call_tool("load_workspace", {"path": workspace}, timeout=timeout)

    async def health_check(self, timeout: float | None = None) -> Any:
        return await self.call_tool("health_check", {}, timeout=timeout)

    async def _replay_recovery(self, proxy: WorkerProxy, timeout: float) -> None:
        state = self.supervisor.recovery_state
        if state is None:
            return
        logger.info("Replaying %s on worker PID %s", state.tool, proxy.pid)
        try:
            await proxy.invoke(state.tool, state.arguments, timeout=timeout)
        except Exception as e:
            logger.error("Recovery replay of %s failed: %s", state.tool, e)
            raise
        self.replay_count += 1
