# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
"""
Process isolation supervisor package.

Runs the analysis engine in a separate worker process and talks to it
over the worker's stdin/stdout with newline-delimited JSON envelopes.
"""

from __future__ import annotations

from enginehost.supervisor.ipc import ErrorCode, IPCRequest, IPCResponse
from enginehost.supervisor.process_handle import WorkerProcess, WorkerState, WorkerStats
from enginehost.supervisor.proxy import PendingCall, WorkerProxy
from enginehost.supervisor.manager import RecoveryState, WorkerSupervisor
from enginehost.supervisor.runner import LoopState, WorkerLoop

__all__ = [
    "ErrorCode",
    "IPCRequest",
    "IPCResponse",
    "WorkerProcess",
    "WorkerState",
    "WorkerStats",
    "PendingCall",
    "WorkerProxy",
    "RecoveryState",
    "WorkerSupervisor",
    "LoopState",
    "WorkerLoop",
]
