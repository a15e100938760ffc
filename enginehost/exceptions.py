from __future__ import annotations
# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of EngineHost, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Unified exception hierarchy for EngineHost.

All domain-specific exceptions derive from :class:`EngineHostError`,
enabling callers to catch the entire family with a single clause::

    try:
        ...
    except EngineHostError as e:
        logger.error("Worker call failed: %s", e)
"""


class EngineHostError(Exception):
    """Base exception for all EngineHost errors."""


# ── Process / IPC ────────────────────────────────────────────


class ProcessError(EngineHostError):
    """Worker process and IPC errors."""


class SpawnError(ProcessError):
    """Worker executable could not be located or the OS refused to start it."""


class WorkerNotRunningError(ProcessError):
    """Worker process has already exited."""


class IPCError(ProcessError):
    """Failure on the request/response channel to a worker."""


class RequestTimeoutError(IPCError, TimeoutError):
    """A single request exceeded its deadline.

    The worker is left running; the in-flight operation is not cancelled.
    """


class TransportClosedError(IPCError):
    """The worker's output stream reached EOF."""


class MalformedResponseError(TransportClosedError):
    """The worker wrote a line that is not a valid response envelope."""


class ProxyDisposedError(IPCError):
    """The proxy was closed while a call was waiting or before it started."""


class WorkerRemoteError(IPCError):
    """The worker answered with a structured error object.

    Carries the remote ``code`` and ``message`` so callers can tell an
    unknown tool from a failing one.
    """

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Worker error ({code}): {message}")
        self.code = code
        self.message = message


# ── Tool ─────────────────────────────────────────────────────


class ToolError(EngineHostError):
    """Analysis engine operation errors (raised inside the worker)."""


class ToolNotFoundError(ToolError):
    """Requested operation is not registered on the engine."""


class ToolExecutionError(ToolError):
    """Operation failed at runtime."""


# ── Configuration ────────────────────────────────────────────


class ConfigError(EngineHostError):
    """Configuration errors."""


class ConfigValidationError(ConfigError):
    """Environment or config value failed validation."""
