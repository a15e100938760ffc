# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of EngineHost, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Analysis engine seam used by the worker process.

An engine is a registry of named operations.  Each operation receives the
request's parameter bag (a dict) and returns a JSON-serialisable value, or
raises.  Operations may be plain functions or coroutines.

The worker builds exactly one engine per process via :func:`create_engine`,
which honours ``ENGINEHOST_ENGINE="package.module:factory"``.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel

from enginehost.config.models import WorkerEnvConfig
from enginehost.exceptions import ConfigError, ToolExecutionError, ToolNotFoundError
from enginehost.time_utils import now_iso

logger = logging.getLogger(__name__)

Operation = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]

DEFAULT_ENGINE = "enginehost.engine:WorkspaceEngine"

_OPERATION_ATTR = "__engine_operation__"


class EngineSettings(BaseModel):
    """The slice of the worker environment an engine is allowed to see."""

    timeout_seconds: float = 30.0
    max_diagnostics: int = 100
    absolute_paths: bool = False

    @classmethod
    def from_worker_env(cls, config: WorkerEnvConfig) -> EngineSettings:
        return cls(
            timeout_seconds=config.timeout_seconds,
            max_diagnostics=config.max_diagnostics,
            absolute_paths=config.absolute_paths,
        )


def operation(name: str) -> Callable[[Callable], Callable]:
    """Mark a method as an engine operation registered under *name*."""
    def decorator(func: Callable) -> Callable:
        setattr(func, _OPERATION_ATTR, name)
        return func
    return decorator


# ── AnalysisEngine ───────────────────────────────────────────


class AnalysisEngine:
    """Base engine: a name → callable registry.

    Subclasses declare operations with :func:`operation`; additional
    callables can be attached at runtime with :meth:`register`.
    """

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or EngineSettings()
        self._operations: dict[str, Operation] = {}
        for _attr, member in inspect.getmembers(self, predicate=callable):
            op_name = getattr(member, _OPERATION_ATTR, None)
            if op_name:
                self._operations[op_name] = member

    def register(self, name: str, func: Operation) -> None:
        """Register or replace the operation called *name*."""
        self._operations[name] = func

    def operation_names(self) -> list[str]:
        return sorted(self._operations)

    def has_operation(self, name: str) -> bool:
        return name in self._operations

    async def invoke(self, name: str, params: dict[str, Any]) -> Any:
        """Run operation *name* with *params*.

        Raises:
            ToolNotFoundError: If *name* is not registered.
        """
        func = self._operations.get(name)
        if func is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")
        result = func(params)
        if inspect.isawaitable(result):
            result = await result
        return result


# ── WorkspaceEngine ──────────────────────────────────────────


class WorkspaceEngine(AnalysisEngine):
    """Minimal default engine operating on a loaded workspace directory.

    ``load_workspace`` is the initialization call a host replays after a
    respawn.
    """

    def __init__(self, settings: EngineSettings | None = None) -> None:
        super().__init__(settings)
        self.workspace: Path | None = None
        self._file_count = 0
        self._started = time.monotonic()

    def _require_workspace(self) -> Path:
        if self.workspace is None:
            raise ToolExecutionError("No workspace loaded. Call load_workspace first.")
        return self.workspace

    def _format_path(self, path: Path) -> str:
        if self.settings.absolute_paths or self.workspace is None:
            return str(path)
        return path.relative_to(self.workspace).as_posix()

    @operation("health_check")
    def health_check(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "status": "Ready" if self.workspace is not None else "NoWorkspace",
            "pid": os.getpid(),
            "timestamp": now_iso(),
            "uptime_seconds": round(time.monotonic() - self._started, 3),
            "workspace": {
                "loaded": self.workspace is not None,
                "path": str(self.workspace) if self.workspace else None,
                "file_count": self._file_count,
            },
            "operations": self.operation_names(),
        }

    @operation("load_workspace")
    def load_workspace(self, params: dict[str, Any]) -> dict[str, Any]:
        raw = params.get("path")
        if not raw or not isinstance(raw, str):
            raise ToolExecutionError("path required")
        path = Path(raw).expanduser().resolve()
        if not path.is_dir():
            raise ToolExecutionError(f"Workspace not found: {path}")

        started = time.perf_counter()
        count = sum(1 for p in path.rglob("*") if p.is_file())
        self.workspace = path
        self._file_count = count
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.info("Workspace loaded: %s (%d files, %.1fms)", path, count, elapsed_ms)
        return {"path": str(path), "file_count": count, "load_time_ms": elapsed_ms}

    @operation("list_files")
    def list_files(self, params: dict[str, Any]) -> dict[str, Any]:
        root = self._require_workspace()
        pattern = params.get("pattern") or "*"
        limit = int(params.get("max_results") or self.settings.max_diagnostics)
        limit = min(limit, self.settings.max_diagnostics)

        matches = sorted(p for p in root.rglob(pattern) if p.is_file())
        return {
            "files": [self._format_path(p) for p in matches[:limit]],
            "total_count": len(matches),
            "has_more": len(matches) > limit,
        }


# ── Factory ──────────────────────────────────────────────────


def create_engine(spec: str | None, settings: EngineSettings) -> AnalysisEngine:
    """Build the engine named by *spec* (``"module:attr"``).

    *attr* may be an :class:`AnalysisEngine` subclass or any callable taking
    :class:`EngineSettings` and returning an engine.
    """
    spec = spec or DEFAULT_ENGINE
    module_path, sep, attr = spec.partition(":")
    if not sep or not module_path or not attr:
        raise ConfigError(f"Invalid engine spec (expected 'module:factory'): {spec!r}")

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ConfigError(f"Cannot import engine module {module_path!r}: {e}") from e
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigError(f"Engine factory not found: {spec!r}")

    engine = factory(settings)
    if not isinstance(engine, AnalysisEngine):
        raise ConfigError(f"Engine factory {spec!r} returned {type(engine).__name__}")
    logger.info("Engine created: %s (%d operations)", spec, len(engine.operation_names()))
    return engine
