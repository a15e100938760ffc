# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
"""Global test fixtures for EngineHost.

Provides environment isolation, logging teardown and a config factory
pointing real worker subprocesses at the probe engine.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from enginehost.config import EngineHostConfig, HostConfig, WorkerEnvConfig
from tests.helpers.engines import PROBE_ENGINE

PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ── Fixtures ──────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop any ENGINEHOST_* variables inherited from the developer shell."""
    import os

    for name in list(os.environ):
        if name.startswith("ENGINEHOST_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def restore_logging():
    """Restore root logger handlers/level after tests that reconfigure logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def make_config() -> Callable[..., EngineHostConfig]:
    """Factory for configs that spawn the probe engine from the project root."""

    def _make(worker: dict[str, Any] | None = None, **host: Any) -> EngineHostConfig:
        worker_fields = {"engine": PROBE_ENGINE, "log_level": "DEBUG"}
        worker_fields.update(worker or {})
        host_fields: dict[str, Any] = {
            "worker_cwd": str(PROJECT_ROOT),
            "spawn_ping_timeout": 15.0,
            "graceful_shutdown_timeout": 5.0,
        }
        host_fields.update(host)
        return EngineHostConfig(
            worker=WorkerEnvConfig(**worker_fields),
            host=HostConfig(**host_fields),
        )

    return _make


@pytest.fixture
def stderr_sink() -> io.StringIO:
    return io.StringIO()
