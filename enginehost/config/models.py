# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of EngineHost, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Central configuration module for EngineHost.

Defines Pydantic models for the ``ENGINEHOST_*`` environment contract and
the host-side supervisor settings, plus load helpers.  The worker process
never reads a config file: everything it needs arrives through the
environment built by :meth:`WorkerEnvConfig.to_worker_env`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from pydantic import BaseModel, ValidationError, field_validator

from enginehost.exceptions import ConfigValidationError

logger = logging.getLogger("enginehost.config")

# ---------------------------------------------------------------------------
# Environment variable names
# ---------------------------------------------------------------------------

ENV_LOG_LEVEL = "ENGINEHOST_LOG_LEVEL"
ENV_TIMEOUT_SECONDS = "ENGINEHOST_TIMEOUT_SECONDS"
ENV_MAX_DIAGNOSTICS = "ENGINEHOST_MAX_DIAGNOSTICS"
ENV_ABSOLUTE_PATHS = "ENGINEHOST_ABSOLUTE_PATHS"
ENV_ENGINE = "ENGINEHOST_ENGINE"
ENV_WORKSPACE = "ENGINEHOST_WORKSPACE"
ENV_PYTHON = "ENGINEHOST_PYTHON"
ENV_INVOKE_TIMEOUT = "ENGINEHOST_INVOKE_TIMEOUT"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class WorkerEnvConfig(BaseModel):
    """Settings handed to the worker process through its environment."""

    log_level: str = "INFO"
    timeout_seconds: float = 30.0
    max_diagnostics: int = 100
    absolute_paths: bool = False
    engine: str | None = None  # "package.module:factory"
    workspace: str | None = None  # host auto-initialize target; never passed on

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level == "INFORMATION":
            level = "INFO"
        if level not in _LOG_LEVELS:
            raise ValueError(f"unknown log level: {value!r}")
        return level

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be positive")
        return value

    @field_validator("max_diagnostics")
    @classmethod
    def _non_negative_cap(cls, value: int) -> int:
        if value < 0:
            raise ValueError("max_diagnostics must be >= 0")
        return value

    def to_worker_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        """Build the child environment.

        Starts from *base* (default: the current process environment),
        overlays the explicit contract and removes the auto-initialize
        variable: a freshly spawned worker is initialized by an explicit
        call from the host, not on startup.
        """
        env = dict(os.environ if base is None else base)
        env[ENV_LOG_LEVEL] = self.log_level
        env[ENV_TIMEOUT_SECONDS] = _format_number(self.timeout_seconds)
        env[ENV_MAX_DIAGNOSTICS] = str(self.max_diagnostics)
        env[ENV_ABSOLUTE_PATHS] = "true" if self.absolute_paths else "false"
        if self.engine:
            env[ENV_ENGINE] = self.engine
        else:
            env.pop(ENV_ENGINE, None)
        env.pop(ENV_WORKSPACE, None)
        # Protocol lines must not sit in a block buffer.
        env["PYTHONUNBUFFERED"] = "1"
        return env


class HostConfig(BaseModel):
    """Host-side supervisor settings (seconds)."""

    invoke_timeout: float = 30.0
    spawn_ping_timeout: float = 5.0
    graceful_shutdown_timeout: float = 5.0
    kill_wait_timeout: float = 2.0
    python_executable: str | None = None  # None = sys.executable
    worker_cwd: str | None = None
    forward_stderr: bool = True


class EngineHostConfig(BaseModel):
    worker: WorkerEnvConfig = WorkerEnvConfig()
    host: HostConfig = HostConfig()


# ---------------------------------------------------------------------------
# Load helpers
# ---------------------------------------------------------------------------


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _collect(environ: Mapping[str, str], mapping: dict[str, str]) -> dict[str, str]:
    """Pick non-empty variables out of *environ* keyed by field name."""
    data: dict[str, str] = {}
    for field_name, var in mapping.items():
        raw = environ.get(var)
        if raw is not None and raw.strip() != "":
            data[field_name] = raw.strip()
    return data


def load_worker_env(environ: Mapping[str, str] | None = None) -> WorkerEnvConfig:
    """Parse the worker environment contract from *environ*."""
    if environ is None:
        environ = os.environ
    data = _collect(environ, {
        "log_level": ENV_LOG_LEVEL,
        "timeout_seconds": ENV_TIMEOUT_SECONDS,
        "max_diagnostics": ENV_MAX_DIAGNOSTICS,
        "absolute_paths": ENV_ABSOLUTE_PATHS,
        "engine": ENV_ENGINE,
        "workspace": ENV_WORKSPACE,
    })
    try:
        return WorkerEnvConfig.model_validate(data)
    except ValidationError as exc:
        logger.error("Invalid ENGINEHOST_* environment: %s", exc)
        raise ConfigValidationError(str(exc)) from exc


def load_config(environ: Mapping[str, str] | None = None) -> EngineHostConfig:
    """Load the full host configuration from environment variables.

    Unset or empty variables fall back to model defaults.
    """
    if environ is None:
        environ = os.environ
    worker = load_worker_env(environ)
    host_data = _collect(environ, {
        "python_executable": ENV_PYTHON,
        "invoke_timeout": ENV_INVOKE_TIMEOUT,
    })
    try:
        host = HostConfig.model_validate(host_data)
    except ValidationError as exc:
        logger.error("Invalid host configuration: %s", exc)
        raise ConfigValidationError(str(exc)) from exc
    logger.debug(
        "Loaded config: log_level=%s timeout=%ss engine=%s",
        worker.log_level, worker.timeout_seconds, worker.engine or "default",
    )
    return EngineHostConfig(worker=worker, host=host)
