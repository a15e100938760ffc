# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from enginehost.config.models import (
    ENV_ABSOLUTE_PATHS,
    ENV_ENGINE,
    ENV_LOG_LEVEL,
    ENV_MAX_DIAGNOSTICS,
    ENV_TIMEOUT_SECONDS,
    ENV_WORKSPACE,
    EngineHostConfig,
    HostConfig,
    WorkerEnvConfig,
    load_config,
    load_worker_env,
)

__all__ = [
    "ENV_ABSOLUTE_PATHS",
    "ENV_ENGINE",
    "ENV_LOG_LEVEL",
    "ENV_MAX_DIAGNOSTICS",
    "ENV_TIMEOUT_SECONDS",
    "ENV_WORKSPACE",
    "EngineHostConfig",
    "HostConfig",
    "WorkerEnvConfig",
    "load_config",
    "load_worker_env",
]
