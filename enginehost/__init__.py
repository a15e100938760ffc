# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
"""EngineHost: run a crash-prone analysis engine in a supervised worker process."""

__version__ = "0.3.0"
