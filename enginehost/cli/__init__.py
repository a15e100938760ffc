# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from enginehost.cli.parser import cli_main

__all__ = ["cli_main"]
