# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from enginehost.cli import cli_main

if __name__ == "__main__":
    cli_main()
