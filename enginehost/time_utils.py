from __future__ import annotations
# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
#
# This file is part of EngineHost, licensed under Apache-2.0.
# See LICENSE for the full license text.

"""Timezone-aware datetime helpers.

Host and worker stamp everything in UTC so timestamps crossing the
process boundary compare without conversion.
"""

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return current time as timezone-aware UTC datetime."""
    return datetime.now(tz=timezone.utc)


def now_iso() -> str:
    """Return current time as ISO8601 string with UTC offset."""
    return now_utc().isoformat()

