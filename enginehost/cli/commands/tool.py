"""CLI commands that drive a supervised worker: call, ping, status."""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from enginehost.exceptions import EngineHostError


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"Error: --args is not valid JSON: {e}", file=sys.stderr)
        sys.exit(2)
    if not isinstance(value, dict):
        print("Error: --args must be a JSON object", file=sys.stderr)
        sys.exit(2)
    return value


def cmd_call(args: argparse.Namespace) -> None:
    """Spawn a worker, optionally load a workspace, run one operation."""
    arguments = _parse_arguments(args.arguments)
    try:
        result = asyncio.run(_call(args.tool, arguments, args.workspace, args.timeout))
    except EngineHostError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _print_json(result)


async def _call(
    tool: str,
    arguments: dict[str, Any],
    workspace: str | None,
    timeout: float | None,
) -> Any:
    from enginehost.client import EngineClient
    from enginehost.supervisor.manager import WorkerSupervisor

    async with WorkerSupervisor() as supervisor:
        client = EngineClient(supervisor)
        if workspace:
            await client.initialize(workspace, timeout=timeout)
        return await client.call_tool(tool, arguments, timeout=timeout)


def cmd_ping(args: argparse.Namespace) -> None:
    """Exit 0 when a freshly spawned worker answers a ping."""
    ok = asyncio.run(_ping(args.timeout))
    if ok:
        print("pong")
    else:
        print("Worker did not respond", file=sys.stderr)
        sys.exit(1)


async def _ping(timeout: float) -> bool:
    from enginehost.supervisor.manager import WorkerSupervisor

    async with WorkerSupervisor() as supervisor:
        try:
            proxy = await supervisor.ensure_worker()
        except EngineHostError as e:
            print(f"Error: {e}", file=sys.stderr)
            return False
        return await proxy.ping(timeout=timeout)


def cmd_status(args: argparse.Namespace) -> None:
    """Print supervisor status plus the engine's health report."""
    try:
        status = asyncio.run(_status(args.workspace))
    except EngineHostError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    _print_json(status)


async def _status(workspace: str | None) -> dict[str, Any]:
    from enginehost.client import EngineClient
    from enginehost.supervisor.manager import WorkerSupervisor

    async with WorkerSupervisor() as supervisor:
        client = EngineClient(supervisor)
        if workspace:
            await client.initialize(workspace)
        health = await client.health_check()
        return {"supervisor": supervisor.get_status(), "engine": health}
