# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from enginehost import __version__
from enginehost.supervisor.manager import WORKER_FLAG


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enginehost",
        description="EngineHost - Isolated Analysis Worker Host",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        WORKER_FLAG, action="store_true", dest="worker",
        help="Run as the worker process (spawned by the host, stdio protocol)",
    )
    parser.add_argument(
        "--log-dir", default=None,
        help="Also write host logs to this directory (default: stderr only)",
    )
    sub = parser.add_subparsers(dest="command")

    # ── Call ──────────────────────────────────────────────
    p_call = sub.add_parser("call", help="Invoke one engine operation in a fresh worker")
    p_call.add_argument("tool", help="Operation name")
    p_call.add_argument(
        "--args", dest="arguments", default=None, metavar="JSON",
        help="Operation parameters as a JSON object",
    )
    p_call.add_argument(
        "--workspace", default=None, metavar="PATH",
        help="Load this workspace before the call",
    )
    p_call.add_argument(
        "--timeout", type=float, default=None,
        help="Per-call timeout in seconds",
    )
    p_call.set_defaults(func=_lazy_call)

    # ── Ping ──────────────────────────────────────────────
    p_ping = sub.add_parser("ping", help="Spawn a worker and check it answers")
    p_ping.add_argument("--timeout", type=float, default=5.0, help="Ping timeout in seconds")
    p_ping.set_defaults(func=_lazy_ping)

    # ── Status ────────────────────────────────────────────
    p_status = sub.add_parser("status", help="Show worker status and engine health")
    p_status.add_argument(
        "--workspace", default=None, metavar="PATH",
        help="Load this workspace before reporting",
    )
    p_status.set_defaults(func=_lazy_status)

    return parser


def cli_main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.worker:
        # Worker mode reads only its environment; no .env, no host logging.
        from enginehost.supervisor.runner import run_worker

        sys.exit(run_worker())

    from dotenv import load_dotenv

    load_dotenv()

    from enginehost.config.models import ENV_LOG_LEVEL
    from enginehost.logging_config import setup_logging

    setup_logging(
        level=os.environ.get(ENV_LOG_LEVEL, "INFO"),
        log_dir=Path(args.log_dir) if args.log_dir else None,
    )

    if hasattr(args, "func"):
        args.func(args)
    else:
        parser.print_help()


# ── Lazy import wrappers ──────────────────────────────────


def _lazy_call(args: argparse.Namespace) -> None:
    from enginehost.cli.commands.tool import cmd_call

    cmd_call(args)


def _lazy_ping(args: argparse.Namespace) -> None:
    from enginehost.cli.commands.tool import cmd_ping

    cmd_ping(args)


def _lazy_status(args: argparse.Namespace) -> None:
    from enginehost.cli.commands.tool import cmd_status

    cmd_status(args)
