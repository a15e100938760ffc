# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0
"""
Worker process side of the stdio protocol.

Usage (spawned by the host, never by hand):
    python -m enginehost --worker

Reads one request envelope per line from stdin, dispatches it to the
process-wide analysis engine and writes one response per line to stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import time
from enum import Enum
from typing import Any, BinaryIO

from enginehost.engine import AnalysisEngine
from enginehost.exceptions import ConfigError, ToolNotFoundError
from enginehost.logging_config import clear_request_id, set_request_id
from enginehost.supervisor.ipc import (
    IPC_BUFFER_LIMIT,
    METHOD_INVOKE_TOOL,
    METHOD_PING,
    METHOD_SHUTDOWN,
    EnvelopeError,
    ErrorCode,
    IPCRequest,
    IPCResponse,
)
from enginehost.time_utils import now_iso

logger = logging.getLogger(__name__)

_SHUTDOWN_GRACE_S = 0.1


class LoopState(Enum):
    STARTING = "starting"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


# ── WorkerLoop ──────────────────────────────────────────────────

class WorkerLoop:
    """
    Request loop for the analysis engine inside the worker process.

    Strictly sequential: a request is fully handled (engine call and
    response write) before the next line is read.  Operation failures are
    always converted into error responses; only EOF or a stop request
    ends the loop.
    """

    def __init__(
        self,
        engine: AnalysisEngine,
        reader: asyncio.StreamReader,
        writer: BinaryIO,
        *,
        operation_timeout: float | None = None,
        shutdown_grace: float = _SHUTDOWN_GRACE_S,
    ):
        self.engine = engine
        self.reader = reader
        self.writer = writer
        self.operation_timeout = operation_timeout
        self.shutdown_grace = shutdown_grace

        self.state = LoopState.STARTING
        self.requests_handled = 0
        self._stop_requested = False
        self._read_task: asyncio.Task | None = None

    async def run(self) -> None:
        """Serve until EOF or a stop request."""
        self.state = LoopState.SERVING
        logger.info("Worker loop serving (%d operations)", len(self.engine.operation_names()))

        try:
            while not self._stop_requested:
                line_bytes = await self._read_line()
                if line_bytes is None:
                    break
                if not line_bytes:
                    logger.info("Received EOF on stdin, worker shutting down")
                    break

                line = line_bytes.decode("utf-8", errors="replace").strip()
                if not line:
                    continue

                response = await self.handle_line(line)
                self._write(response)
        finally:
            self.state = LoopState.DRAINING
            try:
                self.writer.flush()
            except (BrokenPipeError, ValueError):
                logger.debug("Output already closed while draining")
            self.state = LoopState.STOPPED
            logger.info("Worker loop stopped after %d requests", self.requests_handled)

    async def _read_line(self) -> bytes | None:
        """Read one line; None when the read was cancelled by a stop request."""
        self._read_task = asyncio.ensure_future(self._next_line())
        try:
            return await self._read_task
        except asyncio.CancelledError:
            if self._stop_requested:
                return None
            raise
        finally:
            self._read_task = None

    async def _next_line(self) -> bytes:
        """Next newline-terminated line, or the unterminated tail at EOF."""
        try:
            return await self.reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            return e.partial
        except asyncio.LimitOverrunError as e:
            logger.error("Request line exceeds buffer limit: %s", e)
            await self._discard_line(e.consumed)
            # One answer per oversized line, however many chunks it took.
            self._write(IPCResponse.failure(
                None, ErrorCode.PARSE_ERROR, "Parse error: request line exceeds buffer limit",
            ))
            return b"\n"

    async def _discard_line(self, consumed: int) -> None:
        """Drop buffered input up to and including the next newline (or EOF)."""
        while True:
            try:
                await self.reader.readexactly(consumed)
                await self.reader.readuntil(b"\n")
                return
            except asyncio.LimitOverrunError as e:
                consumed = e.consumed
            except asyncio.IncompleteReadError:
                return

    def request_stop(self) -> None:
        """Cooperatively end the loop (shutdown method or SIGTERM)."""
        if self._stop_requested:
            return
        self._stop_requested = True
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    def _write(self, response: IPCResponse) -> None:
        self.writer.write((response.to_json() + "\n").encode("utf-8"))
        self.writer.flush()

    # ── Dispatch ─────────────────────────────────────────────────

    async def handle_line(self, line: str) -> IPCResponse:
        """Turn one request line into exactly one response."""
        try:
            request = IPCRequest.from_json(line)
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in request: %s", e)
            return IPCResponse.failure(None, ErrorCode.PARSE_ERROR, f"Parse error: {e}")
        except EnvelopeError as e:
            logger.error("Invalid request envelope: %s", e)
            return IPCResponse.failure(_peek_id(line), ErrorCode.INVALID_REQUEST, str(e))

        logger.debug("Worker request: %s (id=%s)", request.method, request.id)
        set_request_id(str(request.id))
        try:
            return await self.handle_request(request)
        except Exception as e:
            logger.exception("Error handling request %s", request.method)
            return IPCResponse.failure(
                request.id, ErrorCode.INTERNAL_ERROR, f"Internal error: {e}",
            )
        finally:
            self.requests_handled += 1
            clear_request_id()

    async def handle_request(self, request: IPCRequest) -> IPCResponse:
        if request.method == METHOD_INVOKE_TOOL:
            return await self._handle_invoke_tool(request)
        if request.method == METHOD_PING:
            return IPCResponse.success(request.id, {"pong": True, "timestamp": now_iso()})
        if request.method == METHOD_SHUTDOWN:
            return self._handle_shutdown(request)
        return IPCResponse.failure(
            request.id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {request.method}",
        )

    def _handle_shutdown(self, request: IPCRequest) -> IPCResponse:
        logger.info("Shutdown requested by host")
        # The acknowledgement is written before the stop takes effect.
        asyncio.get_running_loop().call_later(self.shutdown_grace, self.request_stop)
        return IPCResponse.success(request.id, {"message": "Shutting down"})

    async def _handle_invoke_tool(self, request: IPCRequest) -> IPCResponse:
        tool = request.params.get("tool")
        arguments = request.params.get("arguments")
        if arguments is None:
            arguments = {}

        if not isinstance(tool, str) or not tool:
            return IPCResponse.failure(
                request.id, ErrorCode.INVALID_PARAMS, "Invalid params: missing tool name",
            )
        if not isinstance(arguments, dict):
            return IPCResponse.failure(
                request.id, ErrorCode.INVALID_PARAMS, "Invalid params: arguments must be an object",
            )

        started = time.perf_counter()
        try:
            result = await self._call_engine(tool, arguments)
        except ToolNotFoundError as e:
            logger.warning("%s", e)
            return IPCResponse.failure(request.id, ErrorCode.METHOD_NOT_FOUND, str(e))
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.error(
                "Tool '%s' failed after %.0fms: %s", tool, elapsed_ms, e, exc_info=True,
            )
            return IPCResponse.failure(request.id, ErrorCode.INTERNAL_ERROR, f"Tool error: {e}")

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug("Tool '%s' completed in %.0fms", tool, elapsed_ms)
        response = IPCResponse.success(request.id, result)
        try:
            response.to_json()
        except (TypeError, ValueError) as e:
            return IPCResponse.failure(
                request.id, ErrorCode.INTERNAL_ERROR, f"Tool error: result not serializable: {e}",
            )
        return response

    async def _call_engine(self, tool: str, arguments: dict[str, Any]) -> Any:
        if self.operation_timeout is None:
            return await self.engine.invoke(tool, arguments)
        deadline = asyncio.timeout(self.operation_timeout)
        try:
            async with deadline:
                return await self.engine.invoke(tool, arguments)
        except TimeoutError:
            if not deadline.expired():
                raise
            raise TimeoutError(
                f"operation '{tool}' timed out after {self.operation_timeout:g}s"
            ) from None


def _peek_id(line: str) -> Any:
    """Best-effort id extraction from a valid-JSON but invalid request."""
    try:
        data = json.loads(line)
    except ValueError:
        return None
    return data.get("id") if isinstance(data, dict) else None


# ── Entry point ─────────────────────────────────────────────────

async def _connect_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=IPC_BUFFER_LIMIT)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
    return reader


async def serve_stdio(engine: AnalysisEngine, operation_timeout: float | None = None) -> None:
    """Run a :class:`WorkerLoop` on this process's stdin/stdout."""
    protocol_out = sys.stdout.buffer
    # Stray prints from engine code must not reach the protocol stream.
    sys.stdout = sys.stderr

    reader = await _connect_stdin()
    worker_loop = WorkerLoop(engine, reader, protocol_out, operation_timeout=operation_timeout)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, worker_loop.request_stop)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handlers unavailable for %s", sig)

    await worker_loop.run()


def run_worker() -> int:
    """Worker-mode main: configure logging, build the engine, serve."""
    from enginehost.config import load_worker_env
    from enginehost.engine import EngineSettings, create_engine
    from enginehost.logging_config import setup_worker_logging

    config = load_worker_env()
    setup_worker_logging(config.log_level)
    logger.info("Worker process starting...")

    try:
        engine = create_engine(config.engine, EngineSettings.from_worker_env(config))
    except ConfigError as e:
        logger.error("Worker cannot start: %s", e)
        return 1
    asyncio.run(serve_stdio(engine, operation_timeout=config.timeout_seconds))

    logger.info("Worker process exiting")
    return 0
