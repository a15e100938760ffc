"""
Host-side channel to one worker process: request serialization, response
correlation, timeouts and cooperative shutdown over the worker's stdio.
"""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any

from enginehost.exceptions import (
    MalformedResponseError,
    ProxyDisposedError,
    RequestTimeoutError,
    TransportClosedError,
    WorkerNotRunningError,
    WorkerRemoteError,
)
from enginehost.supervisor.ipc import (
    METHOD_INVOKE_TOOL,
    METHOD_PING,
    METHOD_SHUTDOWN,
    IPCRequest,
    IPCResponse,
)
from enginehost.supervisor.process_handle import WorkerProcess

logger = logging.getLogger(__name__)


@dataclass
class PendingCall:
    """The single outstanding request on a channel."""
    request_id: int
    method: str
    future: asyncio.Future[IPCResponse]
    deadline: float


class WorkerProxy:
    """
    Proxy for tool calls into one worker process.

    Requests are serialized through a binary request lock: exactly one
    call is on the wire at a time.  A background reader task is the sole
    consumer of the worker's stdout and resolves the pending call with
    the response whose id matches it.
    """

    def __init__(self, worker: WorkerProcess):
        self.worker = worker
        self._request_lock = asyncio.Lock()
        self._pending: PendingCall | None = None
        self._ids = itertools.count(1)
        self._closed_error: Exception | None = None
        self._disposed = False
        self._reader_task = asyncio.create_task(
            self._read_responses(), name=f"worker-reader-{worker.pid}",
        )

    @property
    def is_alive(self) -> bool:
        """Whether the worker process is still running."""
        return self.worker.is_running()

    @property
    def pid(self) -> int | None:
        return self.worker.pid

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    @property
    def is_input_closed(self) -> bool:
        """Whether stdin was closed (shutdown started); no more requests fit."""
        return self.worker.process is None or self.worker.stdin.is_closing()

    @property
    def is_transport_closed(self) -> bool:
        """Whether the response reader has stopped (EOF or a bad line)."""
        return self._closed_error is not None or self._reader_task.done()

    # ── Public API ────────────────────────────────────────────────

    async def invoke(
        self,
        tool: str,
        arguments: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> Any:
        """
        Invoke a tool on the worker and return its result.

        Args:
            tool: Operation name registered on the worker's engine
            arguments: Parameter bag passed to the operation
            timeout: Timeout in seconds

        Returns:
            The decoded ``result`` payload

        Raises:
            WorkerNotRunningError: If the process has already exited
            RequestTimeoutError: If no response arrived within *timeout*
            WorkerRemoteError: If the worker answered with an error object
            TransportClosedError: If the worker's output closed mid-call
            ProxyDisposedError: If the proxy is closed
        """
        response = await self.send_request(
            METHOD_INVOKE_TOOL,
            {"tool": tool, "arguments": arguments or {}},
            timeout=timeout,
        )
        if response.error is not None:
            raise WorkerRemoteError(response.error["code"], response.error["message"])
        return response.result

    async def ping(self, timeout: float = 5.0) -> bool:
        """
        Send ping to check if the worker is responsive.  Never raises.

        Returns:
            True if a timely pong was received, False otherwise
        """
        if self._disposed or not self.is_alive:
            return False
        try:
            response = await self.send_request(METHOD_PING, {}, timeout=timeout)
        except RequestTimeoutError:
            logger.warning("Ping timeout for worker PID %s", self.pid)
            return False
        except Exception as e:
            logger.debug("Ping failed for worker PID %s: %s", self.pid, e)
            return False
        if response.error is not None:
            logger.warning("Ping error for worker PID %s: %s", self.pid, response.error)
            return False
        return True

    async def request_shutdown(self, timeout: float = 5.0) -> Any:
        """Ask the worker to stop through the protocol ``shutdown`` method.

        Returns:
            The worker's acknowledgement payload
        """
        response = await self.send_request(METHOD_SHUTDOWN, {}, timeout=timeout)
        if response.error is not None:
            raise WorkerRemoteError(response.error["code"], response.error["message"])
        return response.result

    async def shutdown(self, timeout: float = 5.0) -> bool:
        """
        Close the worker's stdin (EOF) and wait for it to exit.

        Returns:
            True if the process exited within *timeout*
        """
        if self._disposed or not self.is_alive:
            return True

        stdin = self.worker.stdin
        if not stdin.is_closing():
            stdin.close()
        try:
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin already broken for worker PID %s", self.pid)

        return await self.worker.wait(timeout=timeout)

    async def send_request(
        self,
        method: str,
        params: dict[str, Any],
        timeout: float = 30.0,
    ) -> IPCResponse:
        """
        Send one request envelope and wait for its response.

        Returns:
            The raw response (may carry an ``error`` object)
        """
        self._check_usable()

        async with self._request_lock:
            self._check_usable()

            loop = asyncio.get_running_loop()
            request = IPCRequest(id=next(self._ids), method=method, params=params)
            pending = PendingCall(
                request_id=request.id,
                method=method,
                future=loop.create_future(),
                deadline=loop.time() + timeout,
            )
            self._pending = pending
            try:
                try:
                    stdin = self.worker.stdin
                    stdin.write((request.to_json() + "\n").encode("utf-8"))
                    await stdin.drain()
                except (BrokenPipeError, ConnectionResetError) as e:
                    raise TransportClosedError(f"Worker input closed: {e}") from e
                logger.debug("Worker request sent: %s (id=%s)", method, request.id)

                try:
                    async with asyncio.timeout_at(pending.deadline):
                        return await pending.future
                except TimeoutError:
                    logger.warning(
                        "Worker request timed out: %s (id=%s, %.1fs)",
                        method, request.id, timeout,
                    )
                    raise RequestTimeoutError(
                        f"Request '{method}' timed out after {timeout}s"
                    ) from None
            finally:
                # A late response for this id will find no slot and be dropped.
                self._pending = None

    async def close(self) -> None:
        """Dispose: fail any outstanding wait and stop the reader."""
        if self._disposed:
            return
        self._disposed = True

        pending = self._pending
        if pending is not None and not pending.future.done():
            pending.future.set_exception(ProxyDisposedError("Worker proxy disposed"))

        if not self._reader_task.done():
            self._reader_task.cancel()
        try:
            await self._reader_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Worker reader ended with error: %s", e)

    # ── Internals ─────────────────────────────────────────────────

    def _check_usable(self) -> None:
        if self._disposed:
            raise ProxyDisposedError("Worker proxy disposed")
        if not self.is_alive:
            raise WorkerNotRunningError("Worker process has exited")
        if self.is_input_closed:
            raise TransportClosedError("Worker input closed")
        if self.is_transport_closed:
            raise TransportClosedError(str(self._closed_error or "Worker connection closed"))

    async def _read_responses(self) -> None:
        """Read response lines until EOF, a bad line, or cancellation."""
        stdout = self.worker.stdout
        error: Exception | None = None
        try:
            while True:
                try:
                    line_bytes = await stdout.readline()
                except ValueError as e:
                    # StreamReader limit overrun
                    logger.error("Worker response exceeds buffer limit: %s", e)
                    error = MalformedResponseError(f"Malformed response: {e}")
                    break

                if not line_bytes:
                    logger.debug("Worker stdout closed (EOF)")
                    error = TransportClosedError("Worker connection closed")
                    break

                line = line_bytes.decode("utf-8", errors="replace").strip()
                if not line:
                    continue

                try:
                    response = IPCResponse.from_json(line)
                except (ValueError, TypeError) as e:
                    logger.error("Failed to parse worker response: %s (line=%.200s)", e, line)
                    error = MalformedResponseError(f"Malformed response from worker: {e}")
                    break

                self._dispatch(response)
        except asyncio.CancelledError:
            error = ProxyDisposedError("Worker proxy disposed")
            raise
        except OSError as e:
            logger.error("Reading worker output failed: %s", e)
            error = TransportClosedError(f"Worker connection failed: {e}")
        finally:
            self._closed_error = error
            pending = self._pending
            if pending is not None and not pending.future.done():
                pending.future.set_exception(
                    error or TransportClosedError("Worker connection closed")
                )

    def _dispatch(self, response: IPCResponse) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            logger.warning("Discarding stale worker response (id=%s): no call pending", response.id)
            return

        if response.id != pending.request_id:
            if response.id is None and response.error is not None:
                # The worker could not parse the line we sent.
                pending.future.set_result(response)
                return
            logger.warning(
                "Discarding stale worker response: expected id=%s got id=%s",
                pending.request_id, response.id,
            )
            return

        logger.debug("Worker response received: id=%s", response.id)
        pending.future.set_result(response)
