"""
Wire protocol: newline-delimited UTF-8 JSON envelopes over worker stdio.
"""

# EngineHost - Isolated Analysis Worker Host
# Copyright (C) 2026 EngineHost Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

# ── Constants ──────────────────────────────────────────────────
IPC_BUFFER_LIMIT = 16 * 1024 * 1024  # 16MB; asyncio default is 64KB

METHOD_INVOKE_TOOL = "invoke_tool"
METHOD_PING = "ping"
METHOD_SHUTDOWN = "shutdown"


class ErrorCode(IntEnum):
    """JSON-RPC 2.0 reserved error codes used in response ``error`` objects."""
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class EnvelopeError(ValueError):
    """A line is valid JSON but not a well-formed envelope."""


# ── Protocol Types ──────────────────────────────────────────────────

@dataclass(frozen=True)
class IPCRequest:
    """Request from host to worker."""

    id: int | str | None
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        return json.dumps({
            "id": self.id,
            "method": self.method,
            "params": self.params
        }, default=str, ensure_ascii=False)

    @classmethod
    def from_json(cls, line: str) -> IPCRequest:
        """Deserialize from JSON line.

        Raises:
            json.JSONDecodeError: If *line* is not JSON.
            EnvelopeError: If the object lacks a method or has bad params.
        """
        data = json.loads(line)
        if not isinstance(data, dict):
            raise EnvelopeError("Request must be a JSON object")
        method = data.get("method")
        if not isinstance(method, str) or not method:
            raise EnvelopeError("Invalid Request: missing method")
        params = data.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise EnvelopeError("Invalid Request: params must be an object")
        return cls(id=data.get("id"), method=method, params=params)


@dataclass(frozen=True)
class IPCResponse:
    """Response from worker to host: either ``result`` or ``error``."""

    id: int | str | None
    result: Any = None
    error: dict[str, Any] | None = None

    @classmethod
    def success(cls, request_id: int | str | None, result: Any) -> IPCResponse:
        return cls(id=request_id, result=result)

    @classmethod
    def failure(
        cls,
        request_id: int | str | None,
        code: int,
        message: str,
    ) -> IPCResponse:
        return cls(id=request_id, error={"code": int(code), "message": message})

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_json(self) -> str:
        """Serialize to a single JSON line (no trailing newline)."""
        data: dict[str, Any] = {"id": self.id}
        if self.error is not None:
            data["error"] = self.error
        else:
            data["result"] = self.result
        return json.dumps(data, default=str, ensure_ascii=False)

    @classmethod
    def from_json(cls, line: str) -> IPCResponse:
        """Deserialize from JSON line.

        Raises:
            json.JSONDecodeError: If *line* is not JSON.
            EnvelopeError: If the object is not a response envelope.
        """
        data = json.loads(line)
        if not isinstance(data, dict) or "id" not in data:
            raise EnvelopeError("Response must be a JSON object with an id")
        error = data.get("error")
        if error is not None:
            if not isinstance(error, dict):
                raise EnvelopeError("Response error must be an object")
            error = {
                "code": int(error.get("code", ErrorCode.INTERNAL_ERROR)),
                "message": str(error.get("message", "Unknown error")),
            }
        elif "result" not in data:
            raise EnvelopeError("Response carries neither result nor error")
        return cls(id=data["id"], result=data.get("result"), error=error)
