"""
Wire Frames - JSON message models for operation streams and terminals.

Operation stream frame (server → client, one per progress event):
{
    "type": "status|service|container|network|connection|complete|error|log",
    "timestamp": "2024-01-28T09:15:21Z",
    "status": {"current": 2, "total": 5},
    "service": {"name": "web", "action": "Started", "duration": "1.2s"},
    "message": "free text",   // also accepted as "data" or "error"
    "success": true,          // complete only
    "exit_code": 0            // complete only
}

Terminal frame (both directions, byte payloads base64-encoded):
{
    "type": "start|input|resize|close|output|success|error",
    "session_id": "...",
    "input": "base64", "output": "base64",
    "cols": 120, "rows": 40, "exit_code": 0, "error": "..."
}
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

__all__ = [
    "StreamMessage",
    "OverallStatus",
    "EntityProgress",
    "TerminalFrame",
    "TerminalFrameType",
    "TERMINAL_KINDS",
    "FREE_TEXT_KINDS",
    "encode_bytes",
    "decode_bytes",
    "utc_now",
]

StreamKind = Literal[
    "status", "service", "container", "network",
    "connection", "complete", "error", "log",
]

TerminalFrameType = Literal[
    "start", "input", "resize", "close", "output", "success", "error",
]

# Kinds that end an operation
TERMINAL_KINDS = frozenset({"complete"})

# Narrative kinds kept in the aggregator's free-text tail
FREE_TEXT_KINDS = frozenset({"connection", "complete", "error", "log"})


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


def encode_bytes(data: bytes) -> str:
    """Encode a terminal byte payload for JSON transport."""
    return base64.b64encode(data).decode('ascii')


def decode_bytes(payload: str) -> bytes:
    """
    Decode a base64 terminal payload.

    Raises:
        ValueError: If the payload is not valid base64
    """
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, TypeError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


class OverallStatus(BaseModel):
    """Overall progress counter of a compose run."""
    current: int
    total: int


class EntityProgress(BaseModel):
    """Latest reported state of one service, container or network."""
    model_config = ConfigDict(extra="ignore")

    name: str
    action: str
    progress: Optional[str] = None
    size: Optional[str] = None
    duration: Optional[str] = None


class StreamMessage(BaseModel):
    """One entry of an operation's append-only log."""
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    type: StreamKind
    timestamp: str = Field(default_factory=utc_now)
    status: Optional[OverallStatus] = None
    service: Optional[EntityProgress] = None
    container: Optional[EntityProgress] = None
    network: Optional[EntityProgress] = None
    message: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("message", "data", "error"),
    )
    success: Optional[bool] = None
    exit_code: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("exit_code", "exitCode"),
    )

    @property
    def is_terminal(self) -> bool:
        """True when this message ends its operation."""
        return self.type in TERMINAL_KINDS

    @classmethod
    def log(cls, message: str) -> StreamMessage:
        """Build a free-text ``log`` entry."""
        return cls(type="log", message=message)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict without empty fields."""
        return self.model_dump(exclude_none=True)


class TerminalFrame(BaseModel):
    """One terminal protocol frame."""
    model_config = ConfigDict(extra="ignore")

    type: TerminalFrameType
    session_id: Optional[str] = None
    stack_name: Optional[str] = None
    service: Optional[str] = None
    container: Optional[str] = None
    shell: Optional[str] = None
    cols: Optional[int] = Field(default=None, ge=1)
    rows: Optional[int] = Field(default=None, ge=1)
    input: Optional[str] = None
    output: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def start(
        cls,
        stack_name: str,
        service: str,
        cols: int,
        rows: int,
        container: Optional[str] = None,
        shell: Optional[str] = None,
    ) -> TerminalFrame:
        return cls(
            type="start",
            stack_name=stack_name,
            service=service,
            container=container,
            shell=shell,
            cols=cols,
            rows=rows,
        )

    @classmethod
    def input_bytes(cls, session_id: str, data: bytes) -> TerminalFrame:
        return cls(type="input", session_id=session_id, input=encode_bytes(data))

    @classmethod
    def resize(cls, session_id: str, cols: int, rows: int) -> TerminalFrame:
        return cls(type="resize", session_id=session_id, cols=cols, rows=rows)

    @classmethod
    def close(cls, session_id: str, exit_code: int = 0) -> TerminalFrame:
        return cls(type="close", session_id=session_id, exit_code=exit_code)

    def output_bytes(self) -> bytes:
        """Decoded ``output`` payload (empty when absent)."""
        return decode_bytes(self.output) if self.output else b""

    def to_wire(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict without empty fields."""
        return self.model_dump(exclude_none=True)
