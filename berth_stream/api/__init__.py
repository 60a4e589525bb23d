"""REST and request-based streaming clients."""

from .client import (
    BerthClient,
    RunningOperationInfo,
    TerminalConnectionInfo,
    ApiError,
    PollError,
    NegotiationError,
)
from .progress_stream import stream_progress, ProgressResult

__all__ = [
    "BerthClient",
    "RunningOperationInfo",
    "TerminalConnectionInfo",
    "ApiError",
    "PollError",
    "NegotiationError",
    "stream_progress",
    "ProgressResult",
]
