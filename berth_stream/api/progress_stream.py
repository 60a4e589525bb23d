"""
Progress Stream - Request-based operation progress (server-sent events).

Alternate transport for flows that do not hold a persistent connection: one
long GET whose body is a sequence of

    data: {"type": "service", "service": {...}, ...}\n\n

frames with the same payload as the operation stream. The whole request is
bounded by an absolute timeout; on expiry it is aborted and reported as an
error rather than left pending.

Outcome:
- body ends normally → completed
- HTTP error status, transport error or timeout → error
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from ..core.event_aggregator import EventAggregator
from ..core.frames import StreamMessage

logger = logging.getLogger(__name__)

__all__ = ["stream_progress", "ProgressResult", "DATA_PREFIX"]

DATA_PREFIX = "data: "


@dataclass
class ProgressResult:
    """
    Final outcome of one progress stream.

    Attributes:
        status: "completed" or "error"
        display: Aggregated view at the end of the stream
        events: Number of lines fed to the aggregator
        error: Failure reason when status is "error"
    """
    status: str
    display: list[str]
    events: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


async def stream_progress(
    client: httpx.AsyncClient,
    url: str,
    aggregator: EventAggregator,
    timeout: float = 600.0,
    on_update: Optional[Callable[[EventAggregator], None]] = None,
) -> ProgressResult:
    """
    Consume one progress stream into ``aggregator``.

    The aggregator is reset first so that a restarted stream never mixes
    with a previous run.

    Args:
        client: HTTP client to issue the GET with
        url: Progress stream URL (absolute or relative to the client base)
        aggregator: View to fold events into
        timeout: Absolute deadline for the whole request in seconds
        on_update: Called after each chunk of events was processed
    """
    aggregator.reset()
    events = 0

    try:
        async with asyncio.timeout(timeout):
            async with client.stream(
                "GET",
                url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=httpx.Timeout(timeout, connect=min(timeout, 30.0)),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise httpx.HTTPStatusError(
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                        request=response.request,
                        response=response,
                    )

                async for line in response.aiter_lines():
                    if not line.startswith(DATA_PREFIX):
                        continue
                    _process_line(aggregator, line)
                    events += 1
                    if on_update is not None:
                        on_update(aggregator)

    except TimeoutError:
        logger.warning(f"Progress stream {url} timed out after {timeout}s")
        return ProgressResult(
            status="error",
            display=aggregator.get_display(),
            events=events,
            error=f"Timed out after {timeout:g}s",
        )
    except httpx.HTTPError as e:
        logger.error(f"Progress stream {url} failed: {e}")
        return ProgressResult(
            status="error",
            display=aggregator.get_display(),
            events=events,
            error=f"Connection failed: {e}",
        )

    logger.info(f"Progress stream {url} completed ({events} events)")
    return ProgressResult(status="completed", display=aggregator.get_display(), events=events)


def _process_line(aggregator: EventAggregator, line: str) -> None:
    """Feed one ``data:`` line; anything unparsable becomes a log entry."""
    payload = line[len(DATA_PREFIX):]
    try:
        event = json.loads(payload)
        if not isinstance(event, dict) or not aggregator.process_event(event):
            raise ValueError("not a progress event")
    except ValueError as e:
        logger.debug(f"Unparsable progress line ({e}): {line!r}")
        aggregator.process_event(StreamMessage.log(line))
