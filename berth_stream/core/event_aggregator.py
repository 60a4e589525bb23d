"""
Event Aggregator - Latest-wins projection of a progress stream.

Reduces an interleaved stream of compose progress events into a stable
snapshot:

    [+] Running 2/5
     ✔ web Started 1.2s
     ✔ Container stack-web-1 Healthy
     ✔ Network stack_default Created 0.1s
    <last 10 free-text messages>

Entities keep their first-seen position; a re-report only replaces their
state.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Optional, Union

from pydantic import ValidationError

from .frames import EntityProgress, OverallStatus, StreamMessage, FREE_TEXT_KINDS

logger = logging.getLogger(__name__)

__all__ = ["EventAggregator"]


class EventAggregator:
    """
    Aggregated view of one operation's progress stream.

    Must be reset() whenever the owning stream restarts.
    """

    __slots__ = ('services', 'containers', 'networks', 'overall_status', 'messages')

    def __init__(self, free_text_limit: int = 10):
        self.services: dict[str, EntityProgress] = {}
        self.containers: dict[str, EntityProgress] = {}
        self.networks: dict[str, EntityProgress] = {}
        self.overall_status: Optional[OverallStatus] = None
        self.messages: deque[str] = deque(maxlen=free_text_limit)

    def process_event(self, event: Union[StreamMessage, dict[str, Any]]) -> bool:
        """
        Fold one event into the view.

        Args:
            event: StreamMessage or raw frame dict

        Returns:
            False if a raw dict failed validation and was ignored
        """
        if not isinstance(event, StreamMessage):
            try:
                event = StreamMessage.model_validate(event)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid progress event: {e.error_count()} error(s)")
                return False

        kind = event.type
        if kind == "status":
            if event.status is not None:
                self.overall_status = event.status
        elif kind == "service":
            if event.service is not None:
                self.services[event.service.name] = event.service
        elif kind == "container":
            if event.container is not None:
                self.containers[event.container.name] = event.container
        elif kind == "network":
            if event.network is not None:
                self.networks[event.network.name] = event.network
        elif kind in FREE_TEXT_KINDS:
            if event.message:
                self.messages.append(event.message)

        return True

    def get_display(self) -> list[str]:
        """Render the view as ordered lines."""
        lines: list[str] = []

        if self.overall_status is not None:
            lines.append(
                f"[+] Running {self.overall_status.current}/{self.overall_status.total}"
            )

        for service in self.services.values():
            line = f" ✔ {service.name} {service.action}"
            if service.progress:
                line += f" {service.progress}"
            if service.duration:
                line += f" {service.duration}"
            lines.append(line)

        for label, entities in (("Container", self.containers), ("Network", self.networks)):
            for entity in entities.values():
                line = f" ✔ {label} {entity.name} {entity.action}"
                if entity.duration:
                    line += f" {entity.duration}"
                lines.append(line)

        lines.extend(self.messages)
        return lines

    def display_text(self) -> str:
        return "\n".join(self.get_display())

    def reset(self) -> None:
        """Clear all state."""
        self.services.clear()
        self.containers.clear()
        self.networks.clear()
        self.overall_status = None
        self.messages.clear()
