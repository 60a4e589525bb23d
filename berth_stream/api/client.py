"""
REST Client - Running-operations poll and terminal negotiation.

Endpoints:
- GET /api/v1/running-operations
    → [{operation_id, server_id, stack_name, command, start_time, ...}]
      (a {"data": [...]} envelope is accepted too)
- GET /api/servers/{server_id}/stacks/{stack}/terminal/{service}?shell=...
    → {websocket_url, access_token, stack_name, service, server_name, shell}

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

__all__ = [
    "BerthClient",
    "RunningOperationInfo",
    "TerminalConnectionInfo",
    "ApiError",
    "PollError",
    "NegotiationError",
]


class ApiError(Exception):
    """Base class for REST failures."""
    pass


class PollError(ApiError):
    """Raised when the running-operations list cannot be fetched or parsed."""
    pass


class NegotiationError(ApiError):
    """Raised when terminal connection parameters cannot be obtained."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so that all timestamps compare."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RunningOperationInfo(BaseModel):
    """One entry of the server's running-operations list."""
    model_config = ConfigDict(extra="ignore")

    operation_id: str
    server_id: int
    stack_name: str
    command: str = ""
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_message_at: Optional[datetime] = None
    is_incomplete: bool = True
    message_count: int = 0
    summary: Optional[str] = None

    @field_validator("start_time", "last_message_at")
    @classmethod
    def _normalize_tz(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class TerminalConnectionInfo(BaseModel):
    """Connection parameters for one terminal session."""
    model_config = ConfigDict(extra="ignore")

    websocket_url: str
    access_token: str
    stack_name: str
    service: str
    server_name: str = ""
    shell: str = "/bin/sh"

    @property
    def subprotocol(self) -> str:
        """WebSocket subprotocol carrying the access token."""
        return f"bearer.{self.access_token}"


class BerthClient:
    """
    Async REST client on top of httpx.AsyncClient.

    Usage:
        async with BerthClient("https://berth.example") as client:
            ops = await client.list_running_operations()
    """

    __slots__ = ('http', 'running_operations_path', 'terminal_negotiation_path', '_owns_http')

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http: Optional[httpx.AsyncClient] = None,
        running_operations_path: str = "/api/v1/running-operations",
        terminal_negotiation_path: str = "/api/servers/{server_id}/stacks/{stack_name}/terminal/{service}",
    ):
        """
        Initialize REST client.

        Args:
            base_url: Server root, e.g. https://berth.example
            timeout: Per-request timeout in seconds
            headers: Extra headers (auth) sent with every request
            transport: Custom httpx transport (tests use httpx.MockTransport)
            http: Pre-built AsyncClient to use instead of creating one
        """
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Accept": "application/json", **(headers or {})},
            transport=transport,
        )
        self.running_operations_path = running_operations_path
        self.terminal_negotiation_path = terminal_negotiation_path

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> BerthClient:
        """Build a client from StreamConfig."""
        if config.api_token:
            kwargs.setdefault("headers", {"Authorization": f"Bearer {config.api_token}"})
        return cls(
            config.base_url,
            timeout=config.request_timeout,
            running_operations_path=config.running_operations_path,
            terminal_negotiation_path=config.terminal_negotiation_path,
            **kwargs,
        )

    async def __aenter__(self) -> BerthClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def list_running_operations(self) -> list[RunningOperationInfo]:
        """
        Fetch the server's authoritative list of running operations.

        Raises:
            PollError: Transport failure, non-2xx status or malformed body
        """
        try:
            response = await self.http.get(self.running_operations_path)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise PollError(f"Running operations poll returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise PollError(f"Running operations poll failed: {e}") from e
        except ValueError as e:
            raise PollError(f"Running operations body is not JSON: {e}") from e

        if isinstance(body, dict) and "data" in body:
            body = body["data"]
        if body is None:
            body = []
        if not isinstance(body, list):
            raise PollError(f"Expected a JSON array, got {type(body).__name__}")

        try:
            return [RunningOperationInfo.model_validate(item) for item in body]
        except ValidationError as e:
            raise PollError(f"Malformed running operation: {e}") from e

    async def negotiate_terminal(
        self,
        server_id: int,
        stack_name: str,
        service: str,
        shell: str = "/bin/sh",
        container: Optional[str] = None,
    ) -> TerminalConnectionInfo:
        """
        Obtain socket URL, short-lived token and resolved shell for a terminal.

        Raises:
            NegotiationError: Transport failure, non-2xx status or malformed body
        """
        path = self.terminal_negotiation_path.format(
            server_id=server_id,
            stack_name=quote(stack_name, safe=""),
            service=quote(service, safe=""),
        )
        params = {"shell": shell}
        if container:
            params["container"] = container

        try:
            response = await self.http.get(path, params=params)
        except httpx.HTTPError as e:
            raise NegotiationError(f"Terminal negotiation failed: {e}") from e

        if response.is_error:
            raise NegotiationError(
                f"Terminal negotiation returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            info = TerminalConnectionInfo.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise NegotiationError(f"Malformed terminal connection info: {e}") from e

        logger.debug(f"Negotiated terminal for {stack_name}/{service} on server {server_id}")
        return info
