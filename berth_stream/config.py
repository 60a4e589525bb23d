"""
Berth Stream Configuration.

Environment-driven configuration using Pydantic Settings.
Every value can be overridden with a ``BERTH_``-prefixed environment variable.

Security Note:
- Never commit .env files to version control
- Terminal access tokens are short-lived and never stored here
- api_token should come from the environment, not a committed file

Author: Backend Lead Developer
"""

from pydantic_settings import BaseSettings
from typing import Optional
from urllib.parse import quote


class StreamConfig(BaseSettings):
    """
    Client-side configuration for the streaming core.

    Configuration Sources (priority order):
    1. Environment variables (BERTH_*)
    2. .env file
    3. Default values
    """

    # Endpoints
    base_url: str = "http://localhost:8080"
    ws_base_url: Optional[str] = None  # Derived from base_url when unset
    running_operations_path: str = "/api/v1/running-operations"
    operation_stream_path: str = (
        "/ws/ui/servers/{server_id}/stacks/{stack_name}/operations/{operation_id}"
    )
    terminal_negotiation_path: str = (
        "/api/servers/{server_id}/stacks/{stack_name}/terminal/{service}"
    )
    request_timeout: float = 30.0  # seconds
    api_token: Optional[str] = None  # Sent as "Authorization: Bearer <token>"

    # Connection Manager
    reconnect_interval: float = 3.0  # seconds, fixed (no backoff)

    # Operation Registry
    poll_interval: float = 5.0  # seconds
    notify_debounce: float = 0.3  # seconds
    retention_cap: int = 50  # completed operations kept in storage

    # Event Aggregator
    free_text_limit: int = 10

    # Terminal sessions
    max_terminals: int = 10
    default_shell: str = "/bin/sh"
    default_cols: int = 80
    default_rows: int = 24
    resize_settle: float = 0.1  # seconds
    initial_resize_delay: float = 0.05  # seconds
    handshake_timeout: float = 10.0  # seconds, socket open until success frame
    default_panel_height: int = 400
    min_panel_height: int = 200
    max_panel_height: int = 1200

    # Request-based progress stream
    progress_timeout: float = 600.0  # seconds, absolute

    # Storage
    storage_backend: str = "file"  # file | redis | memory
    state_dir: str = "~/.local/state/berth"
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "berth"

    # Observability
    log_level: str = "INFO"

    class Config:
        env_prefix = "berth_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def resolved_ws_base_url(self) -> str:
        """WebSocket base URL, derived from ``base_url`` when not set explicitly."""
        if self.ws_base_url:
            return self.ws_base_url.rstrip('/')
        base = self.base_url.rstrip('/')
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):]
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):]
        return base

    def operation_stream_url(self, server_id: int, stack_name: str, operation_id: str) -> str:
        """Build the dedicated stream URL for one operation."""
        path = self.operation_stream_path.format(
            server_id=server_id,
            stack_name=quote(stack_name, safe=""),
            operation_id=quote(operation_id, safe=""),
        )
        return f"{self.resolved_ws_base_url()}{path}"
