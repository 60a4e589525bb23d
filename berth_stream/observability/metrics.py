"""
Observability Module - Prometheus Metrics.

Client-side metrics for the streaming core.

Metrics Collected:
- Connection metrics (opened, active, reconnects, frames, protocol errors)
- Operation metrics (tracked, completed, poll failures)
- Terminal metrics (sessions active, tabs open, negotiations)
- Storage metrics (save/load errors)

Author: Backend Lead Developer
"""

from prometheus_client import Counter, Gauge, Info

# Connection Metrics
connections_opened_total = Counter(
    'berth_connections_opened_total',
    'Total number of WebSocket connections opened'
)

connections_active = Gauge(
    'berth_connections_active',
    'Number of currently open WebSocket connections'
)

reconnects_scheduled_total = Counter(
    'berth_reconnects_scheduled_total',
    'Total number of reconnect attempts scheduled'
)

frames_received_total = Counter(
    'berth_frames_received_total',
    'Total number of inbound frames decoded',
    ['frame_type']
)

protocol_errors_total = Counter(
    'berth_protocol_errors_total',
    'Total number of inbound messages dropped as protocol errors'
)

# Operation Metrics
operations_tracked = Gauge(
    'berth_operations_tracked',
    'Number of operations held by the registry'
)

operations_completed_total = Counter(
    'berth_operations_completed_total',
    'Total number of operations that reached completion',
    ['reason']
)

poll_failures_total = Counter(
    'berth_poll_failures_total',
    'Total number of failed running-operations polls'
)

# Terminal Metrics
terminal_sessions_active = Gauge(
    'berth_terminal_sessions_active',
    'Number of terminal sessions in connecting or connected state'
)

terminal_negotiations_total = Counter(
    'berth_terminal_negotiations_total',
    'Total number of terminal negotiation requests',
    ['outcome']
)

terminal_tabs_open = Gauge(
    'berth_terminal_tabs_open',
    'Number of open terminal tabs'
)

# Storage Metrics
storage_errors_total = Counter(
    'berth_storage_errors_total',
    'Total number of state store failures',
    ['operation']
)

# Client Info
client_info = Info(
    'berth_stream',
    'Streaming core information'
)

client_info.info({
    'version': '1.0.0',
})


# Helper Functions

def record_connection_opened():
    """Record a WebSocket connection reaching the open state."""
    connections_opened_total.inc()
    connections_active.inc()


def record_connection_closed():
    """Record an open WebSocket connection going away."""
    connections_active.dec()


def record_reconnect_scheduled():
    reconnects_scheduled_total.inc()


def record_frame_received(frame_type: str):
    frames_received_total.labels(frame_type=frame_type).inc()


def record_protocol_error():
    protocol_errors_total.inc()


def set_operations_tracked(count: int):
    operations_tracked.set(count)


def record_operation_completed(reason: str = 'complete'):
    """Record an operation completing (reason: complete | poll)."""
    operations_completed_total.labels(reason=reason).inc()


def record_poll_failure():
    poll_failures_total.inc()


def record_terminal_session_started():
    terminal_sessions_active.inc()


def record_terminal_session_ended():
    terminal_sessions_active.dec()


def record_terminal_negotiation(success: bool = True):
    terminal_negotiations_total.labels(outcome='success' if success else 'failure').inc()


def set_terminal_tabs_open(count: int):
    terminal_tabs_open.set(count)


def record_storage_error(operation: str):
    """Record a state store failure (operation: load | save)."""
    storage_errors_total.labels(operation=operation).inc()


__all__ = [
    # Metrics
    'connections_opened_total',
    'connections_active',
    'frames_received_total',
    'operations_tracked',
    'terminal_sessions_active',
    'terminal_tabs_open',

    # Helper Functions
    'record_connection_opened',
    'record_connection_closed',
    'record_reconnect_scheduled',
    'record_frame_received',
    'record_protocol_error',
    'set_operations_tracked',
    'record_operation_completed',
    'record_poll_failure',
    'record_terminal_session_started',
    'record_terminal_session_ended',
    'record_terminal_negotiation',
    'set_terminal_tabs_open',
    'record_storage_error',
]
