"""Observability package initialization."""

from .metrics import (
    record_connection_opened,
    record_connection_closed,
    record_reconnect_scheduled,
    record_frame_received,
    record_protocol_error,
    record_operation_completed,
    record_poll_failure,
)

__all__ = [
    'record_connection_opened',
    'record_connection_closed',
    'record_reconnect_scheduled',
    'record_frame_received',
    'record_protocol_error',
    'record_operation_completed',
    'record_poll_failure',
]
