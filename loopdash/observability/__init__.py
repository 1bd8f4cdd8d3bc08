"""Observability helpers."""

from loopdash.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_broadcast,
    record_parse_failure,
    record_rotation,
    record_subscription,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_broadcast",
    "record_parse_failure",
    "record_rotation",
    "record_subscription",
]
