"""
Observability module - Logging, Metrics, and Tracing.
"""

from entitlement_relay.observability.logging import get_logger, log_context, setup_logging
from entitlement_relay.observability.metrics import metrics
from entitlement_relay.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
