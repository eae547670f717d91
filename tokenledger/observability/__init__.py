"""
Observability module - Logging, Metrics, and Tracing.
"""

from tokenledger.observability.logging import get_logger, log_context, setup_logging
from tokenledger.observability.metrics import metrics
from tokenledger.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
