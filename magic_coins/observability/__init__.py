"""
Observability module - Logging, Metrics, and Tracing.
"""

from magic_coins.observability.logging import get_logger, log_context, setup_logging
from magic_coins.observability.metrics import metrics
from magic_coins.observability.tracing import instrument_sqlalchemy, setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "instrument_sqlalchemy",
    "setup_tracing",
]
