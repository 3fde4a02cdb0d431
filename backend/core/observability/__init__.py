"""Minimal observability for logging and metrics.

Provides JSON logging and in-process metrics for the billing batch
without external dependencies.
"""
import uuid
from typing import Optional

from . import logging as logging_module
from . import metrics


# Global trace_id generator for worker/CLI contexts
def generate_trace_id() -> str:
    """Generate a new trace ID for a batch run."""
    return str(uuid.uuid4())


def bind_context(tenant_id: Optional[str], trace_id: Optional[str] = None) -> str:
    """Bind tenant/trace to the current thread's log context; returns trace ID."""
    if not trace_id:
        trace_id = generate_trace_id()
    logging_module.set_trace_id(trace_id)
    logging_module.set_tenant_id(tenant_id)
    return trace_id


def init_observability(enable_metrics: bool = True) -> None:
    """Initialize all observability components."""
    logging_module.init_logging()
    if enable_metrics:
        metrics.init_metrics()


__all__ = [
    "logging_module",
    "metrics",
    "generate_trace_id",
    "bind_context",
    "init_observability",
]
