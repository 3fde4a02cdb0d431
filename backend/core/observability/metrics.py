"""In-process metrics counters and histograms."""

import threading
import time
from collections import defaultdict
from typing import Any

from backend.core.config import settings

# Global metrics storage
_metrics = defaultdict(lambda: {"count": 0, "sum": 0.0, "values": [], "buckets": defaultdict(int)})
# Tenant runs may execute on parallel worker threads
_lock = threading.Lock()


def init_metrics() -> None:
    """Initialize metrics if enabled."""
    if not settings.enable_metrics:
        return


def _key(name: str, labels: dict[str, str] | None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def increment_counter(name: str, labels: dict[str, str] = None, value: float = 1.0) -> None:
    """Increment a counter metric."""
    if not settings.enable_metrics:
        return

    with _lock:
        _metrics[_key(name, labels)]["count"] += value


def record_histogram(name: str, value: float, labels: dict[str, str] = None) -> None:
    """Record a histogram measurement."""
    if not settings.enable_metrics:
        return

    with _lock:
        metrics = _metrics[_key(name, labels)]
        metrics["count"] += 1
        metrics["sum"] += value
        metrics["values"].append(value)

        if value < 10:
            metrics["buckets"]["<10"] += 1
        elif value < 100:
            metrics["buckets"]["10-100"] += 1
        elif value < 1000:
            metrics["buckets"]["100-1000"] += 1
        elif value < 10000:
            metrics["buckets"]["1000-10000"] += 1
        else:
            metrics["buckets"][">=10000"] += 1


def observe_duration(start_time: float, name: str, labels: dict[str, str] = None) -> None:
    """Observe a duration measurement."""
    duration_ms = (time.time() - start_time) * 1000
    record_histogram(name, duration_ms, labels)


def get_metrics() -> dict[str, Any]:
    """Get current metrics snapshot."""
    if not settings.enable_metrics:
        return {"note": "metrics disabled"}

    result = {}
    with _lock:
        for key, data in _metrics.items():
            metric_result = {"count": data["count"], "sum": data["sum"]}

            if data["values"]:
                values = data["values"]
                metric_result.update(
                    {
                        "min": min(values),
                        "max": max(values),
                        "avg": data["sum"] / len(values),
                        "buckets": dict(data["buckets"]),
                    }
                )

            result[key] = metric_result

    return result


def reset_metrics() -> None:
    """Reset all metrics (useful for testing)."""
    with _lock:
        _metrics.clear()


# Billing engine metrics
def increment_orders_materialized(n: float = 1.0) -> None:
    increment_counter("billing_orders_materialized_total", value=n)


def increment_charge_attempts(outcome: str) -> None:
    """Count one processor call by classified outcome."""
    increment_counter("billing_charge_attempts_total", labels={"outcome": outcome})


def increment_retry_skipped(reason: str) -> None:
    increment_counter("billing_retry_skipped_total", labels={"reason": reason})


def increment_payments_expired(n: float = 1.0) -> None:
    increment_counter("billing_payments_expired_total", value=n)


def increment_status_transition(from_status: str, to_status: str) -> None:
    increment_counter(
        "billing_status_transitions_total", labels={"from": from_status, "to": to_status}
    )


def observe_run_duration(start_time: float) -> None:
    observe_duration(start_time, "billing_run_duration_ms")


# Tenant policy metrics
def increment_tenant_validation_failure(reason: str) -> None:
    increment_counter("tenant_validation_failures_total", labels={"reason": reason})
