"""
Scheduled Report Metrics

Prometheus metrics for the due-report scheduler and report runs.
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Scheduler Metrics
# ============================================================================

report_polls_total = Counter(
    'scheduled_report_polls_total',
    'Due-report poll cycles',
    ['outcome']  # completed, skipped, failed
)

report_dispatches_total = Counter(
    'scheduled_report_dispatches_total',
    'Report runs dispatched by the scheduler',
    ['report_type']
)

report_runs_in_flight = Gauge(
    'scheduled_report_runs_in_flight',
    'Dispatched report runs that have not finished'
)

# ============================================================================
# Run Metrics
# ============================================================================

report_runs_total = Counter(
    'scheduled_report_runs_total',
    'Report runs by outcome',
    ['report_type', 'format', 'outcome']
)

report_run_duration_seconds = Histogram(
    'scheduled_report_run_duration_seconds',
    'Report run duration in seconds',
    ['report_type', 'format'],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0)
)

report_artifact_bytes = Histogram(
    'scheduled_report_artifact_bytes',
    'Rendered report artifact size in bytes',
    ['format'],
    buckets=(1_000, 10_000, 100_000, 500_000, 1_000_000, 5_000_000, 20_000_000)
)

report_deliveries_total = Counter(
    'scheduled_report_deliveries_total',
    'Report email deliveries by outcome',
    ['outcome']  # sent, failed
)

data_source_errors_total = Counter(
    'scheduled_report_data_source_errors_total',
    'Failed domain data source requests',
    ['source']
)


def record_run(report_type: str, report_format: str, outcome: str, duration: float):
    """Record a finished report run."""
    report_runs_total.labels(
        report_type=report_type,
        format=report_format,
        outcome=outcome
    ).inc()

    report_run_duration_seconds.labels(
        report_type=report_type,
        format=report_format
    ).observe(duration)


def record_delivery(success: bool):
    """Record a delivery attempt."""
    report_deliveries_total.labels(outcome="sent" if success else "failed").inc()


def track_data_source(source: str):
    """
    Decorator counting failures of a data source fetcher.

    Usage:
        @track_data_source("members")
        async def fetch_members_data(self, filters):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception:
                data_source_errors_total.labels(source=source).inc()
                raise
        return wrapper
    return decorator


def elapsed_since(start: float) -> float:
    """Seconds elapsed since a ``time.monotonic()`` reading."""
    return time.monotonic() - start
