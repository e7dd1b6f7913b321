"""
Prometheus metrics for the escrow booking core.

Service timings come from the @measure_operation decorator; the
domain counters below track transitions, ledger traffic and the
background loops that keep booking state reconciled.
"""

import os
from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

http_request_duration_seconds = Histogram(
    "escrowbook_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

http_requests_total = Counter(
    "escrowbook_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

service_operation_duration_seconds = Histogram(
    "escrowbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "escrowbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "escrowbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "escrowbook_booking_transitions_total",
    "Booking status transitions committed by the state machine",
    ["from_status", "to_status", "actor"],
    registry=REGISTRY,
)

booking_transition_rejections_total = Counter(
    "escrowbook_booking_transition_rejections_total",
    "Transition requests rejected by the state machine",
    ["reason"],  # invalid_transition | stale_version | insufficient_permission
    registry=REGISTRY,
)

provider_lock_total = Counter(
    "escrowbook_provider_lock_total",
    "Provider slot lock operations",
    ["action", "outcome"],
    registry=REGISTRY,
)

ledger_calls_total = Counter(
    "escrowbook_ledger_calls_total",
    "Escrow ledger calls by operation and outcome",
    ["operation", "outcome"],  # submitted | retry | failed | denied
    registry=REGISTRY,
)

ledger_call_duration_seconds = Histogram(
    "escrowbook_ledger_call_duration_seconds",
    "Escrow ledger call duration in seconds",
    ["operation"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

ledger_events_total = Counter(
    "escrowbook_ledger_events_total",
    "Ledger events consumed by the monitor, by kind and outcome",
    ["kind", "outcome"],  # processed | duplicate | dropped | failed | retry
    registry=REGISTRY,
)

ledger_cursor_block = Gauge(
    "escrowbook_ledger_cursor_block",
    "Last ledger block persisted by the event monitor",
    ["cursor"],
    registry=REGISTRY,
)

scheduler_tick_bookings_total = Counter(
    "escrowbook_scheduler_tick_bookings_total",
    "Bookings visited by the scheduler tick",
    ["step", "outcome"],  # advanced | skipped | failed | escrow_requested
    registry=REGISTRY,
)

scheduler_tick_duration_seconds = Histogram(
    "escrowbook_scheduler_tick_duration_seconds",
    "Scheduler tick duration in seconds",
    registry=REGISTRY,
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

availability_cache_total = Counter(
    "escrowbook_availability_cache_total",
    "Month rollup cache lookups",
    ["result"],  # hit | miss | invalidate
    registry=REGISTRY,
)

calendar_fetch_total = Counter(
    "escrowbook_calendar_fetch_total",
    "External busy-interval fetches",
    ["platform", "outcome"],  # ok | cached | degraded
    registry=REGISTRY,
)

outbox_delivery_total = Counter(
    "escrowbook_outbox_delivery_total",
    "Status-change outbox deliveries by terminal status",
    ["status", "event_type"],
    registry=REGISTRY,
)

outbox_attempt_total = Counter(
    "escrowbook_outbox_attempt_total",
    "Status-change outbox delivery attempts",
    ["event_type"],
    registry=REGISTRY,
)


def _metrics_ttl_seconds() -> float:
    raw = os.getenv("PROMETHEUS_CACHE_TTL_SECONDS", "1.0")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 1.0
    return value if value >= 0 else 0.0


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = _metrics_ttl_seconds()

    @staticmethod
    def record_http_request(method: str, endpoint: str, duration: float, status_code: int) -> None:
        """Record HTTP request metrics."""
        labels = {"method": method, "endpoint": endpoint, "status_code": str(status_code)}

        http_request_duration_seconds.labels(**labels).observe(duration)
        http_requests_total.labels(**labels).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()

        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_transition(from_status: str, to_status: str, actor: str) -> None:
        booking_transitions_total.labels(
            from_status=from_status, to_status=to_status, actor=actor
        ).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_transition_rejected(reason: str) -> None:
        booking_transition_rejections_total.labels(reason=reason).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_provider_lock(action: str, outcome: str) -> None:
        provider_lock_total.labels(action=action, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_ledger_call(operation: str, outcome: str, duration: Optional[float] = None) -> None:
        """Count a ledger call outcome and optionally observe its latency."""
        ledger_calls_total.labels(operation=operation, outcome=outcome).inc()
        if duration is not None:
            ledger_call_duration_seconds.labels(operation=operation).observe(max(duration, 0.0))
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_ledger_event(kind: str, outcome: str) -> None:
        ledger_events_total.labels(kind=kind, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def set_ledger_cursor(cursor: str, block_number: int) -> None:
        ledger_cursor_block.labels(cursor=cursor).set(block_number)
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_scheduler_booking(step: str, outcome: str) -> None:
        scheduler_tick_bookings_total.labels(step=step, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def observe_scheduler_tick(duration: float) -> None:
        scheduler_tick_duration_seconds.observe(max(duration, 0.0))
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_availability_cache(result: str) -> None:
        availability_cache_total.labels(result=result).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_calendar_fetch(platform: str, outcome: str) -> None:
        calendar_fetch_total.labels(platform=platform, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_outbox_attempt(event_type: str) -> None:
        outbox_attempt_total.labels(event_type=event_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_outbox_outcome(event_type: str, status: str) -> None:
        outbox_delivery_total.labels(status=status, event_type=event_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """
        Generate Prometheus metrics in exposition format.

        Returns:
            Metrics data in Prometheus text format
        """
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        ttl = PrometheusMetrics._cache_ttl_seconds

        if payload is not None and ts is not None and (now - ts) <= ttl:
            return payload

        with PrometheusMetrics._cache_lock:
            payload = PrometheusMetrics._cache_payload
            ts = PrometheusMetrics._cache_ts
            ttl = PrometheusMetrics._cache_ttl_seconds

            if payload is None or ts is None or (now - ts) > ttl:
                PrometheusMetrics._refresh_cache_locked()
                payload = PrometheusMetrics._cache_payload

        return cast(bytes, payload)

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _refresh_cache_locked() -> None:
        """Refresh cached metrics payload. Caller must hold lock."""
        PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
        PrometheusMetrics._cache_ts = monotonic()
        PrometheusMetrics._cache_ttl_seconds = _metrics_ttl_seconds()

    @staticmethod
    def _invalidate_cache() -> None:
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = None
            PrometheusMetrics._cache_ts = None


prometheus_metrics = PrometheusMetrics()
