"""Prometheus Metrics - Observability for the citizen services portal

Self-Explanatory: Counters and histograms for the field encryption layer.
Why: HSM outages show up as placeholder labels in the UI, not as errors;
operators need a number to alert on.
How: prometheus_client default registry, exported at /metrics.

Metrics Categories:
1. HSM: operations by result, auth exchanges, round-trip latency
2. Field codec: decrypt fallbacks, legacy plaintext reads
3. Business: citizens and service requests written
"""

import time
from functools import wraps
from typing import Callable

import structlog
from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    REGISTRY,
)

logger = structlog.get_logger()

# ============================================================================
# HSM METRICS
# ============================================================================

hsm_operations_total = Counter(
    "civic_hsm_operations_total",
    "Encrypt/decrypt calls issued by the HSM client",
    ["operation", "mode", "result"],  # result: success, failure, legacy
)

hsm_auth_total = Counter(
    "civic_hsm_auth_total",
    "HSM session authentication exchanges",
    ["auth_method", "result"],  # result: success, failure, demo
)

hsm_request_duration_seconds = Histogram(
    "civic_hsm_request_duration_seconds",
    "Latency of HSM crypto round-trips",
    ["operation"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
)

# ============================================================================
# FIELD CODEC METRICS
# ============================================================================

decrypt_fallbacks_total = Counter(
    "civic_decrypt_fallbacks_total",
    "Fields rendered with a fallback label because decryption failed",
    ["entity_kind", "field"],
)

# ============================================================================
# BUSINESS METRICS
# ============================================================================

records_written_total = Counter(
    "civic_records_written_total",
    "Records persisted through the encrypted repositories",
    ["entity_kind", "operation"],
)

system_info = Info(
    "civic_portal",
    "Citizen services portal information",
)

system_info.info({
    "version": "1.0.0",
    "encryption_provider": "fortanix-dsm",
})

# ============================================================================
# DECORATOR UTILITIES
# ============================================================================


def track_hsm_request(operation: str):
    """Decorator to time an async HSM round-trip"""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                hsm_request_duration_seconds.labels(
                    operation=operation
                ).observe(time.time() - start_time)
        return wrapper
    return decorator


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def record_hsm_operation(operation: str, mode: str, result: str):
    """Record one encrypt/decrypt outcome"""
    hsm_operations_total.labels(operation=operation, mode=mode, result=result).inc()


def record_hsm_auth(auth_method: str, result: str):
    hsm_auth_total.labels(auth_method=auth_method, result=result).inc()


def record_decrypt_fallback(entity_kind: str, field: str):
    decrypt_fallbacks_total.labels(entity_kind=entity_kind, field=field).inc()


def record_write(entity_kind: str, operation: str):
    records_written_total.labels(entity_kind=entity_kind, operation=operation).inc()


def get_metrics_text() -> bytes:
    """Get Prometheus metrics in text format

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(REGISTRY)
