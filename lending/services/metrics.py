"""Prometheus metrics for transition planning.

Metrics live on a private registry so embedding applications can expose them
next to their own.
"""

import time

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

REGISTRY = CollectorRegistry()

# Planner metrics
TRANSITIONS_TOTAL = Counter(
    "lending_transitions_total",
    "Total number of planned transitions",
    ["kind", "protocol", "outcome"],
    registry=REGISTRY,
)

TRANSITION_DURATION_SECONDS = Histogram(
    "lending_transition_duration_seconds",
    "Time spent planning a transition",
    ["kind"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

# Swap quote metrics
QUOTE_REQUESTS_TOTAL = Counter(
    "lending_quote_requests_total",
    "Total number of swap quote requests",
    ["swaper", "side", "status"],
    registry=REGISTRY,
)

QUOTE_DURATION_SECONDS = Histogram(
    "lending_quote_duration_seconds",
    "Swap quote request duration in seconds",
    ["swaper", "side"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=REGISTRY,
)

# Flash loan metrics
FLASH_LOANS_TOTAL = Counter(
    "lending_flash_loans_total",
    "Total number of flash loans wrapped into transitions",
    ["venue"],
    registry=REGISTRY,
)

# Chain read metrics
MARKET_READS_TOTAL = Counter(
    "lending_market_reads_total",
    "Total number of on-chain market reads",
    ["protocol", "status"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Get all metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    """Get the Prometheus content type."""
    return CONTENT_TYPE_LATEST


def record_quote(swaper: str, side: str, status: str, duration: float):
    """Record one swap quote request."""
    QUOTE_REQUESTS_TOTAL.labels(swaper=swaper, side=side, status=status).inc()
    QUOTE_DURATION_SECONDS.labels(swaper=swaper, side=side).observe(duration)


def record_flash_loan(venue: str):
    FLASH_LOANS_TOTAL.labels(venue=venue).inc()


def record_market_read(protocol: str, status: str):
    MARKET_READS_TOTAL.labels(protocol=protocol, status=status).inc()


class TransitionTimer:
    """Context manager timing one planner call and counting its outcome.

    The planner sets ``outcome`` before leaving the block; an exception
    counts as ``"failed"``.
    """

    def __init__(self, kind: str, protocol: str):
        self.kind = kind
        self.protocol = protocol
        self.outcome = "ok"
        self._start_time = None

    def __enter__(self):
        self._start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        TRANSITION_DURATION_SECONDS.labels(kind=self.kind).observe(time.time() - self._start_time)
        outcome = self.outcome if exc_type is None else "failed"
        TRANSITIONS_TOTAL.labels(kind=self.kind, protocol=self.protocol, outcome=outcome).inc()
        return False
