# core/metrics.py

import logging
from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# ----------------------------
# Request Counters
# ----------------------------

LLM_REQUESTS = Counter(
    "llm_requests_total",
    "Total LLM requests",
    ["model", "status"]  # status: success, error
)

LLM_RETRIES = Counter(
    "llm_retries_total",
    "Total LLM call retries",
    ["model", "reason"]  # rate_limited, overloaded, transport, ...
)

LLM_FALLBACKS = Counter(
    "llm_fallbacks_total",
    "Total switches from the primary to the fallback model",
    ["primary", "fallback"]
)

# ----------------------------
# Latency Histograms
# ----------------------------

LLM_LATENCY = Histogram(
    "llm_request_latency_seconds",
    "LLM request latency",
    ["model"]
)

# ----------------------------
# Stream Metrics
# ----------------------------

STREAM_REQUESTS = Counter(
    "stream_requests_total",
    "Total streaming requests",
    ["status"]  # status: started, success, error, cancelled
)

STREAM_LATENCY = Histogram(
    "stream_latency_seconds",
    "End-to-end streaming latency (seconds)"
)


# ----------------------------
# LLM Metric Helper Functions
# ----------------------------

def record_llm_success(model: str, duration_sec: float) -> None:
    """Record a successful single-shot LLM call with its duration."""
    LLM_REQUESTS.labels(model=model, status="success").inc()
    LLM_LATENCY.labels(model=model).observe(duration_sec)


def record_llm_failure(model: str) -> None:
    LLM_REQUESTS.labels(model=model, status="error").inc()


def record_retry(model: str, reason: str) -> None:
    LLM_RETRIES.labels(model=model, reason=reason).inc()


def record_fallback(primary: str, fallback: str) -> None:
    LLM_FALLBACKS.labels(primary=primary, fallback=fallback).inc()


# ----------------------------
# Stream Metric Helper Functions
# ----------------------------

def record_stream_start() -> None:
    """Record the start of a streaming request."""
    STREAM_REQUESTS.labels(status="started").inc()


def record_stream_success(duration_sec: float) -> None:
    """Record a successful streaming completion with its duration."""
    STREAM_REQUESTS.labels(status="success").inc()
    STREAM_LATENCY.observe(duration_sec)


def record_stream_failure() -> None:
    """Record a streaming request that ended with an error frame."""
    STREAM_REQUESTS.labels(status="error").inc()


def record_stream_cancelled() -> None:
    """Record a streaming request abandoned by the consumer."""
    STREAM_REQUESTS.labels(status="cancelled").inc()
