# blueprint/monitoring.py
"""
Observability for the export service.

Logging: one named logger; JSON lines (python-json-logger) unless LOG_AS_JSON
is off, every line tagged with the service name.
Metrics: Prometheus counters/histograms for HTTP requests, export outcomes and
stage latency, archive sizes, gateway calls, cache lookups and rate-limit
blocks. The observe_/inc_ helpers never raise.
Errors: Sentry, when SENTRY_DSN is set; unexpected export failures are
reported with the export context attached.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional), SENTRY_TRACES_SAMPLE_RATE (default: 0)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Any, Tuple

from prometheus_client import (
    Counter, Histogram,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger
import sentry_sdk

SERVICE_NAME = "blueprint-export"

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0") or 0)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


def setup_logger(name: str = SERVICE_NAME, level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    log = logging.getLogger(name)
    log.setLevel(level)
    if not log.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                static_fields={"service": SERVICE_NAME, "environment": ENVIRONMENT},
            ))
        else:
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        log.addHandler(handler)
    return log


logger = setup_logger()

if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT,
                    traces_sample_rate=SENTRY_TRACES_SAMPLE_RATE)
    logger.info("Sentry initialized", extra={"environment": ENVIRONMENT})


def capture_failure(err: BaseException, **context: Any) -> None:
    """Report an unexpected error to Sentry with `context` attached. No-op without a DSN."""
    if not SENTRY_DSN:
        return
    try:
        sentry_sdk.set_context("export", context)
        sentry_sdk.capture_exception(err)
    except Exception as e:
        logger.warning("sentry capture failed", extra={"error": str(e)})


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "blueprint_requests_total",
    "Total /api requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "blueprint_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

EXPORT_OUTCOMES = Counter(
    "blueprint_exports_total",
    "Export attempts by terminal status",
    ["status", "format"],
)

EXPORT_STAGE_LATENCY = Histogram(
    "blueprint_export_stage_seconds",
    "Time spent in each export stage",
    ["stage"],
)

ARCHIVE_SIZE = Histogram(
    "blueprint_archive_bytes",
    "Size of produced export archives",
    buckets=(64e3, 256e3, 1e6, 4e6, 16e6, 50e6),
)

GATEWAY_CALLS = Counter(
    "blueprint_gateway_calls_total",
    "Model gateway provider calls",
    ["provider", "outcome"],
)

GATEWAY_RETRIES = Counter(
    "blueprint_gateway_retries_total",
    "Model gateway retries by error code",
    ["code"],
)

GATEWAY_LATENCY = Histogram(
    "blueprint_gateway_latency_seconds",
    "Provider call latency",
    ["provider"],
)

CACHE_LOOKUPS = Counter(
    "blueprint_cache_lookups_total",
    "Response cache lookups",
    ["tier", "outcome"],
)

RATE_LIMIT_BLOCKS = Counter(
    "blueprint_rate_limit_blocks_total",
    "Calls rejected by the per-user rate limiter",
    ["window"],
)


# --- Helper wrappers (never crash the pipeline)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_stage(start_ts: float, stage: str):
    try:
        EXPORT_STAGE_LATENCY.labels(stage=stage).observe(time.time() - start_ts)
    except Exception:
        pass


def inc_export(status: str, fmt: str):
    try:
        EXPORT_OUTCOMES.labels(status=status, format=fmt).inc()
    except Exception:
        pass


def observe_archive_size(n_bytes: int):
    try:
        ARCHIVE_SIZE.observe(n_bytes)
    except Exception:
        pass


def observe_gateway_call(start_ts: float, provider: str, outcome: str):
    try:
        GATEWAY_LATENCY.labels(provider=provider).observe(time.time() - start_ts)
        GATEWAY_CALLS.labels(provider=provider, outcome=outcome).inc()
    except Exception:
        pass


def inc_gateway_retry(code: str):
    try:
        GATEWAY_RETRIES.labels(code=code).inc()
    except Exception:
        pass


def inc_cache_lookup(tier: str, outcome: str):
    try:
        CACHE_LOOKUPS.labels(tier=tier, outcome=outcome).inc()
    except Exception:
        pass


def inc_rate_limit_block(window: str):
    try:
        RATE_LIMIT_BLOCKS.labels(window=window).inc()
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
