"""Prometheus metrics for the media pipeline and delivery layer."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Celery prefork workers and gunicorn both need the multiprocess collector
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "reelpipe_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Pipeline Metrics
# ============================================
PIPELINE_RUNS_TOTAL = Counter(
    "pipeline_runs_total",
    "Processing runs by final status",
    ["status"],
    registry=REGISTRY,
)

PIPELINE_RUN_DURATION_SECONDS = Histogram(
    "pipeline_run_duration_seconds",
    "Wall-clock duration of a processing run",
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0],
    registry=REGISTRY,
)

RENDITIONS_TOTAL = Counter(
    "renditions_total",
    "Rendition transcode attempts by quality and outcome",
    ["quality", "outcome"],
    registry=REGISTRY,
)

TRANSCODE_DURATION_SECONDS = Histogram(
    "transcode_duration_seconds",
    "Duration of a single rendition transcode",
    ["quality"],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

ACTIVE_TRANSCODES = Gauge(
    "active_transcodes",
    "Transcoder subprocesses currently running on this node",
    registry=REGISTRY,
)

PROCESSING_QUEUE_DEPTH = Gauge(
    "processing_queue_depth",
    "Assets waiting in the local processing queue",
    registry=REGISTRY,
)


# ============================================
# Delivery & Cleanup Metrics
# ============================================
STREAM_RESPONSES_TOTAL = Counter(
    "stream_responses_total",
    "Media responses by HTTP status",
    ["status_code"],
    registry=REGISTRY,
)

STREAM_BYTES_SERVED_TOTAL = Counter(
    "stream_bytes_served_total",
    "Bytes of media written to clients",
    registry=REGISTRY,
)

ORPHANS_REMOVED_TOTAL = Counter(
    "orphans_removed_total",
    "Orphaned storage entries removed by the reaper",
    ["root"],
    registry=REGISTRY,
)

ORPHAN_REMOVAL_FAILURES_TOTAL = Counter(
    "orphan_removal_failures_total",
    "Orphaned storage entries the reaper failed to remove",
    ["root"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Render all metrics in Prometheus text format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})
