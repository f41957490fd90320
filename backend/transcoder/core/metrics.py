"""Prometheus metrics for the transcoding service.

Tracks HTTP traffic, admission decisions, worker slot usage and queue depth.
"""

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

# Create a custom registry for our metrics
REGISTRY = CollectorRegistry()

# Check if running in multiprocess mode (e.g., with gunicorn)
if "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "video_transcoder_app",
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


# ============================================
# Transcode Job Metrics
# ============================================
JOBS_SUBMITTED_TOTAL = Counter(
    "transcode_jobs_submitted_total",
    "Jobs accepted by admission, by dispatch path",
    ["path"],
    registry=REGISTRY,
)

JOBS_FINISHED_TOTAL = Counter(
    "transcode_jobs_finished_total",
    "Jobs that reached a terminal state",
    ["state", "error_kind"],
    registry=REGISTRY,
)

JOBS_REJECTED_TOTAL = Counter(
    "transcode_jobs_rejected_total",
    "Submissions rejected before a job was created",
    ["reason"],
    registry=REGISTRY,
)

WORKER_SLOTS_BUSY = Gauge(
    "transcode_worker_slots_busy",
    "Worker slots currently running a job",
    registry=REGISTRY,
)

WORKER_SLOTS_CAPACITY = Gauge(
    "transcode_worker_slots_capacity",
    "Configured worker pool capacity",
    registry=REGISTRY,
)

QUEUE_DEPTH = Gauge(
    "transcode_queue_depth",
    "Jobs waiting for a free worker slot",
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "transcode_job_duration_seconds",
    "Wall-clock time from claim to terminal state",
    ["state"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str = "production") -> None:
    APP_INFO.info({"version": version, "environment": environment})


def record_job_finished(state: str, error_kind: str = "", duration: float = 0.0) -> None:
    """Count a terminal transition and observe how long the job held its slot."""
    JOBS_FINISHED_TOTAL.labels(state=state, error_kind=error_kind or "none").inc()
    JOB_DURATION_SECONDS.labels(state=state).observe(duration)


def get_metrics() -> bytes:
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
