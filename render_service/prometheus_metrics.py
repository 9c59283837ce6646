"""
Prometheus metrics collectors for the render service.

Counters are incremented when events occur (not synced from external state).
Gauges are updated from the EngineManager snapshot right before a scrape.
"""

import logging
from typing import TYPE_CHECKING

from prometheus_client import Counter, Gauge, Histogram, Info

if TYPE_CHECKING:
    from render_service.render_service import RenderService


logger = logging.getLogger(__name__)


# Render counters - incremented when jobs finish
render_jobs_total = Counter(
    "render_jobs_total",
    "Total number of successful render jobs",
)

render_job_failures_total = Counter(
    "render_job_failures_total",
    "Total number of failed render jobs by error kind",
    ["kind"],
)

render_duration_seconds = Histogram(
    "render_duration_seconds",
    "Render job duration in seconds, including the wait for a page",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

render_retries_total = Counter(
    "render_retries_total",
    "Total number of render attempts repeated after a failure",
)

# Engine lifecycle
engine_restarts_total = Counter(
    "engine_restarts_total",
    "Total number of explicit engine restarts",
)

engine_installs_total = Counter(
    "engine_installs_total",
    "Total number of engine installs by outcome",
    ["outcome"],
)

engine_connected = Gauge(
    "engine_connected",
    "Whether the engine connection is live (1) or not (0)",
)

engine_reconnects = Gauge(
    "engine_reconnects",
    "Successful automatic reconnects since start",
)

engine_reconnect_attempts = Gauge(
    "engine_reconnect_attempts",
    "Automatic reconnect attempts since start",
)

engine_consecutive_health_failures = Gauge(
    "engine_consecutive_health_failures",
    "Current number of consecutive failed health probes",
)

uptime_seconds = Gauge(
    "engine_uptime_seconds",
    "Time since the current engine connection was established",
)

render_error_rate_percent = Gauge(
    "render_error_rate_percent",
    "Render job error rate as percentage",
)

avg_render_time_seconds = Gauge(
    "avg_render_time_seconds",
    "Average successful render time in seconds",
)

# Resource usage
cpu_percent = Gauge(
    "engine_cpu_percent",
    "Current CPU usage of the local engine process tree",
)

engine_memory_bytes = Gauge(
    "engine_memory_bytes",
    "Current resident memory of the local engine process tree in bytes",
)

system_memory_total_bytes = Gauge(
    "system_memory_total_bytes",
    "Total system memory in bytes",
)

system_memory_available_bytes = Gauge(
    "system_memory_available_bytes",
    "Available system memory in bytes",
)

# Page pool
queue_size = Gauge(
    "page_pool_queue_size",
    "Current number of callers waiting for a page",
)

active_pages = Gauge(
    "page_pool_active_pages",
    "Current number of leased pages",
)

max_concurrency = Gauge(
    "page_pool_max_concurrency",
    "Configured maximum number of concurrently leased pages",
)

queue_time_seconds = Histogram(
    "page_pool_queue_time_seconds",
    "Time callers spend waiting for a page",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0],
)

# Provisioning
install_progress_percent = Gauge(
    "engine_install_progress_percent",
    "Progress of the current or last engine install",
)

engine_info = Info(
    "engine",
    "Rendering engine information",
)


def increment_render_success(duration_seconds: float) -> None:
    """Increment successful render counter and record duration."""
    render_jobs_total.inc()
    render_duration_seconds.observe(duration_seconds)


def increment_render_failure(kind: str) -> None:
    render_job_failures_total.labels(kind=kind).inc()


def increment_render_retry() -> None:
    render_retries_total.inc()


def increment_engine_restart() -> None:
    engine_restarts_total.inc()


def increment_engine_install(outcome: str) -> None:
    engine_installs_total.labels(outcome=outcome).inc()


def observe_queue_time(seconds: float) -> None:
    queue_time_seconds.observe(seconds)


def update_gauges_from_render_service(render_service: "RenderService") -> None:
    """
    Update Prometheus gauges from the current service state.

    Called before serving metrics. It ONLY updates gauges, counters are
    incremented when events occur via the increment_* functions.

    Args:
        render_service: RenderService instance to collect metrics from
    """
    try:
        engine = render_service.engine
        metrics = engine.get_metrics()

        engine_connected.set(1.0 if engine.is_connected() else 0.0)
        engine_reconnects.set(float(metrics["total_reconnects"]))
        engine_reconnect_attempts.set(float(metrics["total_reconnect_attempts"]))
        engine_consecutive_health_failures.set(float(metrics["consecutive_health_failures"]))
        uptime_seconds.set(float(metrics["uptime_seconds"]))
        render_error_rate_percent.set(float(metrics["error_rate_percent"]))
        avg_render_time_seconds.set(float(metrics["avg_render_time_ms"]) / 1000.0)
        cpu_percent.set(float(metrics["current_cpu_percent"]))
        engine_memory_bytes.set(float(metrics["current_engine_memory_mb"]) * 1024 * 1024)  # MB to bytes
        system_memory_total_bytes.set(float(metrics["total_memory_mb"]) * 1024 * 1024)
        system_memory_available_bytes.set(float(metrics["available_memory_mb"]) * 1024 * 1024)
        queue_size.set(float(metrics["queue_size"]))
        active_pages.set(float(metrics["active_pages"]))
        max_concurrency.set(float(render_service.pool.max_concurrency))
        install_progress_percent.set(float(render_service.installer.progress().progress))

        status = engine.status()
        engine_info.info({"version": status["version"] or "", "mode": status["mode"], "state": status["state"]})

        logger.debug("Prometheus gauges updated from RenderService")

    except Exception as e:
        logger.error("Failed to update Prometheus gauges: %s", e, exc_info=True)
