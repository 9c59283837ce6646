"""
Prometheus endpoint on its own port.

The render API and /metrics are served by two FastAPI apps so scraping can be
allowed on the metrics port only. Both run in the same event loop and read the
same RenderService singleton.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from render_service.engine_config import is_env_flag_enabled
from render_service.prometheus_metrics import update_gauges_from_render_service
from render_service.render_service import RenderService, get_render_service

logger = logging.getLogger(__name__)

MIN_VALID_PORT = 1024
MAX_VALID_PORT = 65535
DEFAULT_METRICS_PORT = 9180
STARTUP_TIMEOUT_SECONDS = 10.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

metrics_app = FastAPI(title="Render Service Metrics", version="1.0.0", docs_url=None, redoc_url=None, openapi_url=None)


@metrics_app.get("/metrics")
async def metrics(render_service: Annotated[RenderService, Depends(get_render_service)]) -> Response:
    # Counters move as events happen; gauges are sampled per scrape
    update_gauges_from_render_service(render_service)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def get_metrics_port() -> int:
    """METRICS_PORT, or the default when unset, unparseable or outside 1024-65535."""
    value = os.environ.get("METRICS_PORT")
    if value is None:
        return DEFAULT_METRICS_PORT
    try:
        port = int(value)
    except ValueError:
        logger.warning("Invalid METRICS_PORT value '%s', using default: %d", value, DEFAULT_METRICS_PORT)
        return DEFAULT_METRICS_PORT
    if not MIN_VALID_PORT <= port <= MAX_VALID_PORT:
        logger.warning("METRICS_PORT must be between %d and %d, using default: %d", MIN_VALID_PORT, MAX_VALID_PORT, DEFAULT_METRICS_PORT)
        return DEFAULT_METRICS_PORT
    return port


def is_metrics_server_enabled() -> bool:
    return is_env_flag_enabled("METRICS_SERVER_ENABLED", True)


class MetricsServer:
    """Background uvicorn server for metrics_app, started and stopped by the render API lifespan."""

    def __init__(self, port: int = DEFAULT_METRICS_PORT) -> None:
        self.port = port
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """
        Start serving and return once the socket is bound.

        Raises:
            TimeoutError: The server did not come up within STARTUP_TIMEOUT_SECONDS.
            RuntimeError: The server exited during startup, e.g. because the port is taken.
        """
        if self._started:
            logger.warning("Metrics server already started")
            return

        self._server = uvicorn.Server(uvicorn.Config(app=metrics_app, host="", port=self.port, log_level="warning"))
        self._task = asyncio.create_task(self._server.serve())
        self._started = True

        try:
            await self._wait_until_serving()
        except (TimeoutError, RuntimeError) as e:
            logger.error("Metrics server on port %d failed to start: %s", self.port, e)
            await self.stop()
            raise
        logger.info("Metrics server started on port %d", self.port)

    async def _wait_until_serving(self) -> None:
        assert self._server is not None
        assert self._task is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT_SECONDS
        while not self._server.started:
            if self._task.done():
                raise RuntimeError(f"Metrics server exited during startup on port {self.port}")
            if loop.time() > deadline:
                raise TimeoutError(f"Metrics server failed to start within {STARTUP_TIMEOUT_SECONDS} seconds")
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        if not self._started:
            return

        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
            except TimeoutError:
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task

        self._started = False
        self._server = None
        self._task = None
        logger.info("Metrics server stopped")
