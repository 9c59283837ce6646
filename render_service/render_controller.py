import contextlib
import logging
import os
import platform
from collections.abc import AsyncGenerator
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as package_version
from typing import Annotated, Any

from fastapi import Body, Depends, FastAPI, Query, Response, status
from fastapi.responses import JSONResponse

from render_service.engine_config import EngineConfig, ProxyConfig, is_env_flag_enabled
from render_service.engine_manager import ConnectionState
from render_service.errors import ErrorKind
from render_service.metrics_server import MetricsServer, get_metrics_port, is_metrics_server_enabled
from render_service.render_pipeline import RenderJob, Viewport
from render_service.render_service import OperationResult, RenderResult, RenderService, get_render_service
from render_service.sanitization import sanitize_url_for_logging
from render_service.schemas import (
    ConfigUpdateSchema,
    EngineMetricsSchema,
    HealthSchema,
    InstallProgressSchema,
    InstallRequestSchema,
    OperationResultSchema,
    RenderRequestSchema,
    RenderResponseSchema,
    UninstallRequestSchema,
    VersionSchema,
)

UNHEALTHY_AFTER_FAILED_PROBES = 3

_MEDIA_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "webp": "image/webp"}

_ERROR_STATUS_CODES = {
    ErrorKind.INVALID_REQUEST.value: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SOURCE_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_INSTALLING.value: status.HTTP_409_CONFLICT,
    ErrorKind.NO_BINARY_FOUND.value: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.LAUNCH_FAILED.value: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.CONNECT_FAILED.value: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.DISCONNECTED.value: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.ACQUIRE_TIMEOUT.value: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.ACQUIRE_CANCELLED.value: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.NAVIGATION_TIMEOUT.value: status.HTTP_504_GATEWAY_TIMEOUT,
}


@contextlib.asynccontextmanager
async def lifespan(app_instance: FastAPI) -> AsyncGenerator[None]:  # noqa: ARG001
    """
    Manage the lifecycle of the shared engine and the metrics server.

    With ENGINE_AUTOSTART (default true) the engine is connected at startup. A
    failed start is logged and the service keeps running, so that an engine can
    still be installed or configured through the API.
    """
    render_service = get_render_service()
    logger = logging.getLogger(__name__)

    metrics_server: MetricsServer | None = None
    if is_metrics_server_enabled():
        metrics_server = MetricsServer(port=get_metrics_port())
        await metrics_server.start()

    if is_env_flag_enabled("ENGINE_AUTOSTART", True):
        logger.info("Starting rendering engine...")
        result = await render_service.start()
        if result.success:
            logger.info("Rendering engine started successfully")
        else:
            logger.warning("Rendering engine not started: %s", result.message)

    yield  # Application runs here

    try:
        logger.info("Stopping rendering engine...")
        await render_service.shutdown()
        logger.info("Rendering engine stopped successfully")
    except Exception as e:  # noqa: BLE001
        logger.error("Error stopping rendering engine: %s", e)

    if metrics_server is not None:
        await metrics_server.stop()


logger = logging.getLogger(__name__)

app = FastAPI(
    title="Render Engine Service API",
    version="1.0.0",
    openapi_url="/static/openapi.json",
    docs_url="/api/docs",
    openapi_version="3.1.0",
    lifespan=lifespan,
)

RenderServiceDependency = Annotated[RenderService, Depends(get_render_service)]


@app.get(
    "/health",
    summary="Health check",
    description="Returns health status with optional detailed metrics. Use ?detailed=true for JSON response with metrics.",
    operation_id="getHealth",
    tags=["meta"],
    response_model=None,
    responses={
        200: {
            "content": {
                "text/plain": {"example": "OK"},
                "application/json": {"schema": HealthSchema.model_json_schema()},
            },
            "description": "Service is healthy",
        },
        503: {
            "content": {
                "text/plain": {"example": "Service Unavailable"},
                "application/json": {"schema": HealthSchema.model_json_schema()},
            },
            "description": "Service is unhealthy",
        },
    },
)
async def health(
    render_service: RenderServiceDependency,
    detailed: bool = Query(False, description="Return detailed JSON response with metrics"),
) -> Response:
    """
    Health check endpoint.

    The engine connects lazily, so a disconnected engine is healthy. Unhealthy means
    the remote connection is lost (reconnecting or exhausted) or the last health probes failed.
    """
    engine = render_service.engine
    engine_healthy = (
        engine.state not in (ConnectionState.DEBOUNCING, ConnectionState.RECONNECTING, ConnectionState.EXHAUSTED)
        and engine.metrics.consecutive_health_failures < UNHEALTHY_AFTER_FAILED_PROBES
    )
    status_code = 200 if engine_healthy else 503

    if detailed:
        engine_status = engine.status()
        health_response = HealthSchema(
            status="healthy" if engine_healthy else "unhealthy",
            version=os.environ.get("RENDER_SERVICE_VERSION", "unknown"),
            engine_connected=engine_status["connected"],
            engine_mode=engine_status["mode"],
            engine_state=engine_status["state"],
            engine_version=engine_status["version"],
            health_monitoring_enabled=engine.settings.health_check_enabled,
            metrics=EngineMetricsSchema(**engine.get_metrics()),  # type: ignore[arg-type]
        )
        return Response(content=health_response.model_dump_json(), media_type="application/json", status_code=status_code)

    if engine_healthy:
        return Response("OK", media_type="text/plain", status_code=200)
    return Response("Service Unavailable", media_type="text/plain", status_code=503)


@app.get(
    "/version",
    response_model=VersionSchema,
    summary="Service version information",
    description="Returns versions of Python, Playwright, the service itself, build timestamp, and the engine.",
    operation_id="getVersion",
    tags=["meta"],
)
async def version(render_service: RenderServiceDependency) -> dict[str, str | None]:
    """
    Get version information
    """
    logger.info("Version endpoint called")
    try:
        playwright_version: str | None = package_version("playwright")
    except PackageNotFoundError:
        playwright_version = None
    version_info = {
        "python": platform.python_version(),
        "playwright": playwright_version,
        "renderService": os.environ.get("RENDER_SERVICE_VERSION"),
        "timestamp": os.environ.get("RENDER_SERVICE_BUILD_TIMESTAMP"),
        "engine": render_service.engine.get_version(),
    }
    logger.debug("Version info: %s", version_info)
    return version_info


@app.get("/status", summary="Service status", description="Engine connection, page pool and install state.", operation_id="getStatus", tags=["meta"])
async def service_status(render_service: RenderServiceDependency) -> dict[str, Any]:
    return render_service.status()


@app.get("/browser/status", summary="Engine connection status", operation_id="getBrowserStatus", tags=["browser"])
async def browser_status(render_service: RenderServiceDependency) -> dict[str, Any]:
    return render_service.engine.status()


@app.post("/browser/start", response_model=OperationResultSchema, summary="Connect the engine", operation_id="startBrowser", tags=["browser"])
async def browser_start(render_service: RenderServiceDependency) -> Response:
    logger.info("Engine start requested")
    return __operation_response(await render_service.start())


@app.post("/browser/stop", response_model=OperationResultSchema, summary="Disconnect the engine", operation_id="stopBrowser", tags=["browser"])
async def browser_stop(render_service: RenderServiceDependency) -> Response:
    logger.info("Engine stop requested")
    return __operation_response(await render_service.stop())


@app.post("/browser/restart", response_model=OperationResultSchema, summary="Restart the engine", operation_id="restartBrowser", tags=["browser"])
async def browser_restart(render_service: RenderServiceDependency) -> Response:
    logger.info("Engine restart requested")
    return __operation_response(await render_service.restart())


@app.get(
    "/screenshot",
    responses={
        200: {"content": {"image/png": {}, "application/json": {"schema": RenderResponseSchema.model_json_schema()}}, "description": "Captured image"},
        400: {"content": {"text/plain": {}}, "description": "Invalid Input"},
        503: {"content": {"text/plain": {}}, "description": "Engine unavailable"},
    },
    summary="Capture a URL",
    description="Captures a web page. Returns the image itself with raw=true, otherwise JSON with base64 data.",
    operation_id="getScreenshot",
    tags=["render"],
    response_model=None,
)
async def screenshot_url(
    render_service: RenderServiceDependency,
    url: str = Query(title="URL", description="Page to capture (http, https or file URL)"),
    selector: str | None = Query(None, title="Selector", description="CSS selector of the element to capture"),
    width: int | None = Query(None, ge=1, le=10000, title="Width", description="Viewport width"),
    height: int | None = Query(None, ge=1, le=10000, title="Height", description="Viewport height"),
    image_type: str = Query("png", title="Image Type", description="png, jpeg or webp"),
    quality: int | None = Query(None, ge=0, le=100, title="Quality", description="Quality for jpeg and webp"),
    full_page: bool = Query(False, title="Full Page", description="Capture the whole scrollable page"),
    wait_until: str = Query("networkidle", title="Wait Until", description="Navigation wait policy"),
    timeout_ms: int | None = Query(None, ge=1, le=300000, title="Timeout (ms)", description="Navigation timeout"),
    raw: bool = Query(False, title="Raw", description="Return the image bytes instead of JSON"),
) -> Response:
    logger.info("Screenshot of %s requested", sanitize_url_for_logging(url))
    job = RenderJob(
        source=url,
        source_type="url",
        selector=selector,
        viewport=Viewport(width=width, height=height) if width and height else None,
        image_type=image_type,
        quality=quality,
        encoding="binary" if raw else "base64",
        full_page=full_page,
        wait_until=wait_until,
        timeout_ms=timeout_ms,
    )
    return __render_response(await render_service.render(job))


@app.post(
    "/screenshot",
    responses={
        200: {"content": {"image/png": {}}, "description": "Captured image"},
        400: {"content": {"text/plain": {}}, "description": "Invalid Input"},
        503: {"content": {"text/plain": {}}, "description": "Engine unavailable"},
    },
    summary="Capture a URL or HTML and return the image",
    description="Renders the request and returns the raw image. Pagination is not available here, use /render.",
    operation_id="postScreenshot",
    tags=["render"],
    response_model=None,
)
async def screenshot(render_service: RenderServiceDependency, request: Annotated[RenderRequestSchema, Body()]) -> Response:
    job = __to_render_job(request, encoding="binary", multi_page=False)
    return __render_response(await render_service.render(job))


@app.post(
    "/render",
    responses={
        200: {"content": {"application/json": {"schema": RenderResponseSchema.model_json_schema()}, "image/png": {}}, "description": "Render result"},
        400: {"content": {"text/plain": {}}, "description": "Invalid Input"},
        404: {"content": {"text/plain": {}}, "description": "Source file not found"},
        503: {"content": {"text/plain": {}}, "description": "Engine unavailable"},
    },
    summary="Render HTML, a template or a URL",
    description="Renders the request. base64 encoding returns JSON (a list of images when paginated), binary returns the raw image.",
    operation_id="postRender",
    tags=["render"],
    response_model=None,
)
async def render(render_service: RenderServiceDependency, request: Annotated[RenderRequestSchema, Body()]) -> Response:
    if request.encoding == "binary" and request.multi_page:
        return Response("Invalid request: binary encoding cannot return multiple pages", media_type="text/plain", status_code=400)
    job = __to_render_job(request)
    return __render_response(await render_service.render(job))


@app.get("/config", summary="Current configuration", description="Effective settings; proxy credentials are never returned.", operation_id="getConfig", tags=["config"])
async def get_config(render_service: RenderServiceDependency) -> dict[str, Any]:
    return render_service.get_config()


@app.post(
    "/config",
    summary="Update configuration",
    description="Applies a partial update. The live engine keeps running; new settings apply on the next connect.",
    operation_id="updateConfig",
    tags=["config"],
)
async def update_config(render_service: RenderServiceDependency, request: Annotated[ConfigUpdateSchema, Body()]) -> dict[str, Any]:
    changes = request.model_dump(exclude={"proxy"})
    if request.proxy is not None:
        changes["proxy"] = ProxyConfig(**request.proxy.model_dump())
    return render_service.update_config(EngineConfig(**changes))


@app.get("/engine/status", summary="Provisioned engine status", operation_id="getEngineStatus", tags=["engine"])
async def engine_status(render_service: RenderServiceDependency) -> dict[str, Any]:
    return await render_service.engine_status()


@app.get("/engine/progress", response_model=InstallProgressSchema, summary="Install progress", operation_id="getInstallProgress", tags=["engine"])
async def engine_progress(render_service: RenderServiceDependency) -> dict[str, Any]:
    return render_service.install_progress()


@app.post(
    "/engine/install",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=OperationResultSchema,
    responses={409: {"description": "An install is already in progress"}},
    summary="Install an engine",
    description="Starts the install in the background. Poll /engine/progress for the outcome.",
    operation_id="installEngine",
    tags=["engine"],
)
async def engine_install(render_service: RenderServiceDependency, request: Annotated[InstallRequestSchema | None, Body()] = None) -> Response:
    request = request or InstallRequestSchema()
    logger.info("Engine install requested (version: %s)", request.version or "default")
    result = render_service.start_install(version=request.version, sources=request.sources, install_deps=request.install_deps)
    return __operation_response(result, success_status=status.HTTP_202_ACCEPTED)


@app.post("/engine/install-deps", response_model=OperationResultSchema, summary="Install Linux system dependencies", operation_id="installEngineDependencies", tags=["engine"])
async def engine_install_deps(render_service: RenderServiceDependency) -> Response:
    return __operation_response(await render_service.install_dependencies())


@app.post("/engine/uninstall", response_model=OperationResultSchema, summary="Remove provisioned engines", operation_id="uninstallEngine", tags=["engine"])
async def engine_uninstall(render_service: RenderServiceDependency, request: Annotated[UninstallRequestSchema | None, Body()] = None) -> Response:
    path = request.path if request else None
    return __operation_response(await render_service.uninstall_engine(path))


def __to_render_job(request: RenderRequestSchema, **overrides: Any) -> RenderJob:
    values = request.model_dump(exclude={"viewport"})
    if request.viewport is not None:
        values["viewport"] = Viewport(**request.viewport.model_dump())
    values.update(overrides)
    return RenderJob(**values)


def __render_response(result: RenderResult) -> Response:
    if not result.ok:
        return __process_error(result.message, result.error_kind)

    if isinstance(result.data, bytes):
        response = Response(result.data, media_type=_MEDIA_TYPES.get(result.image_type or "png", "application/octet-stream"), status_code=200)
        response.headers.append("Render-Time-Ms", str(result.time_ms))
        return response

    body = RenderResponseSchema(
        status=result.status,
        data=result.data,  # type: ignore[arg-type]
        message=result.message,
        time_ms=result.time_ms,
        image_type=result.image_type,
        pages=result.pages,
    )
    return Response(content=body.model_dump_json(), media_type="application/json", status_code=200)


def __operation_response(result: OperationResult, success_status: int = status.HTTP_200_OK) -> Response:
    if result.success:
        return JSONResponse(content=result.to_dict(), status_code=success_status)
    status_code = _ERROR_STATUS_CODES.get(result.error_kind or "", status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.warning("Operation failed (%s): %s", result.error_kind, result.message)
    return JSONResponse(content=result.to_dict(), status_code=status_code)


def __process_error(message: str, error_kind: str | None) -> Response:
    status_code = _ERROR_STATUS_CODES.get(error_kind or "", status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.error("Render failed (%s): %s", error_kind, message)
    return Response(f"{error_kind or ErrorKind.RENDER_FAILED.value}: {message}", media_type="text/plain", status_code=status_code)
