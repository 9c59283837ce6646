from typing import Literal

from pydantic import BaseModel, Field


class VersionSchema(BaseModel):
    """Schema for response /version"""

    python: str = Field(title="Python", description="Python version")
    playwright: str | None = Field(title="Playwright", description="Playwright library version")
    renderService: str | None = Field(title="Render Service", description="Service version")
    timestamp: str | None = Field(title="Build Timestamp", description="Build timestamp")
    engine: str | None = Field(title="Engine", description="Version of the connected rendering engine")


class EngineMetricsSchema(BaseModel):
    """Schema for engine performance and health metrics"""

    # Render job metrics
    total_jobs: int = Field(title="Total Jobs", description="Render jobs submitted since start")
    failed_jobs: int = Field(title="Failed Jobs", description="Render jobs that ended in an error")
    error_rate_percent: float = Field(title="Error Rate (%)", description="Render error rate as percentage")
    avg_render_time_ms: float = Field(title="Avg Render Time (ms)", description="Average successful render time in milliseconds, including the wait for a page")

    # Connection metrics
    total_restarts: int = Field(title="Total Restarts", description="Explicit engine restarts since startup")
    total_reconnects: int = Field(title="Total Reconnects", description="Successful automatic reconnects to a remote engine")
    total_reconnect_attempts: int = Field(title="Total Reconnect Attempts", description="Automatic reconnect attempts, successful or not")
    last_health_check: str = Field(title="Last Health Check", description="Formatted timestamp of last health check (HH:MM:SS DD.MM.YYYY)")
    last_health_status: bool = Field(title="Last Health Status", description="Result of last health check (true=healthy)")
    consecutive_health_failures: int = Field(title="Consecutive Health Failures", description="Failed health probes in a row")
    uptime_seconds: float = Field(title="Uptime (seconds)", description="Time since the current connection was established")

    # Resource usage metrics
    current_cpu_percent: float = Field(title="Current CPU (%)", description="CPU usage of the local engine process tree")
    avg_cpu_percent: float = Field(title="Avg CPU (%)", description="Average CPU usage of the local engine process tree")
    total_memory_mb: float = Field(title="Total Memory (MB)", description="Total system memory in MB")
    available_memory_mb: float = Field(title="Available Memory (MB)", description="Available system memory in MB")
    current_engine_memory_mb: float = Field(title="Current Engine Memory (MB)", description="Resident memory of the local engine process tree in MB")
    avg_engine_memory_mb: float = Field(title="Avg Engine Memory (MB)", description="Average resident memory of the local engine process tree in MB")

    # Page pool metrics
    queue_size: int = Field(title="Queue Size", description="Callers currently waiting for a page")
    max_queue_size: int = Field(title="Max Queue Size", description="Highest number of waiting callers observed")
    active_pages: int = Field(title="Active Pages", description="Pages currently leased")
    avg_queue_time_ms: float = Field(title="Avg Queue Time (ms)", description="Average time callers waited for a page (milliseconds)")
    max_concurrency: int = Field(title="Max Concurrency", description="Maximum number of concurrently leased pages (configured limit)")


class HealthSchema(BaseModel):
    """Schema for detailed health status response"""

    status: str = Field(title="Status", description="Overall health status: healthy or unhealthy")
    version: str = Field(title="Version", description="Render service version")
    engine_connected: bool = Field(title="Engine Connected", description="Whether the engine connection is live")
    engine_mode: str = Field(title="Engine Mode", description="local or remote")
    engine_state: str = Field(title="Engine State", description="Connection state, e.g. connected, reconnecting, exhausted")
    engine_version: str | None = Field(title="Engine Version", description="Engine version if connected")
    health_monitoring_enabled: bool = Field(title="Health Monitoring Enabled", description="Whether background health monitoring is active")
    metrics: EngineMetricsSchema = Field(title="Metrics", description="Performance and health metrics")


class ViewportSchema(BaseModel):
    width: int | None = Field(None, ge=1, le=10000, title="Width", description="Viewport width in pixels")
    height: int | None = Field(None, ge=1, le=10000, title="Height", description="Viewport height in pixels")
    device_scale_factor: float | None = Field(None, ge=0.1, le=10.0, title="Device Scale Factor", description="Device pixel ratio of the page")


class RenderRequestSchema(BaseModel):
    """Schema for POST /render and POST /screenshot request bodies"""

    source: str = Field(title="Source", description="Inline HTML, a file:// reference or an http(s):// URL", min_length=1)
    source_type: Literal["auto", "html", "url", "file"] = Field("auto", title="Source Type", description="auto detects the kind of source, html forces inline markup")
    data: dict[str, str | int | float | bool | None] | None = Field(None, title="Template Data", description="Values substituted into {{key}} placeholders")
    selector: str | None = Field(None, title="Selector", description="CSS selector of the element to capture; falls back to #container, then body")
    viewport: ViewportSchema | None = Field(None, title="Viewport", description="Viewport override")
    image_type: Literal["png", "jpeg", "webp"] = Field("png", title="Image Type", description="Output image format")
    quality: int | None = Field(None, ge=0, le=100, title="Quality", description="Quality for jpeg and webp")
    encoding: Literal["base64", "binary"] = Field("base64", title="Encoding", description="base64 returns JSON, binary returns the raw image")
    full_page: bool = Field(False, title="Full Page", description="Capture the whole scrollable page")
    omit_background: bool = Field(False, title="Omit Background", description="Transparent background for png and webp")
    multi_page: bool | int = Field(False, title="Multi Page", description="false, true (automatic page height) or a page height in pixels")
    wait_until: str = Field("networkidle", title="Wait Until", description="load, domcontentloaded, networkidle (networkidle0/networkidle2 accepted)")
    timeout_ms: int | None = Field(None, ge=1, le=300000, title="Timeout (ms)", description="Navigation and selector wait timeout")
    wait_for_selector: str | None = Field(None, title="Wait For Selector", description="Selector that must appear before capturing")
    wait_for_timeout_ms: int | None = Field(None, ge=0, le=60000, title="Delay (ms)", description="Fixed delay before capturing")
    headers: dict[str, str] | None = Field(None, title="Headers", description="Extra HTTP headers sent with every request of the page")
    retry: int = Field(0, ge=0, le=5, title="Retry", description="Additional attempts on a fresh page after a failure")


class RenderResponseSchema(BaseModel):
    """Schema for JSON render responses"""

    status: str = Field(title="Status", description="ok or error")
    data: str | list[str] | None = Field(None, title="Data", description="Base64 image, or a list of base64 images when paginated")
    message: str = Field(title="Message", description="Human readable outcome")
    error_kind: str | None = Field(None, title="Error Kind", description="Machine readable error kind")
    time_ms: float = Field(title="Time (ms)", description="Total time including the wait for a page")
    image_type: str | None = Field(None, title="Image Type", description="Format of the returned image(s)")
    pages: int = Field(0, title="Pages", description="Number of returned images")


class OperationResultSchema(BaseModel):
    """Schema for lifecycle and provisioning operation responses"""

    success: bool = Field(title="Success", description="Whether the operation succeeded")
    message: str = Field(title="Message", description="Human readable outcome")
    error_kind: str | None = Field(None, title="Error Kind", description="Machine readable error kind")
    data: dict | None = Field(None, title="Data", description="Operation specific details")


class InstallRequestSchema(BaseModel):
    """Schema for POST /engine/install request body"""

    version: str | None = Field(None, title="Version", description="Chrome for Testing version, e.g. 131.0.6778.204")
    sources: list[str] | None = Field(None, title="Sources", description="Mirror names (NPMMIRROR, NPMMIRROR_REGISTRY, GOOGLE) or base URLs in priority order")
    install_deps: bool = Field(True, title="Install Dependencies", description="Install Linux system packages first")


class UninstallRequestSchema(BaseModel):
    path: str | None = Field(None, title="Path", description="Directory to remove, inside the configured install path (absolute or relative to it); defaults to the whole install path")


class InstallProgressSchema(BaseModel):
    """Schema for GET /engine/progress"""

    status: str = Field(title="Status", description="idle, installing-deps, downloading, extracting, completed or failed")
    progress: float = Field(title="Progress", description="Overall progress 0-100")
    message: str = Field(title="Message", description="Current step")
    downloaded_bytes: int | None = Field(None, title="Downloaded Bytes", description="Bytes downloaded so far")
    total_bytes: int | None = Field(None, title="Total Bytes", description="Archive size if known")
    speed: str | None = Field(None, title="Speed", description="Download speed, e.g. 4.20 MB/s")
    eta: str | None = Field(None, title="ETA", description="Estimated remaining download time, e.g. 12s")
    error: str | None = Field(None, title="Error", description="Error of a failed install")
    version: str | None = Field(None, title="Version", description="Version being installed")


class ProxySchema(BaseModel):
    server: str | None = Field(None, title="Server", description="Proxy server, e.g. http://proxy.local:3128")
    username: str | None = Field(None, title="Username", description="Proxy user")
    password: str | None = Field(None, title="Password", description="Proxy password; never returned")
    bypass_list: str | None = Field(None, title="Bypass List", description="Hosts that bypass the proxy, comma separated")


class ConfigUpdateSchema(BaseModel):
    """Schema for POST /config; omitted fields keep their current value"""

    mode: Literal["local", "remote"] | None = Field(None, title="Mode", description="local launches the engine, remote attaches over CDP")
    executable_path: str | None = Field(None, title="Executable Path", description="Engine executable for local mode")
    remote_endpoint: str | None = Field(None, title="Remote Endpoint", description="CDP endpoint for remote mode")
    headless: bool | None = Field(None, title="Headless", description="Run a local engine headless")
    launch_args: list[str] | None = Field(None, title="Launch Arguments", description="Replaces the default launch flags")
    proxy: ProxySchema | None = Field(None, title="Proxy", description="Proxy for a local engine")
    max_concurrency: int | None = Field(None, title="Max Concurrency", description="Maximum concurrently leased pages")
    timeout_ms: int | None = Field(None, title="Timeout (ms)", description="Default navigation timeout")
    acquire_timeout: float | None = Field(None, title="Acquire Timeout (s)", description="Default wait for a free page")
    viewport_width: int | None = Field(None, title="Viewport Width", description="Default viewport width")
    viewport_height: int | None = Field(None, title="Viewport Height", description="Default viewport height")
    device_scale_factor: float | None = Field(None, title="Device Scale Factor", description="Default device scale factor")
    health_check_interval: float | None = Field(None, title="Health Check Interval (s)", description="Seconds between health probes")
    health_check_enabled: bool | None = Field(None, title="Health Check Enabled", description="Run the background health loop")
    max_reconnect_attempts: int | None = Field(None, title="Max Reconnect Attempts", description="Reconnect attempts before giving up")
    reconnect_base_delay: float | None = Field(None, title="Reconnect Base Delay (s)", description="Delay before the first reconnect attempt")
    reconnect_max_delay: float | None = Field(None, title="Reconnect Max Delay (s)", description="Upper bound of the reconnect delay")
    disconnect_debounce: float | None = Field(None, title="Disconnect Debounce (s)", description="Settle window after a disconnect")
    install_path: str | None = Field(None, title="Install Path", description="Root directory for provisioned engines")
    debug: bool | None = Field(None, title="Debug", description="Escalate internal state corruption to assertions")
