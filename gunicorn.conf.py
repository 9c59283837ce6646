"""
Gunicorn configuration for the render service.

Environment Variables:
    WORKERS: Number of worker processes (default: 1)
    WORKER_TIMEOUT: Seconds a worker may spend on one request (default: 120)
    GRACEFUL_TIMEOUT: Seconds to finish in-flight renders on shutdown (default: 30)
    KEEP_ALIVE: Keep-alive timeout in seconds (default: 5)
    PORT: Service port (default: 9080)
    LOG_LEVEL: Log level (default: INFO)
    ENGINE_MODE: local or remote, only used for the startup log

Notes:
    - Every worker owns one RenderService: in local mode that means one engine
      process per worker, in remote mode one CDP connection per worker
    - MAX_CONCURRENT_RENDERS applies per worker
    - Preloading stays disabled so no engine connection is shared across a fork
"""

import os
from typing import Any


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


bind = f"0.0.0.0:{_env_int('PORT', 9080)}"

workers = _env_int("WORKERS", 1)
worker_class = "uvicorn.workers.UvicornWorker"

timeout = _env_int("WORKER_TIMEOUT", 120)
graceful_timeout = _env_int("GRACEFUL_TIMEOUT", 30)
keepalive = _env_int("KEEP_ALIVE", 5)

loglevel = os.getenv("LOG_LEVEL", "INFO").lower()
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'

proc_name = "render-service"

daemon = False
pidfile = None
umask = 0
user = None
group = None
tmp_upload_dir = None

# TLS is terminated by a reverse proxy
keyfile = None
certfile = None

preload_app = False


def on_starting(server: Any) -> None:
    mode = os.getenv("ENGINE_MODE") or ("remote" if os.getenv("ENGINE_REMOTE_ENDPOINT") else "local")
    server.log.info("Starting Gunicorn with %d worker(s), engine mode: %s", workers, mode)
    if mode == "local" and workers > 1:
        server.log.info("Each worker launches its own engine process")


def when_ready(server: Any) -> None:
    server.log.info("Gunicorn is ready. Listening on: %s", bind)


def post_fork(server: Any, worker: Any) -> None:
    server.log.info("Worker %s spawned (PID: %s)", worker.age, worker.pid)


def worker_int(worker: Any) -> None:
    worker.log.info("Worker %s: received SIGINT/SIGQUIT, releasing engine", worker.pid)


def worker_abort(worker: Any) -> None:
    worker.log.warning("Worker %s: received SIGABRT, engine may be left running", worker.pid)


def worker_exit(server: Any, worker: Any) -> None:
    server.log.info("Worker %s exited", worker.pid)


def on_exit(server: Any) -> None:
    server.log.info("Shutting down: master process exiting")
