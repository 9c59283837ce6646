import argparse
import logging
import os
import subprocess
import sys
from datetime import datetime
from pathlib import Path

import uvicorn

from render_service import render_controller


def setup_logging() -> Path:
    """
    Configure logging for the render service with both file and console output.

    - Log level from LOG_LEVEL (defaults to INFO)
    - Timestamped log file in LOG_DIR (defaults to /opt/render-service/logs)
    - Format: timestamp - logger name - log level - message

    The log files are not rotated; a new file is created on each service start.

    Returns:
        Path: The path to the created log file
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "/opt/render-service/logs"))
    log_dir.mkdir(parents=True, exist_ok=True)

    current_time = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_file = log_dir / f"render-service_{current_time}.log"

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    file_handler = logging.FileHandler(log_file, encoding="utf-8", delay=False)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    configured_level = getattr(logging, log_level, logging.INFO)  # Default to INFO if invalid
    root_logger.setLevel(configured_level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    # Third-party libraries with their own loggers follow LOG_LEVEL too
    for logger_name in ["playwright", "httpx", "httpcore", "PIL", "uvicorn"]:
        logging.getLogger(logger_name).setLevel(configured_level)

    root_logger.info("Logging initialized with level: %s", log_level)
    root_logger.info("Log file: %s", log_file)

    for handler in root_logger.handlers:
        handler.flush()

    return log_file


def start_server_single_worker(port: int) -> None:
    uvicorn.run(app=render_controller.app, host="", port=port)


def start_server_multi_worker(port: int, workers: int) -> None:
    """
    Run the service under gunicorn with uvicorn workers.

    Every worker owns its own RenderService, so a local engine is launched once per worker.
    """
    os.environ["PORT"] = str(port)
    os.environ["WORKERS"] = str(workers)
    logging.info("Starting gunicorn with %d workers", workers)
    result = subprocess.run(["gunicorn", "render_service.render_controller:app", "--config", "gunicorn.conf.py"], check=False)
    sys.exit(result.returncode)


def main() -> None:
    """
    Main entry point for the render service.

    Parses command line arguments, initializes logging, and starts the server.
    The service port and worker count can be given as command line arguments;
    the PORT and WORKERS environment variables take precedence over them.
    """
    parser = argparse.ArgumentParser(description="Render engine service")
    parser.add_argument("--port", default=9080, type=int, required=False, help="Service port")
    parser.add_argument("--workers", default=1, type=int, required=False, help="Number of worker processes")
    args = parser.parse_args()

    port = int(os.getenv("PORT", args.port))
    workers = int(os.getenv("WORKERS", args.workers))

    setup_logging()
    logging.info("Render service listening port: %d", port)

    if workers > 1:
        start_server_multi_worker(port, workers)
    else:
        start_server_single_worker(port)


if __name__ == "__main__":
    main()
