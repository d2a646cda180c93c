"""
Logging configuration with rotation

Sets up structured logging with:
- Console output for development
- Rotating file logs for production
- JSON formatting for log aggregation
- Request logging middleware for the API
"""
import logging
import logging.handlers
import sys
import time
import uuid
from pathlib import Path
from typing import Optional
import json
from datetime import datetime, timezone

# Attributes every LogRecord carries; anything else came in through ``extra``
_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """JSON formatter that keeps ``extra={...}`` fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    app_name: str = "dmarc-pipeline",
    enable_json: bool = False
):
    """
    Configure application logging

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files. If None, only console logging is enabled.
        app_name: Application name for log files
        enable_json: Enable JSON formatting for structured logging
    """
    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    text_format = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    formatter = JSONFormatter() if enable_json else text_format

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        app_log_file = log_path / f"{app_name}.log"
        file_handler = logging.handlers.RotatingFileHandler(
            app_log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        # Error log - only errors and above
        error_handler = logging.handlers.RotatingFileHandler(
            log_path / f"{app_name}-error.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8"
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        root_logger.addHandler(error_handler)

        logging.info(f"File logging enabled: {app_log_file}")

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)

    logging.info(f"Logging configured: level={log_level}, json={enable_json}")


async def log_requests_middleware(request, call_next):
    """Log each HTTP request with a short request id and its duration"""
    request_id = str(uuid.uuid4())[:8]
    request.state.request_id = request_id

    logger = logging.getLogger("dmarc_pipeline.requests")
    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception:
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "duration_ms": round((time.time() - start_time) * 1000, 2)
            },
            exc_info=True
        )
        raise

    logger.info(
        f"{request.method} {request.url.path} - {response.status_code}",
        extra={
            "request_id": request_id,
            "status_code": response.status_code,
            "duration_ms": round((time.time() - start_time) * 1000, 2)
        }
    )
    response.headers["X-Request-ID"] = request_id
    return response
