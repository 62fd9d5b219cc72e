import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from facesearch.core.config import settings

# --- Logging Configuration ---

LOG_DIR      = Path(settings.LOG_DIR)
LOG_FILE     = LOG_DIR / "app.log"
LOG_LEVEL    = settings.LOG_LEVEL.upper()
ENVIRONMENT  = settings.ENVIRONMENT

LOG_MAX_BYTES    = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Extras that request handlers attach through `extra={...}`
CONTEXT_FIELDS = ("session_id", "client_ip", "endpoint", "duration_ms")


class DevFormatter(logging.Formatter):

    LEVEL_COLORS = {
        "DEBUG"    : "\033[94m",   # BLUE
        "INFO"     : "\033[92m",   # GREEN
        "WARNING"  : "\033[93m",   # YELLOW
        "ERROR"    : "\033[91m",   # RED
        "CRITICAL" : "\033[95m",   # MAGENTA
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:

        color     = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        level     = f"{color}{record.levelname:<8}{self.RESET}"
        name      = record.name[:40]

        message = record.getMessage()

        context = [
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if hasattr(record, field)
        ]
        if context:
            message += "  [" + " ".join(context) + "]"

        # Exception goes on the following lines
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return f"{timestamp} | {level} | {name:<40} | {message}"


class JSONFormatter(logging.Formatter):

    """
    Formatter for PRODUCTION, one JSON line per event so log
    aggregators can query individual fields.

    Example line:
    {
        "timestamp": "2026-02-25T10:32:11.123Z",
        "level": "INFO",
        "logger": "facesearch.services.search_service",
        "message": "Search finished",
        "environment": "production",
        "service": "facesearch-backend",
        "session_id": "q3Yk..."
    }
    """

    def format(self, record: logging.LogRecord) -> str:

        log_entry: dict[str, Any] = {
            "timestamp"   : datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level"       : record.levelname,
            "logger"      : record.name,
            "message"     : record.getMessage(),
            "environment" : ENVIRONMENT,
            "service"     : "facesearch-backend",
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


# Main SetUp

def setup_logging() -> None:

    """
    Initialize the application's logging system.

    It must be called only ONCE in the lifespan of main.py before the
    embedding models are initialized.

    Configures two handlers:

    - StreamHandler: stdout -> docker compose logs

    - RotatingFileHandler: LOG_DIR/app.log -> volume on the host machine
    """

    formatter = JSONFormatter() if ENVIRONMENT == "production" else DevFormatter()

    numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)

    # --- Handler 1: stdout ---
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(numeric_level)
    stream_handler.setFormatter(formatter)

    # --- Handler 2: rotating file ---
    file_error = None
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename    = LOG_FILE,
            maxBytes    = LOG_MAX_BYTES,
            backupCount = LOG_BACKUP_COUNT,
            encoding    = "utf-8"
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        handlers = [stream_handler, file_handler]
    except PermissionError as e:
        # Volume not mounted correctly: keep going with stdout only
        handlers = [stream_handler]
        file_error = e

    logging.basicConfig(
        level    = numeric_level,
        handlers = handlers,
        force    = True   # uvicorn installs its handlers first
    )

    # Silence noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)
    logging.getLogger("playwright").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)

    if file_error is not None:
        logger.warning(
            f"Could not create log file at {LOG_FILE} ({file_error}). "
            f"Continuing with stdout only."
        )

    logger.info(
        f"Logging initialized. "
        f"env={ENVIRONMENT}  level={LOG_LEVEL}  "
        f"file={LOG_FILE}"
    )


def get_logger(name: str) -> logging.Logger:
    """
    Returns a logger named after the calling module.
    """
    return logging.getLogger(name)
