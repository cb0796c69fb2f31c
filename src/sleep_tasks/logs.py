"""Logging setup and the server-side recent-log buffer."""

import logging
from collections import deque
from datetime import datetime
from typing import Deque

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_BUFFER_SIZE = 100

logger = logging.getLogger("sleep_tasks")
logger.setLevel(logging.INFO)

# Circular buffer of recent log entries, served at /api/logs/recent
log_buffer: Deque[dict] = deque(maxlen=LOG_BUFFER_SIZE)


class LogBufferHandler(logging.Handler):
    """Logging handler that captures records into ``log_buffer``."""

    def emit(self, record: logging.LogRecord):
        try:
            log_buffer.append({
                "timestamp": datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                "level": record.levelname,
                "message": self.format(record),
            })
        except Exception:
            # Never let the logging system raise
            self.handleError(record)


buffer_handler = LogBufferHandler()
buffer_handler.setLevel(logging.DEBUG)
buffer_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))


def install_buffer_handler() -> None:
    """Capture our own, uvicorn's and fastapi's logs into the buffer (idempotent)."""
    for name in ("sleep_tasks", "uvicorn", "fastapi"):
        target = logging.getLogger(name)
        if buffer_handler not in target.handlers:
            target.addHandler(buffer_handler)


def recent_logs(limit: int = 50) -> list[dict]:
    limit = max(0, min(limit, LOG_BUFFER_SIZE))
    if limit == 0:
        return []
    return list(log_buffer)[-limit:]


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
    logger.setLevel(level)
