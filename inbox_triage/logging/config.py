"""
Structured JSON logging configuration.

Usage:
    # At app startup (once):
    from inbox_triage.logging.config import setup_logging
    setup_logging()

    # In any module:
    import logging
    logger = logging.getLogger(__name__)
    logger.info("sync.started", extra={"action": "sync.started", "max_results": 10})
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone


# Set per request (middleware) or per sync run (orchestrator) and
# copied into every log line emitted inside that context.
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")
current_user_var: ContextVar[str] = ContextVar("current_user", default="anonymous")
sync_id_var: ContextVar[str] = ContextVar("sync_id", default="-")


class JSONFormatter(logging.Formatter):
    """Formats every log record as a single JSON line."""

    INTERNAL_FIELDS = {
        "name", "msg", "args", "created", "relativeCreated", "exc_info",
        "exc_text", "stack_info", "lineno", "funcName", "pathname",
        "filename", "module", "thread", "threadName", "process",
        "processName", "msecs", "levelname", "levelno", "message",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(),
            "user": current_user_var.get(),
        }

        sync_id = sync_id_var.get()
        if sync_id != "-":
            log["sync_id"] = sync_id

        for key, val in record.__dict__.items():
            if key not in self.INTERNAL_FIELDS and key not in log:
                log[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            log["exception_type"] = record.exc_info[0].__name__
            log["exception_message"] = str(record.exc_info[1])
            log["traceback"] = self.formatException(record.exc_info)

        return json.dumps(log, default=str)


def setup_logging(level: str = "info") -> None:
    """Configure the root logger to output structured JSON to stdout."""
    root = logging.getLogger()
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("httpx", "httpcore", "anthropic", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
