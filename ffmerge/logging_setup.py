import atexit
import io
import logging
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Optional

import structlog


REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

_configured = False


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging infrastructure
        record.request_id = REQUEST_ID_CTX.get(None) or "-"
        return True


def configure_logging(level: str = "INFO", logs_dir: Optional[Path] = None) -> None:
    """Install console (and optional file) handlers plus the structlog JSON pipeline.

    Safe to call more than once; only the first call installs handlers.
    """
    global _configured
    if _configured:
        return
    _configured = True

    try:
        sys.stdout.reconfigure(line_buffering=True)
    except (AttributeError, io.UnsupportedOperation):
        pass

    numeric_level = logging.getLevelName(level)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    request_id_filter = RequestIdFilter()
    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.addFilter(request_id_filter)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers.append(console_handler)

    if logs_dir is not None:
        file_stream = open(logs_dir / "application.log", "a", encoding="utf-8", buffering=1)
        atexit.register(file_stream.close)
        file_handler = logging.StreamHandler(file_stream)
        file_handler.setLevel(numeric_level)
        file_handler.addFilter(request_id_filter)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)
        logging.getLogger("uvicorn").addHandler(file_handler)
        logging.getLogger("uvicorn.access").addHandler(file_handler)

    logging.basicConfig(level=numeric_level, handlers=handlers)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def flush_logs() -> None:
    """Force flush all log handlers."""
    for handler in logging.getLogger().handlers:
        handler.flush()
