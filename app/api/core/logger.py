import logging
import logging.config
import threading
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(module)s:%(lineno)d - %(message)s"

_span_fields: ContextVar[dict[str, Any]] = ContextVar("span_fields", default={})

_setup_lock = threading.Lock()
_configured = False


class SpanFormatter(logging.Formatter):
    """Appends the fields of the enclosing span(s) to every formatted line."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = getattr(record, "span_fields", None) or _span_fields.get()
        if fields:
            message += " " + " ".join(f"{key}={value}" for key, value in fields.items())
        return message


def build_log_config(level: str = "INFO") -> dict:
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": SpanFormatter,
                "fmt": LOG_FORMAT,
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            }
        },
        "loggers": {
            "uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn.error": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn.access": {"handlers": ["console"], "level": level, "propagate": False},
            "app": {"level": level},
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def setup_logging(level: str = "INFO") -> bool:
    """Configure process-wide logging once.

    Safe to call from many test cases and threads: only the first call
    applies the configuration.

    Returns:
        bool: True if this call configured logging, False if it was already done.
    """
    global _configured
    with _setup_lock:
        if _configured:
            return False
        logging.config.dictConfig(build_log_config(level))
        _configured = True
        return True


def current_span_fields() -> dict[str, Any]:
    return dict(_span_fields.get())


@contextmanager
def log_span(
    name: str, logger: Optional[logging.Logger] = None, **fields: Any
) -> Iterator[dict[str, Any]]:
    """
    Bound a unit of work with start/end log lines and elapsed time.

    Fields passed here are merged over those of any enclosing span, so a
    query span opened inside a request span carries the request's fields too.
    Any record logged inside the block is formatted with the merged fields.

    Usage:
        with log_span("Saving subscriber", subscriber_email=email):
            await session.commit()

    Args:
        name: Human readable name of the unit of work.
        logger: Logger to emit on. Defaults to the ``app`` logger.
        **fields: Identifying fields for the span.

    Yields:
        dict: The merged span fields.
    """
    logger = logger or logging.getLogger("app")
    context = {**_span_fields.get(), **fields}
    token = _span_fields.set(context)
    start = time.perf_counter()
    logger.info(f"[START] {name}", extra={"span_name": name, "span_fields": context})
    outcome = "failed"
    try:
        yield context
        outcome = "completed"
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            f"[END] {name} {outcome} in {latency_ms}ms",
            extra={
                "span_name": name,
                "span_fields": context,
                "span_outcome": outcome,
                "latency_ms": latency_ms,
            },
        )
        _span_fields.reset(token)
