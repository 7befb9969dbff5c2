"""Structured logging for EMRGate.

Every module obtains its logger through ``get_logger(__name__)`` and logs
snake_case events with keyword fields::

    logger.warning("waf_request_blocked", event_id=event_id, path=path)

Output is JSON lines on stdout by default and a colourised console format
when ``JSON_LOGS=false``. Entries carry the ``request_id`` of the request
being served (the WAF event ID) when one is set.

Session credentials never reach the sink: values under token, cookie and
authorization keys are masked by ``mask_credentials`` before rendering.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[Optional[str]] = ContextVar("emrgate_request_id", default=None)

# Event fields whose values are credentials. Matched case-insensitively.
CREDENTIAL_FIELDS: frozenset[str] = frozenset(
    {
        "access_token",
        "refresh_token",
        "accesstoken",
        "refreshtoken",
        "token",
        "authorization",
        "cookie",
        "set-cookie",
        "password",
    }
)

MASK = "***"


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = request_id_var.get()
    if request_id and "request_id" not in event_dict:
        event_dict["request_id"] = request_id
    return event_dict


def mask_credentials(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Replace credential values with ``***``, including inside header dicts."""
    for key, value in list(event_dict.items()):
        if key.lower() in CREDENTIAL_FIELDS and value is not None:
            event_dict[key] = MASK
        elif isinstance(value, dict):
            event_dict[key] = {
                k: (MASK if isinstance(k, str) and k.lower() in CREDENTIAL_FIELDS else v)
                for k, v in value.items()
            }
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """(Re)configure structlog for the process.

    Args:
        log_level:   DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines when True, console rendering when False.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        mask_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "emrgate") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class PerformanceLogger:
    """Time a block and log ``<operation>_completed`` / ``<operation>_failed``.

    Completed operations log at DEBUG, or at WARNING when slower than
    ``threshold_ms``. The WAF wraps each inspection in one.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        threshold_ms: float = 50.0,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.threshold_ms = threshold_ms
        self._started: Optional[float] = None
        self._elapsed: Optional[float] = None

    def __enter__(self) -> "PerformanceLogger":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._elapsed = time.perf_counter() - (self._started or 0.0)
        duration_ms = round(self._elapsed * 1000, 3)

        if exc_type is not None:
            self.logger.error(
                f"{self.operation}_failed",
                duration_ms=duration_ms,
                error_type=exc_type.__name__,
            )
            return

        if duration_ms > self.threshold_ms:
            self.logger.warning(
                f"{self.operation}_slow",
                duration_ms=duration_ms,
                threshold_ms=self.threshold_ms,
            )
        else:
            self.logger.debug(f"{self.operation}_completed", duration_ms=duration_ms)

    @property
    def duration_ms(self) -> float:
        if self._started is None:
            return 0.0
        if self._elapsed is None:
            return (time.perf_counter() - self._started) * 1000
        return self._elapsed * 1000


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def clear_request_id() -> None:
    request_id_var.set(None)


# Defaults at import; main.py reconfigures from DEBUG / LOG_LEVEL / JSON_LOGS.
configure_logging()
