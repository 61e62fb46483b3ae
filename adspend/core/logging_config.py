"""
structlog setup for the billing API, scheduler and CLI.

Events are snake_case names with the billing fields as keywords:

    from adspend.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("daily_billing_completed", billing_date="2024-03-14", processed=12, failed=1)

Production renders one JSON object per line (with "logger", "level" and an
ISO "timestamp"), everything else a console line. The threshold comes from
LOG_LEVEL; correlation and customer ids bound in adspend.core.context are
merged into every event.
"""

import logging
import sys
from typing import Any, List, Optional

import structlog

from adspend.core.config import settings

# Libraries whose INFO output drowns the billing events
QUIET_LOGGERS = ("apscheduler", "httpx", "httpcore", "sqlalchemy.engine")


def _log_level() -> int:
    if "pytest" in sys.modules:
        return logging.DEBUG
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO


def _add_logger_name(logger: Any, method_name: str, event_dict: dict) -> dict:
    name = event_dict.pop("logger_name", None) or getattr(logger, "name", None)
    if name:
        event_dict["logger"] = name
    return event_dict


def configure_logging(json_logs: Optional[bool] = None) -> None:
    if json_logs is None:
        json_logs = settings.is_production
    level = _log_level()

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        _add_logger_name,
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.dev.set_exc_info, structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(levelname)s %(name)s %(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Logger for `name` (usually __name__), reported as "logger" in JSON output."""
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


configure_logging()
