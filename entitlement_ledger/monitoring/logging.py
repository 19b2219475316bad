"""
Structured logging configuration.

Every process that serves the ledger (the console entry point, each uvicorn
worker and any ASGI server importing ``create_app``) configures the same
pipeline: structlog events rendered as JSON through python-json-logger.
"""
import enum
import logging
import sys
import uuid
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from entitlement_ledger.config import Settings, get_settings

Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]


def app_context(settings: Settings) -> Processor:
    """Processor stamping the service name and environment on every event."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def plain_identifiers(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Render record ids and status enums as their plain values.

    Settlement and payout ids are UUIDs and statuses are str enums; log
    queries match on ``"completed"``, not ``"SettlementStatus.COMPLETED"``.
    """
    for key, value in event_dict.items():
        if isinstance(value, uuid.UUID):
            event_dict[key] = str(value)
        elif isinstance(value, enum.Enum):
            event_dict[key] = value.value
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root logger for JSON output.

    Safe to call more than once; the root handlers are replaced each time.
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            plain_identifiers,
            app_context(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    # SQL echo and the sqlite driver are noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
