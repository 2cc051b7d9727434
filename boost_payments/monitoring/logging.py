"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Request, transaction and idempotency
identifiers travel in contextvars, so every event logged while handling one
request or one unit of work carries them without passing them around.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from boost_payments.config import get_settings

# Event keys whose values never reach the log output
SENSITIVE_KEYS = frozenset(
    {
        "x_signature",
        "signature",
        "billplz_api_key",
        "billplz_x_signature_key",
        "authorization",
    }
)
REDACTED = "[redacted]"


@contextmanager
def log_context(**values: Optional[Any]) -> Iterator[None]:
    """
    Bind identifiers to the logging context for the duration of a block.

    None values are skipped. Tasks created inside the block copy the context
    and keep the bindings after the block exits.

    Args:
        **values: Identifiers such as transaction_id or idempotency_key
    """
    bound = {key: value for key, value in values.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Replace the values of signature and credential fields."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Add application context to log events.

    Args:
        logger: Logger instance
        method_name: Log method name
        event_dict: Event dictionary

    Returns:
        dict[str, Any]: Enhanced event dictionary
    """
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    if settings.signature_test_mode:
        event_dict["signature_test_mode"] = True
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Request, transaction and idempotency IDs via contextvars
    - Redaction of signatures and gateway credentials
    """
    settings = get_settings()

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
            redact_secrets,
            add_app_context,
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
            "%(timestamp)s %(level)s %(name)s %(message)s",
            rename_fields={"timestamp": "@timestamp", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    # Gateway calls are logged by BillplzClient; keep the transport quiet
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        signature_test_mode=settings.signature_test_mode,
    )
