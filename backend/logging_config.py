"""
Reconciliation Engine - Structured JSON Logging

JSON lines for log aggregation in production, plain text locally.

Request context (request id, account id, item id) lives in context
variables, so concurrent requests on one event loop never mix their
values. Audit events (``extra={"event": ...}``) are lifted to the top
level of the JSON document so they can be queried directly.
"""

import logging
import json
import sys
import os
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ("request_id", "account_id", "item_id")

_context: Dict[str, ContextVar] = {
    name: ContextVar(name, default=None) for name in CONTEXT_FIELDS
}

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, service_name: str = "reconciliation-engine"):
        super().__init__()
        self.service_name = service_name
        self.environment = os.environ.get("ENVIRONMENT", "development")
        self.hostname = os.environ.get("HOSTNAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        extra = {
            key: value for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS
        }
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
            "hostname": self.hostname,
            "context": {name: getattr(record, name, None) for name in CONTEXT_FIELDS},
        }

        event = extra.pop("event", None)
        if event:
            log_data["event"] = event

        if record.levelno >= logging.WARNING:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        if extra:
            log_data["extra"] = extra

        return json.dumps(log_data, default=str)


class RequestContextFilter(logging.Filter):
    """
    Stamps the current request context onto each record. Values passed
    explicitly through ``extra`` are kept.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _context.items():
            if getattr(record, name, None) is None:
                setattr(record, name, var.get())
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    service_name: str = "reconciliation-engine"
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        service_name: Service name for log aggregation

    Returns:
        Configured root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(service_name=service_name))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
        ))
    handler.addFilter(RequestContextFilter())
    root_logger.addHandler(handler)

    # Suppress noisy loggers
    for noisy in ("uvicorn.access", "httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return root_logger


def set_request_context(
    request_id: Optional[str] = None,
    account_id: Optional[str] = None,
    item_id: Optional[str] = None
):
    """Set request context for logging. None leaves a field unchanged."""
    values = {"request_id": request_id, "account_id": account_id, "item_id": item_id}
    for name, value in values.items():
        if value is not None:
            _context[name].set(value)


def clear_request_context():
    for var in _context.values():
        var.set(None)


def get_request_context() -> Dict[str, Optional[str]]:
    return {name: var.get() for name, var in _context.items()}


def get_request_id() -> Optional[str]:
    return _context["request_id"].get()
