"""
Reconciliation Engine - Sentry Integration

Error tracking for unexpected failures only. Engine errors
(ReconciliationError: over-allocation, conflicts, bad transitions...)
are answers to the caller, not incidents, and are dropped before
sending.
"""

import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from logging_config import get_request_context
from reconciliation.errors import ReconciliationError, ProviderUnavailable

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Substrings of keys whose values never leave the process
SENSITIVE_KEYS = (
    "password", "secret", "token", "authorization", "cookie",
    "api_key", "api-key", "database_url",
)

_enabled = False


def init_sentry(
    dsn: str,
    environment: str,
    release: Optional[str] = None,
    traces_sample_rate: float = 0.0,
) -> bool:
    """
    Start the Sentry client.

    Args:
        dsn: Project DSN; nothing happens when empty
        environment: Deployment environment tag
        release: API version reported with each event
        traces_sample_rate: Fraction of requests traced

    Returns:
        True once the client is running
    """
    global _enabled

    if not dsn:
        logger.info("SENTRY_DSN not set, error tracking disabled")
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            traces_sample_rate=traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            send_default_pii=False,
            before_send=before_send,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False

    _enabled = True
    logger.info(f"Sentry enabled ({environment})")
    return True


def redact(value: Any) -> Any:
    """Recursively replace values stored under sensitive keys."""
    if isinstance(value, dict):
        return {
            key: REDACTED if any(s in str(key).lower() for s in SENSITIVE_KEYS) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def is_expected_error(hint: Dict[str, Any]) -> bool:
    """
    Engine errors are expected outcomes, except an unreachable ledger
    which is an operational incident.
    """
    exc_info = hint.get("exc_info") if hint else None
    if not exc_info:
        return False
    error = exc_info[1]
    return isinstance(error, ReconciliationError) and not isinstance(error, ProviderUnavailable)


def before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if is_expected_error(hint):
        return None

    request = event.get("request")
    if request:
        for part in ("headers", "data", "cookies"):
            if part in request:
                request[part] = redact(request[part])
    if "extra" in event:
        event["extra"] = redact(event["extra"])

    tags = event.setdefault("tags", {})
    for key, value in get_request_context().items():
        if value is not None:
            tags.setdefault(key, value)
    return event


def capture_exception(exception: Exception, **context) -> Optional[str]:
    """
    Report an unexpected exception with request context attached.

    Returns the event ID, or None when Sentry is disabled or the event
    was dropped.
    """
    if not _enabled:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                scope.set_extra(key, value)
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"Failed to capture exception to Sentry: {e}")
        return None


def set_tag(key: str, value: str):
    if _enabled:
        sentry_sdk.set_tag(key, value)
