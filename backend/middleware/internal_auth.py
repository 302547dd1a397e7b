"""
Internal Service Authentication

Mutating reconciliation endpoints are called by trusted back-office
services only. Callers present a shared key:

    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name>   (optional, recorded as the audit actor)

Keys come from settings: INTERNAL_API_KEY plus the comma-separated
INTERNAL_API_KEYS used during rotation.
"""

import secrets
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from config import get_settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"
UNKNOWN_SERVICE = "unknown"


@dataclass(frozen=True)
class InternalService:
    """An authenticated caller. ``name`` becomes the actor of audit events."""
    name: str
    key_suffix: str


def key_suffix(api_key: str) -> str:
    return f"...{api_key[-8:]}"


def validate_internal_key(api_key: Optional[str]) -> bool:
    """Constant-time check against every configured key."""
    if not api_key:
        return False
    # no short-circuit: every key is compared
    matches = [secrets.compare_digest(api_key, key) for key in get_settings().internal_api_keys]
    return any(matches)


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"}
    )


async def require_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency guarding mutating endpoints.

    Raises:
        HTTPException: 503 when no keys are configured, 401 for a missing
            or unknown key
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER) or UNKNOWN_SERVICE

    if not get_settings().internal_api_keys:
        logger.error("Internal API keys not configured - rejecting request")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal authentication not configured"
        )

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise _unauthorized("Missing internal API key")

    if not validate_internal_key(api_key):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: {key_suffix(api_key)}")
        raise _unauthorized("Invalid internal API key")

    return InternalService(name=service_name, key_suffix=key_suffix(api_key))
