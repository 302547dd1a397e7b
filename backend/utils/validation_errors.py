"""
Structured Validation Error Utilities

Every error leaving the API has the same discriminated shape, whether it
comes from the engine, from request validation or from an HTTP guard:

{
    "error": {
        "kind": "OverAllocation" | "ValidationError" | "InvalidParameter" | ...,
        "message": "human readable text",
        "details": {...}
    }
}
"""

from fastapi import HTTPException, status
from fastapi.exceptions import RequestValidationError
from typing import Optional, Any, Dict

VALIDATION_ERROR = "ValidationError"
INVALID_PARAMETER = "InvalidParameter"
HTTP_ERROR = "HTTPError"


def error_body(kind: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": {
            "kind": kind,
            "message": message,
            "details": details or {}
        }
    }


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)

        Returns:
            Error dict (the inner part of the body)
        """
        details = {"parameter": parameter}
        if value is not None:
            details["received_value"] = str(value)[:100]  # Truncate for safety
        return error_body(INVALID_PARAMETER, message, details)["error"]

    @staticmethod
    def from_request_validation(exc: RequestValidationError) -> dict:
        """
        Convert FastAPI's request validation failure into an error body.

        JSON floats sent for amounts end up here: amount fields only
        accept strings.
        """
        errors = [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "message": error.get("msg", ""),
                "type": error.get("type", "")
            }
            for error in exc.errors()
        ]
        first = errors[0] if errors else None
        message = "Request validation failed"
        if first:
            message = f"{'.'.join(first['loc'])}: {first['message']}"
        return error_body(VALIDATION_ERROR, message, {"errors": errors})

    @staticmethod
    def from_http_exception(exc: HTTPException) -> dict:
        if isinstance(exc.detail, dict) and "kind" in exc.detail:
            return {"error": exc.detail}
        return error_body(HTTP_ERROR, str(exc.detail), {"status_code": exc.status_code})


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Args:
        parameter: Name of the invalid parameter
        message: Description of the validation error
        value: The invalid value (optional)

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )
