"""
Utils Package

Provides utility modules for:
- validation_errors: the discriminated error body shared by all API errors
"""

from .validation_errors import (
    error_body,
    raise_invalid_parameter,
    ValidationErrorResponse,
)

__all__ = [
    'error_body',
    'raise_invalid_parameter',
    'ValidationErrorResponse',
]
