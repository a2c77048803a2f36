"""Domain exceptions raised by the shortcode service and its stores.

Routes translate these into HTTP responses using ``status_code``, ``error_code``
and ``message``; nothing below the route layer knows about HTTP.
"""

__all__ = [
    "CodeAlreadyExistsError",
    "GenerationExhaustedError",
    "InvalidCodeFormatError",
    "InvalidURLError",
    "NotFoundError",
    "ShortCodeError",
    "StorageError",
]


class ShortCodeError(Exception):
    """Base exception for all shortcode-specific errors."""

    error_code = "internal_error"
    status_code = 500
    message = "An unexpected error occurred"


class InvalidURLError(ShortCodeError):
    """Raised when the destination URL does not parse or is not http/https."""

    error_code = "invalid_url"
    status_code = 400
    message = "The provided URL is not valid"


class InvalidCodeFormatError(ShortCodeError):
    """Raised when a custom code is not 4-50 alphanumeric characters."""

    error_code = "invalid_code"
    status_code = 400
    message = "The code format is invalid (4-50 alphanumeric characters)"


class CodeAlreadyExistsError(ShortCodeError):
    """Raised when a code is already taken, at check time or by the unique index."""

    error_code = "code_exists"
    status_code = 409
    message = "The code already exists"


class GenerationExhaustedError(ShortCodeError):
    """Raised when every generated candidate collided with an existing code."""

    error_code = "generation_exhausted"
    status_code = 500
    message = "Failed to generate a unique code"


class NotFoundError(ShortCodeError):
    """Raised for missing, expired and soft-deleted codes alike."""

    error_code = "not_found"
    status_code = 404
    message = "Short code not found or expired"


class StorageError(ShortCodeError):
    """Raised when PostgreSQL or Redis fails during a primary operation.

    Examples include connection loss, timeouts and failed statements.
    """

    error_code = "storage_error"
    status_code = 500
    message = "A storage backend failed"
