"""
Domain exceptions.

Every error raised by the core services derives from FileDropError and
carries the HTTP status code the API layer answers with.
"""


class FileDropError(Exception):
    """Base class for all service errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


class ValidationFailed(FileDropError):
    """Invalid request."""

    status_code = 400


class Unauthorized(FileDropError):
    """Invalid or expired credentials."""

    status_code = 401


class TokenInvalid(Unauthorized):
    """Invalid or expired upload token."""


class Forbidden(FileDropError):
    """Operation not allowed."""

    status_code = 403


class NotFound(FileDropError):
    """Resource not found."""

    status_code = 404


class PayloadTooLarge(FileDropError):
    """File size exceeds allowed limit."""

    status_code = 413


class SizeExceedsPolicy(PayloadTooLarge):
    """Declared size exceeds the maximum upload size."""

    def __init__(self, declared_size: int, max_size: int):
        self.declared_size = declared_size
        self.max_size = max_size
        super().__init__(
            f"File size {declared_size} exceeds maximum allowed size of {max_size} bytes"
        )


class UnsupportedMediaType(FileDropError):
    """File type not allowed."""

    status_code = 415


class RateLimited(FileDropError):
    """Rate limit exceeded."""

    status_code = 429


class Unsupported(FileDropError):
    """Operation not supported by this backend."""

    status_code = 501


class StorageWriteFailed(FileDropError):
    """Failed to save file."""

    status_code = 502


class DeliveryFailed(FileDropError):
    """Webhook delivery failed after exhausting all attempts."""

    status_code = 502
