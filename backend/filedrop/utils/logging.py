"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- owner_id
- upload_id
- webhook_id
- delivery_id
- duration_ms

Usage:
    from filedrop.utils.logging import configure_logging, log_upload_ingested

    configure_logging('filedrop-api', 'INFO')
    log_upload_ingested(logger, upload_id='123', owner_id='456', size=1024)
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (filedrop-api or filedrop-worker)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        # Create JSON formatter
        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(levelname)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Create console handler (for docker logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        # Configure root logger
        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    owner_id: Optional[str] = None,
    upload_id: Optional[str] = None,
    webhook_id: Optional[str] = None,
    delivery_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        owner_id: Optional owner ID
        upload_id: Optional upload ID
        webhook_id: Optional webhook ID
        delivery_id: Optional delivery ID
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if owner_id:
        extra["owner_id"] = owner_id
    if upload_id:
        extra["upload_id"] = upload_id
    if webhook_id:
        extra["webhook_id"] = webhook_id
    if delivery_id:
        extra["delivery_id"] = delivery_id
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


def log_event(
    logger: logging.Logger,
    event: str,
    message: str,
    level: int = logging.INFO,
    **kwargs
):
    """
    Log a structured event.

    Args:
        logger: Logger instance
        event: Event name (e.g., 'upload_token_issued')
        message: Log message
        level: Logging level
        **kwargs: Fields accepted by _build_log_extra
    """
    logger.log(level, message, extra=_build_log_extra(event=event, **kwargs))


# Upload event functions

def log_upload_ingested(
    logger: logging.Logger,
    upload_id: str,
    owner_id: str,
    size: int,
    storage_key: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log a successful ingestion that wrote new bytes to storage.

    Args:
        logger: Logger instance
        upload_id: Upload ID (required)
        owner_id: Owner ID (required)
        size: Size in bytes (required)
        storage_key: Optional storage key
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="upload_ingested",
        upload_id=upload_id,
        owner_id=owner_id,
        duration_ms=duration_ms,
        size=size,
        **kwargs
    )
    if storage_key:
        extra["storage_key"] = storage_key

    logger.info(f"Upload ingested: {upload_id}", extra=extra)


def log_upload_deduplicated(
    logger: logging.Logger,
    upload_id: str,
    owner_id: str,
    checksum: str,
    **kwargs
):
    """
    Log an ingestion answered by an existing record.

    Args:
        logger: Logger instance
        upload_id: ID of the existing record (required)
        owner_id: Owner ID (required)
        checksum: Content checksum (required)
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="upload_deduplicated",
        upload_id=upload_id,
        owner_id=owner_id,
        checksum=checksum,
        **kwargs
    )
    logger.info(f"Upload deduplicated: {upload_id}", extra=extra)


# Webhook event functions

def log_webhook_delivery(
    logger: logging.Logger,
    delivery_id: str,
    webhook_id: str,
    status: str,
    attempts: int,
    response_status: Optional[int] = None,
    error: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
):
    """
    Log the outcome of a webhook delivery attempt.

    Successful attempts log at INFO, retries at WARNING and terminal
    failures at ERROR.

    Args:
        logger: Logger instance
        delivery_id: Delivery ID (required)
        webhook_id: Webhook ID (required)
        status: Delivery status after the attempt (required)
        attempts: Attempt count after the attempt (required)
        response_status: Optional HTTP status returned by the endpoint
        error: Optional error message
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="webhook_delivery",
        delivery_id=delivery_id,
        webhook_id=webhook_id,
        duration_ms=duration_ms,
        status=status,
        attempts=attempts,
        **kwargs
    )
    if response_status is not None:
        extra["response_status"] = response_status
    if error:
        extra["error"] = error

    if status == "delivered":
        logger.info(f"Webhook delivered: {delivery_id}", extra=extra)
    elif status == "failed":
        logger.error(
            f"Webhook delivery failed after {attempts} attempts: {delivery_id}",
            extra=extra
        )
    else:
        logger.warning(f"Webhook delivery attempt {attempts} failed: {delivery_id}", extra=extra)


# Entry point used by the API and worker processes
def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
