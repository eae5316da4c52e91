import contextvars
import logging
import os
import sys
from typing import Protocol

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler


upload_id_context: contextvars.ContextVar[str] = contextvars.ContextVar("upload_id", default="no-upload-id")


class LoggingConfig(Protocol):
    log_level: str
    loki_enabled: bool
    loki_url: str
    environment: str


class UploadIdFilter(logging.Filter):
    """Logging filter that ensures upload_id is always present in log records.

    Reads upload_id from the contextvar if not already on the record, so the format
    string never fails for log lines emitted outside an upload operation.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "upload_id"):
            record.upload_id = upload_id_context.get()
        return True


def setup_loki_logging(config: LoggingConfig, service_name: str, include_upload_id: bool = True) -> logging.Logger:
    """
    Configure logging with optional Loki handler and upload ID support.

    Args:
        config: Application configuration
        service_name: Name of the service (e.g., "api", "sweeper")
        include_upload_id: Whether to include upload_id in log format (default: True)

    Returns:
        Configured logger instance
    """
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if config.loki_enabled and config.loki_url:
        loki_handler = LokiLoggerHandler(
            url=config.loki_url,
            labels={
                "service": service_name,
                "environment": config.environment,
                "host": os.getenv("HOSTNAME", "unknown"),
            },
            timeout=10,
            compressed=True,
        )
        handlers.append(loki_handler)

    if include_upload_id:
        upload_id_filter = UploadIdFilter()
        for handler in handlers:
            handler.addFilter(upload_id_filter)
        log_format = "%(asctime)s - [%(upload_id)s] - %(name)s - %(levelname)s - %(message)s"
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
    )

    return logging.getLogger(service_name)
