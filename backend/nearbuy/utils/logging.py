# /nearbuy/utils/logging.py

import logging
import sys
import structlog
from nearbuy.config.settings import settings
from nearbuy.services.security_service import mask_phone

# This utility sets up structured logging (JSON format in production)
# for consistent and machine-readable logs across the pipeline.

PHONE_FIELDS = ("phone", "from_number", "recipient", "recipient_id", "to")


def mask_phone_fields(logger, method_name, event_dict):
    """Masks phone numbers passed as structured fields."""
    for field in PHONE_FIELDS:
        if event_dict.get(field):
            event_dict[field] = mask_phone(event_dict[field])
    return event_dict


def setup_logging():
    """
    Configures structured logging using structlog, properly integrated
    with Python's standard logging to work with Uvicorn and the worker process.
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_phone_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.environment == "development":
        final_processor = structlog.dev.ConsoleRenderer()
    else:
        final_processor = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=final_processor,
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(logging.INFO)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
