import sys
import structlog
import logging
from costsync.shared.core.config import get_settings

SENSITIVE_FIELDS = {
    "password", "token", "access_token", "secret", "client_secret",
    "api_key", "admin_key", "authorization", "encryption_key"
}


def secret_redactor(logger, method_name, event_dict):
    """
    Redact credentials from log events before rendering.
    Cloud secrets and bearer tokens must never reach telemetry sinks.
    """
    for field in SENSITIVE_FIELDS:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in SENSITIVE_FIELDS:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        secret_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route library logs (uvicorn, celery, httpx) through stdout as well
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
