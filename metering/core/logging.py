"""structlog setup for the metering service.

Our records and library records routed through stdlib logging share one
processor chain. It stamps the request correlation id and masks credential
fields such as stream tokens and Stripe signatures. Production renders JSON;
debug mode renders for the console.
"""

import logging
import logging.config

import structlog
from asgi_correlation_id.context import correlation_id

# Event keys whose values must never reach the log sink
SENSITIVE_KEYS = frozenset({
    "token",
    "authorization",
    "stripe_signature",
    "webhook_secret",
    "api_key",
})

REDACTED = "[redacted]"

# Libraries that are chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn.access": "WARNING",
    "httpx": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "stripe": "WARNING",
}


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(logger, method, event_dict):
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = REDACTED
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain for structlog and the stdlib root logger.

    Must run before any module calls ``structlog.get_logger`` and logs,
    because loggers cache their processors on first use.

    Args:
        log_level: Root log level
        json_logs: JSON lines when True, coloured console output when False
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": level} for name, level in _QUIET_LOGGERS.items()},
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
