"""structlog setup for the reconciler.

Application events and stdlib records (uvicorn, SQLAlchemy, httpx) go through
one processor chain and one stdout handler. Production renders JSON lines,
debug renders the console format. Each line carries the request's
``correlation_id`` when there is one, and payer data is masked before
rendering.
"""

import logging.config
import re

import structlog
from asgi_correlation_id.context import correlation_id

_REDACTED_KEYS = frozenset({"access_token", "authorization", "secret", "signature", "token"})
_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+)")

# Chatty at INFO; only their warnings are kept
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "sqlalchemy.engine")


def add_correlation_id(logger, method, event_dict):
    cid = correlation_id.get(None)
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_sensitive(logger, method, event_dict):
    """Mask credentials and shorten payer emails to ``j***@domain``."""
    for key, value in list(event_dict.items()):
        if key.lower() in _REDACTED_KEYS and value:
            event_dict[key] = "***"
        elif isinstance(value, str) and "@" in value and key != "event":
            event_dict[key] = _EMAIL_RE.sub(r"\1***@\2", value)
    return event_dict


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the shared chain on structlog and the stdlib root logger.

    Must run before modules that call ``structlog.get_logger`` at import time,
    since loggers are cached on first use.
    """
    pre_chain = _pre_chain()
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "reconciler": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": pre_chain,
                "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            },
        },
        "handlers": {
            "stdout": {"class": "logging.StreamHandler", "formatter": "reconciler", "stream": "ext://sys.stdout"},
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
    })

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
