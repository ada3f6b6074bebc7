"""Correlation ID middleware for request tracing.

Every request (webhook deliveries included) gets an X-Request-ID that the
structlog chain attaches to each log line as ``correlation_id``.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from fastapi import FastAPI


def setup_correlation_middleware(app: FastAPI) -> None:
    """Echo a caller's X-Request-ID, or generate a UUID when there is none."""
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name="X-Request-ID",
        generator=lambda: str(uuid.uuid4()),
        validator=None,  # Provider request ids are not UUIDs
        transformer=lambda a: a,
    )


__all__ = ["setup_correlation_middleware"]
