"""Request correlation IDs.

Every response carries ``X-Request-ID``: echoed from the request when the
client sent one, generated otherwise. The same ID is attached to every log
line through ``metering.core.logging.add_correlation_id``.
"""

import uuid

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

REQUEST_ID_HEADER = "X-Request-ID"


def setup_correlation_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        generator=lambda: str(uuid.uuid4()),
        validator=None,
        transformer=lambda a: a,
    )


def get_correlation_id() -> str | None:
    """Current request's correlation ID, or None outside a request."""
    return correlation_id.get(None)


__all__ = ["REQUEST_ID_HEADER", "get_correlation_id", "setup_correlation_middleware"]
