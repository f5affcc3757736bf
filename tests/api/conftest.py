"""API test fixtures: minimal apps with the service's error handlers."""

import pytest
from fastapi import FastAPI, HTTPException

from metering.core.exceptions import MeteringError


def override_value(value):
    """Dependency override factory returning a fixed value."""

    async def _override():
        return value

    return _override


@pytest.fixture
def make_app():
    """Build a FastAPI app mounting ``routers`` under /api with the real handlers."""
    from metering.main import http_exception_handler, metering_error_handler

    def _make(*routers, overrides=None) -> FastAPI:
        app = FastAPI()
        app.exception_handler(HTTPException)(http_exception_handler)
        app.exception_handler(MeteringError)(metering_error_handler)
        for router in routers:
            app.include_router(router, prefix="/api")
        for dependency, value in (overrides or {}).items():
            app.dependency_overrides[dependency] = override_value(value)
        return app

    return _make
