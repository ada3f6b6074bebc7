"""API-specific test fixtures.

Requests go through an in-process ASGI transport, so the lifespan never runs.
The ``session_factory`` and ``redis`` fixtures install the globals the routes
read; the provider client and notification dispatcher are overridden with the
fakes from the top-level conftest.
"""

import httpx
import pytest
from fastapi import FastAPI

from app.api.deps import get_notifications
from app.integrations.provider import get_provider_client

ADMIN_TOKEN = "admin-test-token"


@pytest.fixture
def app(settings, session_factory, redis, provider, notifications) -> FastAPI:
    from app.main import create_app

    application = create_app()
    application.dependency_overrides[get_provider_client] = lambda: provider
    application.dependency_overrides[get_notifications] = lambda: notifications
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
