from __future__ import annotations

from collections.abc import AsyncIterator, Callable

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from obs_todo.config import Settings, get_settings
from obs_todo.main import create_app
from obs_todo.observability.metrics import AppMetrics


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRACING_ENABLED", "false")
    monkeypatch.setenv("APP_VERSION", "9.9.9-test")
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def make_app(settings: Settings) -> Callable[..., FastAPI]:
    def _make(**overrides: object) -> FastAPI:
        return create_app(settings.model_copy(update=overrides) if overrides else settings)

    return _make


@pytest.fixture
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    return make_app()


@pytest.fixture
def app_metrics(app: FastAPI) -> AppMetrics:
    return app.state.metrics


def _client_for(app: FastAPI) -> AsyncClient:
    # Unhandled errors should come back as 500 responses, not raise in the test.
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture
def make_client() -> Callable[[FastAPI], AsyncClient]:
    return _client_for


@pytest.fixture
async def api_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with _client_for(app) as client:
        yield client
