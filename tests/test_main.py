"""Tests for the FastAPI main application factory and lifespan.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - Upload, layer and health routes are registered,
    - The lifespan builds the lifecycle manager and drains it on shutdown.

See Also:
    - geoingest/main.py for the application factory.
"""

from __future__ import annotations

from typing import cast

import pytest
from fastapi import testclient

from geoingest import main
from geoingest.core import config, tasks
from geoingest.db import database
from geoingest.services import uploads as upload_service


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app is not None
    assert app.title == "GeoIngest"
    assert app.version == "0.1.0"


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    app = main.create_app()
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_app_includes_routers() -> None:
    """Test that all API routers are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    assert "/api/uploads" in routes
    assert "/api/uploads/{upload_id}" in routes
    assert "/api/layers" in routes
    assert "/api/layers/{layer_id}" in routes


def test_build_manager_uses_repository_factories(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    uploads = database.InMemoryUploadRepository()
    catalog = database.InMemoryCatalogRepository()
    monkeypatch.setattr(
        database, "get_upload_repository", lambda settings: uploads
    )
    monkeypatch.setattr(
        database, "get_catalog_repository", lambda settings: catalog
    )
    settings = config.Settings(max_concurrent_pipelines=3)
    manager = main.build_manager(settings)
    assert manager.uploads is uploads
    assert manager.catalog is catalog
    assert manager.runner.max_concurrency == 3


def test_lifespan_sets_up_manager(
    monkeypatch: pytest.MonkeyPatch,
    settings: config.Settings,
) -> None:
    drained: list[bool] = []

    class TrackingRunner(tasks.PipelineTaskRunner):
        async def drain(self) -> None:
            drained.append(True)
            await super().drain()

    manager = upload_service.UploadLifecycleManager(
        settings,
        database.InMemoryUploadRepository(),
        database.InMemoryCatalogRepository(),
        TrackingRunner(1),
    )
    monkeypatch.setattr(main, "build_manager", lambda settings: manager)

    app = main.create_app()
    with testclient.TestClient(app) as client:
        assert app.state.manager is manager
        assert client.get("/api/uploads").json() == []
    assert drained == [True]
