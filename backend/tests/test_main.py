"""Tests for the FastAPI main application factory and health checks.

This module validates that:
    - The FastAPI app is correctly instantiated via main.create_app,
    - OpenAPI metadata (title, version) matches the project contract,
    - The datalayer export routes and the health route are registered,
    - The /health endpoint returns the expected response.

See Also:
    - backend/datalayer_export/main.py for the application factory.
"""

from __future__ import annotations

from typing import cast

from fastapi import testclient

from datalayer_export import main


def test_create_app() -> None:
    """Test that create_app returns a configured FastAPI instance."""
    app = main.create_app()
    assert app is not None
    assert app.title == "Datalayer Export"
    assert app.version == "0.1.0"


def test_health_endpoint() -> None:
    """Test the health check endpoint returns ok status."""
    app = main.create_app()
    client = testclient.TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_app_includes_routers() -> None:
    """Test that the export routes are included in the app."""
    app = main.create_app()
    routes: list[str] = [
        cast(str, getattr(route, "path", ""))
        for route in app.routes  # type: ignore[attr-defined]
        if hasattr(route, "path")
    ]
    assert "/health" in routes
    assert (
        "/api/datalayers/{user_id}/export/{incident_id}/{collab_room_id}"
        "/{geometry_type}/{export_format}"
    ) in routes
    assert "/api/datalayers/{user_id}/capabilities/{incident_id}/{export_format}" in routes


def test_lifespan_closes_geoserver_client() -> None:
    """Test that app shutdown releases a client opened during its lifetime."""
    app = main.create_app()
    main.geoserver.get_geoserver_client.cache_clear()
    try:
        with testclient.TestClient(app):
            client = main.geoserver.get_geoserver_client()
            client._connection()
        assert client._client is None
    finally:
        main.geoserver.get_geoserver_client.cache_clear()
