"""API endpoint tests for the datalayer export endpoints.

This module exercises the full request path through FastAPI:
    - A permitted export that provisions a missing layer (200 attachment),
    - Identity mismatch, invalid geometry type and missing permission
      (400/400/401 with ``Export_Error.txt``),
    - A failing incident lookup that still yields a named export,
    - Disabled formats and provisioning failures (500),
    - WMS/WFS capability downloads, which do not consult room permissions.

The repository, GeoServer client and settings are injected using
dependency overrides so no database or map server is needed.

See Also:
    - backend/datalayer_export/api/datalayers.py for the endpoints,
    - backend/datalayer_export/services/pipeline.py for the stage order.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any
from urllib import parse

import pytest
from fastapi import testclient

from datalayer_export import main
from datalayer_export.api import datalayers
from datalayer_export.core import config, errors
from datalayer_export.db import database
from datalayer_export.db import models as db_models

JDOE = {"X-Remote-User": "jdoe"}


@pytest.fixture
def client(
    settings: config.Settings,
    repo: database.InMemoryDatalayerRepository,
    fake_geoserver: Any,
) -> Iterator[testclient.TestClient]:
    app = main.create_app()
    app.dependency_overrides[config.get_settings] = lambda: settings
    app.dependency_overrides[datalayers._get_repo] = lambda: repo
    app.dependency_overrides[datalayers._get_geoserver] = lambda: fake_geoserver
    try:
        yield testclient.TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _filename(response: Any) -> str:
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment; ")
    return disposition.split('filename="', 1)[1].rstrip('"')


def test_export_kml_provisions_layer(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test a first export of a room's points as KML."""
    response = client.get(
        "/api/datalayers/7/export/3/12/point/kml-static",
        headers=JDOE,
        params={"latitude": 34.05, "longitude": -118.25},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/octet-stream"
    filename = _filename(response)
    assert filename.startswith("NICS-Fire_Ops-Planning_Room-")
    assert filename.endswith(".kml")
    assert b"<latitude>34.05</latitude>" in response.content
    assert fake_geoserver.call_names == [
        "get_layer",
        "add_feature_type_from_sql",
        "set_layer_style",
        "set_feature_type_bounds",
        "set_feature_type_enabled",
        "set_layer_enabled",
        "fetch",
    ]


def test_export_existing_layer_skips_provisioning(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that an already published layer is exported directly."""
    fake_geoserver.layers.add("R12")

    response = client.get("/api/datalayers/7/export/3/12/all/shapefile", headers=JDOE)

    assert response.status_code == 200
    assert _filename(response).endswith(".zip")
    assert fake_geoserver.call_names == ["get_layer", "fetch"]


def test_export_identity_mismatch(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that a user cannot export under another user id."""
    response = client.get(
        "/api/datalayers/9/export/3/12/point/kml-static",
        headers={"X-Remote-User": "mallory"},
    )

    assert response.status_code == 400
    assert _filename(response) == "Export_Error.txt"
    assert "permission" in response.text
    assert fake_geoserver.calls == []


def test_export_without_session_user(client: testclient.TestClient) -> None:
    """Test that a request without a remote user is refused."""
    response = client.get("/api/datalayers/7/export/3/12/point/kml-static")
    assert response.status_code == 400
    assert response.text == errors.PERMISSION_ERROR


def test_export_invalid_geometry_type(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that an unknown geometry type never reaches GeoServer."""
    response = client.get(
        "/api/datalayers/7/export/3/12/hexagonal/kml-static", headers=JDOE
    )

    assert response.status_code == 400
    assert response.text == errors.INVALID_TYPE_ERROR
    assert fake_geoserver.calls == []


def test_export_permission_denied(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that a room without a grant is refused."""
    response = client.get("/api/datalayers/7/export/3/30/all/geojson", headers=JDOE)

    assert response.status_code == 401
    assert response.text == errors.PERMISSION_ERROR
    assert fake_geoserver.calls == []


def test_export_incident_lookup_failure_still_exports(
    client: testclient.TestClient,
    repo: database.InMemoryDatalayerRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a broken incident lookup only blanks the incident name."""

    def broken(_incident_id: int) -> None:
        raise RuntimeError("incident table locked")

    monkeypatch.setattr(repo, "get_incident", broken)

    response = client.get("/api/datalayers/7/export/3/12/line/geojson", headers=JDOE)

    assert response.status_code == 200
    assert _filename(response).startswith("NICS--Planning_Room-")
    assert _filename(response).endswith(".geojson")


def test_export_dynamic_kml_is_disabled(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that the network link KML format is refused after provisioning."""
    response = client.get(
        "/api/datalayers/7/export/3/12/point/kml-dynamic", headers=JDOE
    )

    assert response.status_code == 500
    assert _filename(response) == "Export_Error.txt"
    assert response.text == errors.TYPE_ERROR + "kml-dynamic"
    assert "fetch" not in fake_geoserver.call_names


def test_export_provisioning_failure(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that a rejected provisioning step gives a 500 diagnostic."""
    fake_geoserver.reject.add("set_layer_style")

    response = client.get("/api/datalayers/7/export/3/12/polygon/shapefile", headers=JDOE)

    assert response.status_code == 500
    assert response.text == (
        f"{errors.EXPORT_ERROR} (layer R12_polygon, format shapefile)"
    )
    assert fake_geoserver.call_names[-1] == "delete_feature_type"


def test_export_probe_failure(
    client: testclient.TestClient, fake_geoserver: Any
) -> None:
    """Test that an unreachable GeoServer gives a 500 diagnostic."""
    fake_geoserver.probe_error = errors.GeoServerError("connection refused")

    response = client.get("/api/datalayers/7/export/3/12/point/geojson", headers=JDOE)

    assert response.status_code == 500
    assert "layer R12_point" in response.text
    assert fake_geoserver.call_names == ["get_layer"]


def test_export_user_lookup_failure_is_mismatch(
    client: testclient.TestClient,
    repo: database.InMemoryDatalayerRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that an unresolvable session user is treated as a mismatch."""

    def broken(_username: str) -> int:
        raise RuntimeError("user table locked")

    monkeypatch.setattr(repo, "get_user_id", broken)

    response = client.get("/api/datalayers/7/export/3/12/point/geojson", headers=JDOE)
    assert response.status_code == 400


@pytest.mark.parametrize(
    ("export_format", "body"),
    [
        ("wms-capabilities", b"<WMT_MS_Capabilities/>"),
        ("wfs-capabilities", b"<wfs:WFS_Capabilities/>"),
    ],
)
def test_capabilities_ignore_room_permissions(
    client: testclient.TestClient, export_format: str, body: bytes
) -> None:
    """Test that capability documents are served without a permission check.

    User 5 holds no grant in incident 3 and sends no session header; the
    document is returned all the same.
    """
    response = client.get(f"/api/datalayers/5/capabilities/3/{export_format}")

    assert response.status_code == 200
    assert response.content == body
    service = export_format.split("-")[0].upper()
    assert _filename(response) == f"NICS-Incident3-{service}-GetCapabilities.xml"


def test_capabilities_unsupported_format(client: testclient.TestClient) -> None:
    """Test that layer formats are not served on the capabilities path."""
    response = client.get("/api/datalayers/7/capabilities/3/kml-static")

    assert response.status_code == 500
    assert response.text == errors.TYPE_ERROR + "kml-static"


def test_content_disposition_plain_ascii() -> None:
    """Test that ASCII names are sent unchanged without an extended parameter."""
    value = datalayers.content_disposition("NICS-Fire_Ops-Planning_Room.kml")
    assert value == 'attachment; filename="NICS-Fire_Ops-Planning_Room.kml"'


def test_content_disposition_escapes_unsafe_names() -> None:
    """Test the ASCII fallback and the RFC 5987 parameter."""
    value = datalayers.content_disposition('NICS-Op_"Red"-Штаб.kml')
    assert value == (
        'attachment; filename="NICS-Op__Red_-____.kml"; '
        "filename*=UTF-8''NICS-Op_%22Red%22-%D0%A8%D1%82%D0%B0%D0%B1.kml"
    )
    value.encode("latin-1")


def test_export_non_latin_room_name(
    client: testclient.TestClient,
    repo: database.InMemoryDatalayerRepository,
) -> None:
    """Test that a Cyrillic room name still yields a downloadable file."""
    repo.add_collab_room(12, "Штаб планирования")

    response = client.get("/api/datalayers/7/export/3/12/point/geojson", headers=JDOE)

    assert response.status_code == 200
    disposition = response.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="NICS-Fire_Ops-____')
    encoded = parse.quote("NICS-Fire_Ops-Штаб_планирования-", safe="")
    assert f"filename*=UTF-8''{encoded}" in disposition
    assert disposition.endswith(".geojson")


def test_export_quoted_incident_name(
    client: testclient.TestClient,
    repo: database.InMemoryDatalayerRepository,
) -> None:
    """Test that quotes in a name cannot break the header."""
    repo.add_incident(db_models.Incident(incident_id=3, name='Op "Red"'))

    response = client.get("/api/datalayers/7/export/3/12/point/geojson", headers=JDOE)

    assert response.status_code == 200
    disposition = response.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="NICS-Op__Red_-Planning_Room-')
    assert disposition.count('"') == 2
    assert "filename*=UTF-8''NICS-Op_%22Red%22-Planning_Room-" in disposition
