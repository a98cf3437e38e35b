"""Shared fixtures for the datalayer export tests.

Provides isolated settings, an in-memory incident store seeded with one
user, incident and room, and a recording stand-in for GeoServer so no test
needs a database or a running map server.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from datalayer_export.core import config, errors
from datalayer_export.db import database
from datalayer_export.db import models as db_models

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Mapping

SAMPLE_KML = b"""<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
<Document>
<LookAt>
  <longitude>180.0</longitude>
  <latitude>0.0</latitude>
  <altitude>1.5766377413365064E7</altitude>
  <heading>0.0</heading>
  <range>1.2740059922829097E7</range>
</LookAt>
<Placemark><name>marker</name></Placemark>
</Document>
</kml>
"""


class FakeGeoServer:
    """Records every call and serves canned OWS documents."""

    def __init__(self) -> None:
        self.layers: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.reject: set[str] = set()
        self.probe_error: errors.ExportError | None = None
        self.documents: dict[str, bytes] = {
            "kml": SAMPLE_KML,
            "SHAPE-ZIP": b"PK\x03\x04shape",
            "application/json": b'{"type": "FeatureCollection", "features": []}',
            "WMS": b"<WMT_MS_Capabilities/>",
            "WFS": b"<wfs:WFS_Capabilities/>",
        }

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _step(self, name: str, *args: Any) -> bool:
        self.calls.append((name, args))
        return name not in self.reject

    def get_layer(self, layer_name: str) -> db_models.LayerDescriptor | None:
        self.calls.append(("get_layer", (layer_name,)))
        if self.probe_error is not None:
            raise self.probe_error
        if layer_name not in self.layers:
            return None
        return db_models.LayerDescriptor(layer_name=layer_name, workspace="nics")

    def add_feature_type_from_sql(self, *args: Any) -> bool:
        ok = self._step("add_feature_type_from_sql", *args)
        if ok:
            self.layers.add(args[2])
        return ok

    def set_layer_style(self, *args: Any) -> bool:
        return self._step("set_layer_style", *args)

    def set_feature_type_bounds(self, *args: Any) -> bool:
        return self._step("set_feature_type_bounds", *args)

    def set_feature_type_enabled(self, *args: Any) -> bool:
        return self._step("set_feature_type_enabled", *args)

    def set_layer_enabled(self, *args: Any) -> bool:
        return self._step("set_layer_enabled", *args)

    def delete_feature_type(self, *args: Any) -> bool:
        self.layers.discard(args[2])
        return self._step("delete_feature_type", *args)

    def fetch(self, url: str, params: Mapping[str, str] | None = None) -> bytes:
        self.calls.append(("fetch", (url, dict(params or {}))))
        if params is None:
            key = "kml"
        elif params.get("request") == "GetCapabilities":
            key = params["service"]
        else:
            key = params["outputFormat"]
        return self.documents[key]


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    """Settings pointing at a fake GeoServer and a temp symbology dir."""
    symbology = tmp_path / "symbology"
    symbology.mkdir()
    return config.Settings(
        mapserver_url="http://geoserver.test/geoserver",
        workspace_name="nics",
        collabroom_store="nics.collabroom.ds",
        symbology_path=symbology,
        symbology_host="nics.example.org",
        incident_map_name="IncidentMap",
    )


@pytest.fixture
def fake_geoserver() -> FakeGeoServer:
    return FakeGeoServer()


@pytest.fixture
def repo() -> database.InMemoryDatalayerRepository:
    """Store with user ``jdoe`` (7) allowed in room 12 of incident 3."""
    repository = database.InMemoryDatalayerRepository()
    repository.add_user("jdoe", 7)
    repository.add_user("mallory", 5)
    repository.add_incident(
        db_models.Incident(
            incident_id=3,
            name="Fire Ops",
            incident_type_names=("Fire", "Flood"),
        )
    )
    repository.add_collab_room(12, "Planning Room")
    repository.add_collab_room(20, "Fire Ops-IncidentMap")
    repository.add_collab_room(30, "Command Staff")
    repository.grant(7, [12])
    return repository
