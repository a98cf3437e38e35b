"""Data models for the datalayer export pipeline.

This module defines the request-scoped structures that flow through the
export pipeline: the closed enumerations for geometry types and export
formats, the incoming export request, the description of a GeoServer layer,
the metadata gathered for naming an export, and the artifact finally handed
back to the HTTP boundary.

Example:
    Parsing user input into the closed enumerations:
        >>> from datalayer_export.db.models import ExportFormat, GeometryType
        >>> GeometryType.parse("Polygon")
        <GeometryType.POLYGON: 'polygon'>
        >>> GeometryType.parse("hexagonal") is None
        True
        >>> ExportFormat.parse("geojson")
        <ExportFormat.GEOJSON: 'geojson'>
"""

from __future__ import annotations

import dataclasses
import datetime
import enum

BBox = tuple[float, float, float, float]

ERROR_FILENAME = "Export_Error"
TEXT_MEDIA_TYPE = "text/plain"


class GeometryType(enum.StrEnum):
    """Feature subsets a room layer can be built for."""

    POINT = "point"
    LINE = "line"
    POLYGON = "polygon"
    ALL = "all"

    @classmethod
    def parse(cls, value: str) -> GeometryType | None:
        """Case-insensitive lookup, ``None`` for anything unrecognized."""
        try:
            return cls(value.lower())
        except ValueError:
            return None


class ExportFormat(enum.StrEnum):
    """Every export format the service knows about.

    ``KML_DYNAMIC`` is recognised so that it can be refused explicitly;
    no builder exists for it.
    """

    KML_STATIC = "kml-static"
    KML_DYNAMIC = "kml-dynamic"
    SHAPEFILE = "shapefile"
    GEOJSON = "geojson"
    WMS_CAPABILITIES = "wms-capabilities"
    WFS_CAPABILITIES = "wfs-capabilities"

    @classmethod
    def parse(cls, value: str) -> ExportFormat | None:
        try:
            return cls(value.lower())
        except ValueError:
            return None


class LayerState(enum.Enum):
    """Outcome of ``LayerMaterializer.ensure_layer``."""

    EXISTING = "existing"
    PROVISIONED = "provisioned"


@dataclasses.dataclass(frozen=True)
class ExportRequest:
    """A datalayer export request as received at the HTTP boundary.

    Attributes:
        requesting_user_id: User id resolved from the authenticated session.
        claimed_user_id: User id carried in the request path.
        collab_room_id: Collaboration room whose features are exported.
        incident_id: Incident the room belongs to.
        geometry_type: Raw geometry type string, validated by the gate.
        export_format: Raw export format string.
        latitude: Optional latitude used to anchor KML views.
        longitude: Optional longitude used to anchor KML views.
    """

    requesting_user_id: int | None
    claimed_user_id: int
    collab_room_id: int
    incident_id: int
    geometry_type: str
    export_format: str
    latitude: float | None = None
    longitude: float | None = None


@dataclasses.dataclass(frozen=True)
class LayerDescriptor:
    """A GeoServer layer as reported by the REST registry.

    Attributes:
        layer_name: Feature type / layer identifier.
        workspace: GeoServer workspace.
        data_store: Data store backing the feature type, if reported.
        srid: Spatial reference id of the layer.
        bbox: Projected bounding box, if known.
        lat_lon_bbox: Lat/lon bounding box, if known.
    """

    layer_name: str
    workspace: str
    data_store: str | None = None
    srid: int = 3857
    bbox: BBox | None = None
    lat_lon_bbox: BBox | None = None


@dataclasses.dataclass(frozen=True)
class Incident:
    """The slice of an incident record the export needs."""

    incident_id: int
    name: str
    incident_type_names: tuple[str, ...] = ()


@dataclasses.dataclass(frozen=True)
class DatalayerInfo:
    """Naming and context metadata for an exported layer.

    Text fields are never ``None``: lookups that fail or find nothing leave
    an empty string (or the room placeholder) and are listed in
    ``failed_lookups``.

    Attributes:
        incident_name: Incident name, empty when unavailable.
        incident_type_names: Ordered incident type names.
        collab_room_name: Room name or a placeholder.
        layer_name: Layer the export was produced from.
        timestamp: UTC time the metadata was collected.
        failed_lookups: Names of the lookups that raised.
        room_name_resolved: False when ``collab_room_name`` is a placeholder.
    """

    incident_name: str
    incident_type_names: tuple[str, ...]
    collab_room_name: str
    layer_name: str
    timestamp: datetime.datetime
    failed_lookups: tuple[str, ...] = ()
    room_name_resolved: bool = True

    @property
    def incident_types(self) -> str:
        return ",".join(self.incident_type_names)

    def as_lines(self) -> list[str]:
        return [
            f"Incident Name: {self.incident_name}",
            f"Incident Type: {self.incident_types}",
            f"Collaboration Room: {self.collab_room_name}",
            f"Layer Name: {self.layer_name}",
            f"TIMESTAMP: {self.timestamp.isoformat()}",
        ]


@dataclasses.dataclass(frozen=True)
class ExportArtifact:
    """A file ready to be returned to the caller.

    Attributes:
        filename: File name including the extension chosen by the builder.
        content: Raw bytes of the file.
        media_type: Media type of the content.
    """

    filename: str
    content: bytes
    media_type: str

    @property
    def is_error(self) -> bool:
        return False


@dataclasses.dataclass(frozen=True)
class ErrorArtifact(ExportArtifact):
    """Diagnostic text file substituted for a failed export."""

    message: str = ""

    @property
    def is_error(self) -> bool:
        return True
