"""Export artifact builders for room layers and capability documents.

Every format is produced by asking GeoServer for the matching OWS document:
the KML reflector for KML, WFS ``GetFeature`` for Shapefile and GeoJSON, and
the workspace ``GetCapabilities`` endpoints for WMS and WFS metadata.

Builders are looked up in closed tables keyed by
:class:`~datalayer_export.db.models.ExportFormat`. Each table names every
format; formats a path does not serve map to ``None`` and are answered with
an error artifact, never an exception.

KML post-processing:
    GeoServer's KML carries a ``<LookAt>`` view and ``<Icon>`` references.
    The view is pulled in to a fixed altitude and range and, when the caller
    supplied coordinates, centred on them. Icons served by this platform's
    symbology host are rewritten to ``images/...`` and bundled together with
    the document into a KMZ; any other icon is left for the client to fetch.

Example:
    Exporting a room layer as GeoJSON:
        >>> formatter = ExportFormatter(client, settings)
        >>> artifact = formatter.export("R42_point", info, "geojson", GeometryType.POINT)
        >>> artifact.filename
        'NICS-Fire-Ops-2024-01-01T000000.geojson'
"""

from __future__ import annotations

import io
import logging
import pathlib
import re
import zipfile
from typing import TYPE_CHECKING, Protocol

from datalayer_export.core import errors
from datalayer_export.db import models as db_models
from datalayer_export.services import metadata, reporting

if TYPE_CHECKING:
    from datalayer_export.core import config
    from datalayer_export.services import geoserver

logger = logging.getLogger(__name__)

KML_ATTRIBS = "bbox=-179,-89,179,89"
KMZ_ICON_DIR = "images/"
LOOKAT_ALTITUDE = "500"
LOOKAT_RANGE = "800000"
ICON_PATH_MARKERS = ("upload/symbology/", "geoserver/styles/")

KML_MEDIA_TYPE = "application/vnd.google-earth.kml+xml"
KMZ_MEDIA_TYPE = "application/vnd.google-earth.kmz"
ZIP_MEDIA_TYPE = "application/zip"
GEOJSON_MEDIA_TYPE = "application/geo+json"
XML_MEDIA_TYPE = "application/xml"

KML_LOAD_ERROR = "There was an error loading the requested KML document."
DOCUMENT_ERROR = "There was an error retrieving the document."

_LOOKAT = re.compile(r"<LookAt>.*?</LookAt>", re.DOTALL)
_ICON_HREF = re.compile(r"(<Icon>\s*<href>)(.*?)(</href>)", re.DOTALL)


class LayerBuilder(Protocol):
    def __call__(
        self,
        layer_name: str,
        stem: str,
        latitude: float | None,
        longitude: float | None,
    ) -> db_models.ExportArtifact: ...


class CapabilitiesBuilder(Protocol):
    def __call__(self, incident_id: int) -> db_models.ExportArtifact: ...


def _replace_element(block: str, element: str, value: str) -> str:
    pattern = re.compile(rf"(<{element}>)([-+0-9.Ee]+)(</{element}>)")
    return pattern.sub(lambda m: f"{m.group(1)}{value}{m.group(3)}", block)


def _icon_name(url: str) -> str:
    for marker in ICON_PATH_MARKERS:
        if marker in url:
            return url[url.index(marker) + len(marker):]
    return url.rstrip("/").rsplit("/", 1)[-1]


def process_kml(
    document: str,
    latitude: float | None,
    longitude: float | None,
    symbology_host: str | None,
) -> tuple[str, list[str]]:
    """Adjust the LookAt view and localize hosted icons.

    Args:
        document: KML text as produced by GeoServer.
        latitude: Latitude to centre the view on, if any.
        longitude: Longitude to centre the view on, if any.
        symbology_host: URL fragment identifying icons hosted here.

    Returns:
        The rewritten document and the icon paths (relative to the
        symbology directory) it now references under ``images/``.
    """
    has_lat_lon = latitude is not None and longitude is not None

    def rewrite_lookat(match: re.Match[str]) -> str:
        block = match.group(0)
        if has_lat_lon:
            block = _replace_element(block, "latitude", str(latitude))
            block = _replace_element(block, "longitude", str(longitude))
        block = _replace_element(block, "altitude", LOOKAT_ALTITUDE)
        return _replace_element(block, "range", LOOKAT_RANGE)

    icons: list[str] = []

    def rewrite_icon(match: re.Match[str]) -> str:
        url = match.group(2).strip()
        if not symbology_host or symbology_host not in url:
            logger.debug("Leaving third-party icon %s", url)
            return match.group(0)

        name = _icon_name(url)
        icons.append(name)
        return f"{match.group(1)}{KMZ_ICON_DIR}{name}{match.group(3)}"

    document = _LOOKAT.sub(rewrite_lookat, document)
    document = _ICON_HREF.sub(rewrite_icon, document)
    return document, icons


def build_kmz(
    kml_name: str,
    document: str,
    icons: list[str],
    symbology_path: pathlib.Path,
) -> bytes:
    """Zip a KML document with the icons it references.

    Icons missing from ``symbology_path`` (or pointing outside of it) are
    logged and skipped.
    """
    root = symbology_path.resolve()
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as kmz:
        kmz.writestr(kml_name, document)
        for icon in dict.fromkeys(icons):
            icon_path = (root / icon).resolve()
            if not icon_path.is_relative_to(root) or not icon_path.is_file():
                logger.warning("KML document references missing icon: %s", icon_path)
                continue
            kmz.write(icon_path, arcname=f"{KMZ_ICON_DIR}{icon}")
    return buffer.getvalue()


class ExportFormatter:
    """Builds export artifacts for room layers and incident workspaces.

    Args:
        client: GeoServer client used to download documents.
        settings: Settings providing URLs, workspace and symbology paths.
    """

    def __init__(
        self,
        client: geoserver.GeoServerProtocol,
        settings: config.Settings,
    ) -> None:
        self.client = client
        self.mapserver_url = settings.base_mapserver_url
        self.workspace = settings.workspace_name
        self.kml_export_path = settings.kml_export_path
        self.symbology_path = settings.symbology_path
        self.symbology_host = settings.symbology_host

        self.layer_builders: dict[db_models.ExportFormat, LayerBuilder | None] = {
            db_models.ExportFormat.KML_STATIC: self._kml,
            # Dynamic (network link) KML exports are disabled.
            db_models.ExportFormat.KML_DYNAMIC: None,
            db_models.ExportFormat.SHAPEFILE: self._shapefile,
            db_models.ExportFormat.GEOJSON: self._geojson,
            db_models.ExportFormat.WMS_CAPABILITIES: None,
            db_models.ExportFormat.WFS_CAPABILITIES: None,
        }
        self.capabilities_builders: dict[
            db_models.ExportFormat, CapabilitiesBuilder | None
        ] = {
            db_models.ExportFormat.KML_STATIC: None,
            db_models.ExportFormat.KML_DYNAMIC: None,
            db_models.ExportFormat.SHAPEFILE: None,
            db_models.ExportFormat.GEOJSON: None,
            db_models.ExportFormat.WMS_CAPABILITIES: self._wms_capabilities,
            db_models.ExportFormat.WFS_CAPABILITIES: self._wfs_capabilities,
        }

    def export(
        self,
        layer_name: str,
        info: db_models.DatalayerInfo,
        export_format: str,
        geometry_type: db_models.GeometryType,
        latitude: float | None = None,
        longitude: float | None = None,
    ) -> db_models.ExportArtifact:
        """Export a room layer. Never raises; failures yield error artifacts."""
        fmt = db_models.ExportFormat.parse(export_format)
        builder = self.layer_builders.get(fmt) if fmt else None
        if builder is None:
            return reporting.report(errors.UnsupportedFormat(export_format).message)

        stem = metadata.resource_filename(info) or layer_name
        logger.info(
            "Exporting %s (%s features) as %s to %s",
            layer_name,
            geometry_type.value,
            export_format,
            stem,
        )
        try:
            return builder(layer_name, stem, latitude, longitude)
        except errors.ExportError as exc:
            logger.error("Export of %s as %s failed: %s", layer_name, export_format, exc.message)
        except Exception:
            logger.exception("Export of %s as %s failed", layer_name, export_format)
        return reporting.report(errors.UnsupportedFormat(export_format).message)

    def export_capabilities(
        self,
        user_id: int,
        incident_id: int,
        export_format: str,
    ) -> db_models.ExportArtifact:
        """Export a GetCapabilities document. Never raises."""
        fmt = db_models.ExportFormat.parse(export_format)
        builder = self.capabilities_builders.get(fmt) if fmt else None
        if builder is None:
            return reporting.report(errors.UnsupportedFormat(export_format).message)

        logger.info(
            "User %s exporting %s for incident %s", user_id, export_format, incident_id
        )
        try:
            return builder(incident_id)
        except errors.ExportError as exc:
            logger.error("Capabilities export %s failed: %s", export_format, exc.message)
        except Exception:
            logger.exception("Capabilities export %s failed", export_format)
        return reporting.report(errors.UnsupportedFormat(export_format).message)

    def _download(
        self,
        url: str,
        params: dict[str, str] | None = None,
        error: str = DOCUMENT_ERROR,
    ) -> bytes:
        try:
            content = self.client.fetch(url, params)
        except errors.ExportError as exc:
            raise errors.ArtifactAssemblyFailure(f"{error} ({exc.message})") from exc

        if not content:
            logger.warning("No layer was found at %s", url)
            raise errors.ArtifactAssemblyFailure(error)
        return content

    def _wfs_get_feature(self, layer_name: str, output_format: str, **extra: str) -> bytes:
        params = {
            "service": "WFS",
            "version": "1.0.0",
            "request": "GetFeature",
            "outputFormat": output_format,
            "typeName": f"{self.workspace}:{layer_name}",
            **extra,
        }
        return self._download(f"{self.mapserver_url}/wfs", params)

    def _kml(
        self,
        layer_name: str,
        stem: str,
        latitude: float | None,
        longitude: float | None,
    ) -> db_models.ExportArtifact:
        separator = "&" if "?" in self.kml_export_path else "?"
        url = (
            f"{self.mapserver_url}{self.kml_export_path}{separator}{KML_ATTRIBS}"
            f"&layers={self.workspace}:{layer_name}"
        )
        raw = self._download(url, error=KML_LOAD_ERROR)
        document, icons = process_kml(
            raw.decode("utf-8"), latitude, longitude, self.symbology_host
        )

        if not icons:
            return db_models.ExportArtifact(
                filename=f"{stem}.kml",
                content=document.encode("utf-8"),
                media_type=KML_MEDIA_TYPE,
            )

        return db_models.ExportArtifact(
            filename=f"{stem}.kmz",
            content=build_kmz(f"{stem}.kml", document, icons, self.symbology_path),
            media_type=KMZ_MEDIA_TYPE,
        )

    def _shapefile(
        self,
        layer_name: str,
        stem: str,
        latitude: float | None,
        longitude: float | None,
    ) -> db_models.ExportArtifact:
        content = self._wfs_get_feature(layer_name, "SHAPE-ZIP")
        return db_models.ExportArtifact(
            filename=f"{stem}.zip",
            content=content,
            media_type=ZIP_MEDIA_TYPE,
        )

    def _geojson(
        self,
        layer_name: str,
        stem: str,
        latitude: float | None,
        longitude: float | None,
    ) -> db_models.ExportArtifact:
        content = self._wfs_get_feature(
            layer_name, "application/json", srsName="EPSG:4326"
        )
        return db_models.ExportArtifact(
            filename=f"{stem}.geojson",
            content=content,
            media_type=GEOJSON_MEDIA_TYPE,
        )

    def _capabilities(
        self, service: str, version: str, incident_id: int
    ) -> db_models.ExportArtifact:
        url = f"{self.mapserver_url}/{self.workspace}/{service.lower()}"
        content = self._download(
            url,
            {"service": service, "version": version, "request": "GetCapabilities"},
        )
        return db_models.ExportArtifact(
            filename=f"NICS-Incident{incident_id}-{service}-GetCapabilities.xml",
            content=content,
            media_type=XML_MEDIA_TYPE,
        )

    def _wms_capabilities(self, incident_id: int) -> db_models.ExportArtifact:
        return self._capabilities("WMS", "1.1.1", incident_id)

    def _wfs_capabilities(self, incident_id: int) -> db_models.ExportArtifact:
        return self._capabilities("WFS", "1.1.0", incident_id)
