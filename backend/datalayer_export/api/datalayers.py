"""Datalayer export API endpoints.

This module exposes the collaboration room export and the workspace
GetCapabilities export. Both answer with a file attachment in every case:
the requested export on success, or an ``Export_Error.txt`` diagnostic with
a 400/401/500 status on failure.

Example:
    Export the point features of room 12 in incident 3 as KML:
        >>> response = client.get(
        ...     "/api/datalayers/7/export/3/12/point/kml-static",
        ...     headers={"X-Remote-User": "jdoe@example.com"},
        ... )
        >>> response.headers["content-disposition"]
        'attachment; filename="NICS-Fire-Ops-2024-01-01T000000.kml"'

    Download the WMS capabilities of the incident workspace:
        >>> response = client.get("/api/datalayers/7/capabilities/3/wms-capabilities")
"""

import logging
from urllib import parse

import fastapi
from fastapi import responses

from datalayer_export.core import config
from datalayer_export.db import database
from datalayer_export.db import models as db_models
from datalayer_export.services import (
    access,
    exporters,
    geoserver,
    layers,
    metadata,
    pipeline,
)

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/api/datalayers", tags=["datalayers"])

_layer_locks = layers.LayerLocks()


def _get_repo(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.DatalayerRepositoryProtocol:
    """Resolve the incident store repository dependency."""
    return database.get_datalayer_repository(settings)


def _get_geoserver() -> geoserver.GeoServerProtocol:
    """Resolve the process-wide GeoServer client."""
    return geoserver.get_geoserver_client()


def _get_service(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
    repo: database.DatalayerRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
    client: geoserver.GeoServerProtocol = fastapi.Depends(_get_geoserver),  # noqa: B008
) -> pipeline.DatalayerExportService:
    """Assemble the export pipeline for one request."""
    return pipeline.DatalayerExportService(
        gate=access.AccessGate(repo, settings.incident_map_name),
        materializer=layers.LayerMaterializer(client, settings, _layer_locks),
        collector=metadata.MetadataCollector(repo),
        formatter=exporters.ExportFormatter(client, settings),
    )


def _resolve_user_id(
    repo: database.DatalayerRepositoryProtocol,
    username: str | None,
) -> int | None:
    if not username:
        return None

    try:
        return repo.get_user_id(username)
    except Exception:
        logger.exception("Could not resolve user id for %s", username)
        return None


def content_disposition(filename: str) -> str:
    """Build an attachment header value that is always Latin-1 safe.

    ``filename`` keeps printable ASCII only, with quotes, backslashes and
    slashes replaced by ``_``. When that changes the name, the exact name is
    also sent as an RFC 5987 ``filename*`` parameter.
    """
    fallback = "".join(
        char if char.isascii() and char.isprintable() and char not in '"\\/' else "_"
        for char in filename
    )
    value = f'attachment; filename="{fallback}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{parse.quote(filename, safe='')}"
    return value


def _attachment(result: pipeline.ExportResult) -> responses.Response:
    return responses.Response(
        content=result.artifact.content,
        status_code=int(result.status),
        media_type="application/octet-stream",
        headers={"Content-Disposition": content_disposition(result.artifact.filename)},
    )


@router.get(
    "/{user_id}/export/{incident_id}/{collab_room_id}/{geometry_type}/{export_format}"
)
def export_datalayer(
    user_id: int,
    incident_id: int,
    collab_room_id: int,
    geometry_type: str,
    export_format: str,
    latitude: float | None = None,
    longitude: float | None = None,
    x_remote_user: str | None = fastapi.Header(default=None),
    repo: database.DatalayerRepositoryProtocol = fastapi.Depends(_get_repo),  # noqa: B008
    service: pipeline.DatalayerExportService = fastapi.Depends(_get_service),  # noqa: B008
) -> responses.Response:
    """Export the features of a collaboration room.

    Args:
        user_id: User the caller claims to be; must match the session user.
        incident_id: Incident the room belongs to.
        collab_room_id: Collaboration room to export.
        geometry_type: ``point``, ``line``, ``polygon`` or ``all``.
        export_format: ``kml-static``, ``shapefile`` or ``geojson``.
        latitude: Optional latitude the KML view is centred on.
        longitude: Optional longitude the KML view is centred on.
        x_remote_user: Username of the authenticated session.
        repo: Incident store repository (injected via FastAPI Depends).
        service: Export pipeline (injected via FastAPI Depends).

    Returns:
        ``application/octet-stream`` attachment: the export (.kml, .kmz,
        .zip or .geojson) or ``Export_Error.txt``.
    """
    request = db_models.ExportRequest(
        requesting_user_id=_resolve_user_id(repo, x_remote_user),
        claimed_user_id=user_id,
        collab_room_id=collab_room_id,
        incident_id=incident_id,
        geometry_type=geometry_type,
        export_format=export_format,
        latitude=latitude,
        longitude=longitude,
    )
    return _attachment(service.export_datalayer(request))


@router.get("/{user_id}/capabilities/{incident_id}/{export_format}")
def export_capabilities(
    user_id: int,
    incident_id: int,
    export_format: str,
    service: pipeline.DatalayerExportService = fastapi.Depends(_get_service),  # noqa: B008
) -> responses.Response:
    """Export the incident workspace's WMS or WFS capabilities document.

    Args:
        user_id: Requesting user.
        incident_id: Incident whose workspace is described.
        export_format: ``wms-capabilities`` or ``wfs-capabilities``.
        service: Export pipeline (injected via FastAPI Depends).

    Returns:
        ``application/octet-stream`` attachment with the XML document or
        ``Export_Error.txt``.
    """
    return _attachment(
        service.export_capabilities(user_id, incident_id, export_format)
    )
