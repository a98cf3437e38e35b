"""Datalayer export pipeline.

Runs a request through the gate, name resolution, layer provisioning,
metadata collection and formatting, and always hands back an artifact: any
failure along the way is turned into a diagnostic text file with a matching
HTTP status.

Example:
    Wiring the pipeline by hand:
        >>> service = DatalayerExportService(
        ...     gate=access.AccessGate(repo, settings.incident_map_name),
        ...     materializer=layers.LayerMaterializer(client, settings),
        ...     collector=metadata.MetadataCollector(repo),
        ...     formatter=exporters.ExportFormatter(client, settings),
        ... )
        >>> result = service.export_datalayer(request)
        >>> result.status, result.artifact.filename
        (<HTTPStatus.OK: 200>, 'NICS-Fire-Ops-2024-01-01T000000.kml')
"""

from __future__ import annotations

import dataclasses
import logging
from http import HTTPStatus
from typing import TYPE_CHECKING

from datalayer_export.core import errors
from datalayer_export.services import access, layers, reporting

if TYPE_CHECKING:
    from datalayer_export.db import models as db_models
    from datalayer_export.services import exporters, metadata

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ExportResult:
    status: HTTPStatus
    artifact: db_models.ExportArtifact


def _failure(exc: errors.ExportError) -> ExportResult:
    return ExportResult(exc.status, reporting.report(exc.message))


class DatalayerExportService:
    """Coordinates the export stages for one request at a time.

    Args:
        gate: Identity, geometry type and permission checks.
        materializer: Makes sure the GeoServer layer exists.
        collector: Gathers the naming metadata.
        formatter: Produces the artifact for the requested format.
    """

    def __init__(
        self,
        gate: access.AccessGate,
        materializer: layers.LayerMaterializer,
        collector: metadata.MetadataCollector,
        formatter: exporters.ExportFormatter,
    ) -> None:
        self.gate = gate
        self.materializer = materializer
        self.collector = collector
        self.formatter = formatter

    def export_datalayer(self, request: db_models.ExportRequest) -> ExportResult:
        """Export a collaboration room layer.

        Returns:
            The artifact and status. Identity and geometry type problems
            give 400, missing permission 401, everything else that fails
            500 with a diagnostic text file.
        """
        decision = self.gate.authorize(
            request.requesting_user_id,
            request.claimed_user_id,
            request.collab_room_id,
            request.incident_id,
            request.geometry_type,
        )
        if isinstance(decision, access.Denied):
            logger.info(
                "Export of room %s denied: %s",
                request.collab_room_id,
                decision.reason.label,
            )
            return _failure(decision.to_error())

        layer_name = layers.resolve_layer_name(
            request.collab_room_id, decision.geometry_type
        )
        try:
            self.materializer.ensure_layer(
                layer_name, decision.geometry_type, request.collab_room_id
            )
            info = self.collector.collect(
                request.incident_id, request.collab_room_id, layer_name
            )
            logger.debug("Datalayer info: %s", "; ".join(info.as_lines()))
            artifact = self.formatter.export(
                layer_name,
                info,
                request.export_format,
                decision.geometry_type,
                request.latitude,
                request.longitude,
            )
        except errors.ExportError as exc:
            logger.error(
                "Export of %s as %s failed: %s",
                layer_name,
                request.export_format,
                exc.message,
            )
            return self._processing_error(layer_name, request.export_format)
        except Exception:
            logger.exception(
                "Unexpected failure exporting %s as %s",
                layer_name,
                request.export_format,
            )
            return self._processing_error(layer_name, request.export_format)

        status = (
            HTTPStatus.INTERNAL_SERVER_ERROR if artifact.is_error else HTTPStatus.OK
        )
        return ExportResult(status, artifact)

    def export_capabilities(
        self,
        user_id: int,
        incident_id: int,
        export_format: str,
    ) -> ExportResult:
        """Export a WMS or WFS GetCapabilities document.

        Room permissions are not consulted on this path.
        """
        try:
            artifact = self.formatter.export_capabilities(
                user_id, incident_id, export_format
            )
        except Exception:
            logger.exception("Unexpected failure exporting %s", export_format)
            return ExportResult(
                HTTPStatus.INTERNAL_SERVER_ERROR, reporting.report(errors.EXPORT_ERROR)
            )

        status = (
            HTTPStatus.INTERNAL_SERVER_ERROR if artifact.is_error else HTTPStatus.OK
        )
        return ExportResult(status, artifact)

    @staticmethod
    def _processing_error(layer_name: str, export_format: str) -> ExportResult:
        message = (
            f"{errors.EXPORT_ERROR} (layer {layer_name}, format {export_format})"
        )
        return ExportResult(
            HTTPStatus.INTERNAL_SERVER_ERROR, reporting.report(message)
        )
