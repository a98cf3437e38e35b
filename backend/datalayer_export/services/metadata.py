"""Best-effort collection of the names used to label an export.

Each lookup degrades on its own: a missing incident leaves an empty incident
name, a failed room lookup leaves a placeholder. Collection itself never
fails.
"""

from __future__ import annotations

import datetime
import logging
from typing import TYPE_CHECKING

from datalayer_export.core import errors
from datalayer_export.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable

    from datalayer_export.db import database

logger = logging.getLogger(__name__)

ROOM_NAME_PLACEHOLDER = "(Failed to retrieve room name)"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H%M%S"


class MetadataCollector:
    """Gathers incident and room names for a layer export.

    Args:
        repository: Incident store lookups.
        clock: Returns the current UTC time. Overridable for tests.
    """

    def __init__(
        self,
        repository: database.DatalayerRepositoryProtocol,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.clock = clock or (lambda: datetime.datetime.now(tz=datetime.UTC))

    def collect(
        self,
        incident_id: int,
        collab_room_id: int,
        layer_name: str,
    ) -> db_models.DatalayerInfo:
        failed: list[str] = []

        incident: db_models.Incident | None = None
        try:
            incident = self.repository.get_incident(incident_id)
        except Exception as exc:
            failure = errors.MetadataFetchFailure(
                f"Incident lookup failed for incident {incident_id}: {exc}"
            )
            logger.warning(failure.message)
            failed.append("incident")

        room_name: str | None = None
        try:
            room_name = self.repository.get_collab_room_name(collab_room_id)
        except Exception as exc:
            failure = errors.MetadataFetchFailure(
                f"Failed to fetch CollabRoom name with id {collab_room_id}: {exc}"
            )
            logger.warning(failure.message)
            failed.append("collab_room")

        return db_models.DatalayerInfo(
            incident_name=incident.name if incident else "",
            incident_type_names=incident.incident_type_names if incident else (),
            collab_room_name=room_name or ROOM_NAME_PLACEHOLDER,
            layer_name=layer_name,
            timestamp=self.clock(),
            failed_lookups=tuple(failed),
            room_name_resolved=bool(room_name),
        )


def resource_filename(info: db_models.DatalayerInfo) -> str | None:
    """Build the ``NICS-{incident}-{room}-{timestamp}`` file stem.

    The stem carries no extension; the export format adds its own. Returns
    ``None`` when neither name is known, in which case callers fall back to
    the layer name.
    """
    incident_name = info.incident_name
    room_name = info.collab_room_name if info.room_name_resolved else ""
    if not incident_name and not room_name:
        return None

    timestamp = info.timestamp.astimezone(datetime.UTC).strftime(TIMESTAMP_FORMAT)
    return "NICS-{}-{}-{}".format(
        incident_name.replace(" ", "_"),
        room_name.replace(" ", "_"),
        timestamp,
    )
