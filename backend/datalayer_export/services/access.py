"""Access checks run before anything touches GeoServer.

The gate is a pure decision over the request and externally supplied
permission data. Checks run in a fixed order: identity first, then the
geometry type, then room permission, and the first failure wins.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
from typing import TYPE_CHECKING

from datalayer_export.core import errors
from datalayer_export.db import models as db_models

if TYPE_CHECKING:
    from datalayer_export.db import database

logger = logging.getLogger(__name__)


class DenialReason(enum.Enum):
    """Why the gate refused a request.

    Identity mismatches and missing room permission both surface as a
    ``"permission error"``; the members stay distinct because they map to
    different HTTP statuses.
    """

    IDENTITY_MISMATCH = "identity mismatch"
    INVALID_GEOMETRY_TYPE = "invalid geometry type"
    PERMISSION_DENIED = "permission error"

    @property
    def label(self) -> str:
        if self is DenialReason.IDENTITY_MISMATCH:
            return DenialReason.PERMISSION_DENIED.value
        return self.value


_DENIAL_ERRORS: dict[DenialReason, type[errors.ExportError]] = {
    DenialReason.IDENTITY_MISMATCH: errors.IdentityMismatch,
    DenialReason.INVALID_GEOMETRY_TYPE: errors.InvalidGeometryType,
    DenialReason.PERMISSION_DENIED: errors.PermissionDenied,
}


@dataclasses.dataclass(frozen=True)
class Authorized:
    geometry_type: db_models.GeometryType


@dataclasses.dataclass(frozen=True)
class Denied:
    reason: DenialReason

    def to_error(self) -> errors.ExportError:
        return _DENIAL_ERRORS[self.reason]()


class AccessGate:
    """Decides whether a user may export a collaboration room.

    Args:
        repository: Source of room permissions.
        incident_map_name: Name suffix of the room every member may read.
    """

    def __init__(
        self,
        repository: database.DatalayerRepositoryProtocol,
        incident_map_name: str,
    ) -> None:
        self.repository = repository
        self.incident_map_name = incident_map_name

    def authorize(
        self,
        requesting_user_id: int | None,
        claimed_user_id: int,
        collab_room_id: int,
        incident_id: int,
        geometry_type: str,
    ) -> Authorized | Denied:
        if requesting_user_id is None or requesting_user_id != claimed_user_id:
            logger.warning(
                "User %s requested an export as user %s",
                requesting_user_id,
                claimed_user_id,
            )
            return Denied(DenialReason.IDENTITY_MISMATCH)

        parsed = db_models.GeometryType.parse(geometry_type)
        if parsed is None:
            return Denied(DenialReason.INVALID_GEOMETRY_TYPE)

        if not self._has_permission(claimed_user_id, collab_room_id, incident_id):
            return Denied(DenialReason.PERMISSION_DENIED)

        return Authorized(parsed)

    def _has_permission(
        self,
        user_id: int,
        collab_room_id: int,
        incident_id: int,
    ) -> bool:
        # The permission model is per room; the incident only scopes logging.
        try:
            return self.repository.has_permission(
                user_id, collab_room_id, self.incident_map_name
            )
        except Exception:
            logger.exception(
                "Permission lookup failed for user %s, room %s, incident %s",
                user_id,
                collab_room_id,
                incident_id,
            )
            return False
