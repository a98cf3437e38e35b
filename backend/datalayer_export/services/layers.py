"""Collaboration room layer naming and on-demand GeoServer provisioning.

A room's features are published as a GeoServer layer backed by a SQL view
over the ``Feature`` / ``CollabroomFeature`` tables. Layers are created the
first time somebody exports them and reused afterwards, so the layer name
must be a pure function of the room and geometry type: it doubles as the SQL
view name and the feature type name.

Provisioning is five independent REST calls. GeoServer has no transaction
spanning them, so a failure after the feature type is registered is
compensated by deleting the feature type again, leaving the room ready to be
provisioned from scratch on the next request.

Example:
    Naming and building the view for a room:
        >>> from datalayer_export.db.models import GeometryType
        >>> from datalayer_export.services import layers
        >>> layers.resolve_layer_name(42, GeometryType.POINT)
        'R42_point'
        >>> layers.resolve_layer_name(42, GeometryType.ALL)
        'R42'
"""

from __future__ import annotations

import collections
import contextlib
import logging
import threading
from typing import TYPE_CHECKING

from datalayer_export.core import errors
from datalayer_export.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from datalayer_export.core import config
    from datalayer_export.services import geoserver

logger = logging.getLogger(__name__)

SRID = 3857
SRS_STRING = "EPSG:3857"
GEOMETRY_COLUMN = "the_geom"
GEOMETRY_KIND = "Geometry"

# Drawing tool shape codes stored in Feature.type, per geometry subset.
FEATURE_TYPE_PREDICATES: dict[db_models.GeometryType, str] = {
    db_models.GeometryType.POINT: "f.type='point'",
    db_models.GeometryType.POLYGON: (
        "f.type IN ('polygon','hexagon','circle','box','triangle')"
    ),
    db_models.GeometryType.LINE: "f.type='sketch'",
}


def resolve_layer_name(
    collab_room_id: int,
    geometry_type: db_models.GeometryType,
) -> str:
    """Return the GeoServer layer name for a room and geometry subset.

    Changing this invalidates every layer already materialized.
    """
    if geometry_type is db_models.GeometryType.ALL:
        return f"R{collab_room_id}"

    return f"R{collab_room_id}_{geometry_type.value}"


def build_view_sql(
    collab_room_id: int,
    geometry_type: db_models.GeometryType,
) -> str:
    """Return the SQL view selecting a room's features of one subset.

    ``collab_room_id`` is an ``int`` by contract; it is formatted with ``%d``
    so nothing else can reach the statement.
    """
    sql = (
        "SELECT f.* FROM Feature f, CollabroomFeature cf "
        "WHERE cf.featureId = f.featureId AND cf.collabRoomId = %d"
        % collab_room_id
    )
    predicate = FEATURE_TYPE_PREDICATES.get(geometry_type)
    if predicate:
        sql += f" AND {predicate}"
    return sql


class LayerLocks:
    """Named mutual exclusion scopes keyed by layer name.

    Locks are created on demand and dropped once no thread holds or waits
    for them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: collections.Counter[str] = collections.Counter()

    @contextlib.contextmanager
    def hold(self, name: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(name, threading.Lock())
            self._users[name] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[name] -= 1
                if self._users[name] <= 0:
                    del self._users[name]
                    del self._locks[name]


class LayerMaterializer:
    """Makes sure a room layer exists in GeoServer before it is exported.

    Args:
        client: GeoServer client.
        settings: Settings providing workspace, store, style and extents.
        locks: Lock registry shared by every materializer of the process.
    """

    def __init__(
        self,
        client: geoserver.GeoServerProtocol,
        settings: config.Settings,
        locks: LayerLocks | None = None,
    ) -> None:
        self.client = client
        self.workspace = settings.workspace_name
        self.data_store = settings.collabroom_store
        self.style = settings.collabroom_style
        self.max_extent = settings.max_extent
        self.max_extent_lat_lon = settings.max_extent_lat_lon
        self.locks = locks if locks is not None else LayerLocks()

    def ensure_layer(
        self,
        layer_name: str,
        geometry_type: db_models.GeometryType,
        collab_room_id: int,
    ) -> db_models.LayerState:
        """Probe for the layer and provision it when absent.

        The probe and any provisioning run under the layer's lock, so within
        one process a layer is provisioned at most once at a time. Separate
        processes can still race; both then end with a valid layer.

        Returns:
            ``LayerState.EXISTING`` or ``LayerState.PROVISIONED``.

        Raises:
            LayerProbeFailure: if the registry lookup failed.
            LayerProvisionFailure: if any provisioning step failed.
        """
        with self.locks.hold(layer_name):
            try:
                layer = self.client.get_layer(layer_name)
            except errors.ExportError as exc:
                raise errors.LayerProbeFailure(
                    f"Could not look up layer {layer_name}: {exc.message}"
                ) from exc

            if layer is not None:
                logger.debug("Layer %s already exists", layer_name)
                return db_models.LayerState.EXISTING

            logger.info("Layer %s not found, provisioning it", layer_name)
            self._provision(layer_name, geometry_type, collab_room_id)
            return db_models.LayerState.PROVISIONED

    def _provision(
        self,
        layer_name: str,
        geometry_type: db_models.GeometryType,
        collab_room_id: int,
    ) -> None:
        sql = build_view_sql(collab_room_id, geometry_type)
        self._run_step(
            layer_name,
            "register feature type",
            lambda: self.client.add_feature_type_from_sql(
                self.workspace,
                self.data_store,
                layer_name,
                SRS_STRING,
                sql,
                GEOMETRY_COLUMN,
                GEOMETRY_KIND,
                SRID,
            ),
        )

        steps: list[tuple[str, Callable[[], bool]]] = [
            (
                "set layer style",
                lambda: self.client.set_layer_style(
                    layer_name, self.workspace, self.style
                ),
            ),
            (
                "set feature type bounds",
                lambda: self.client.set_feature_type_bounds(
                    self.workspace,
                    self.data_store,
                    layer_name,
                    self.max_extent,
                    self.max_extent_lat_lon,
                    SRS_STRING,
                ),
            ),
            (
                "enable feature type",
                lambda: self.client.set_feature_type_enabled(
                    self.workspace, self.data_store, layer_name, True
                ),
            ),
            (
                "enable layer",
                lambda: self.client.set_layer_enabled(
                    layer_name, self.workspace, True
                ),
            ),
        ]
        try:
            for step, call in steps:
                self._run_step(layer_name, step, call)
        except errors.LayerProvisionFailure:
            self._compensate(layer_name)
            raise

        logger.info("Provisioned layer %s for room %s", layer_name, collab_room_id)

    @staticmethod
    def _run_step(layer_name: str, step: str, call: Callable[[], bool]) -> None:
        try:
            succeeded = call()
        except errors.ExportError as exc:
            logger.error("Provisioning %s: %s raised %s", layer_name, step, exc.message)
            raise errors.LayerProvisionFailure(layer_name, step) from exc

        if not succeeded:
            logger.error("Provisioning %s: %s was rejected", layer_name, step)
            raise errors.LayerProvisionFailure(layer_name, step)

    def _compensate(self, layer_name: str) -> None:
        """Delete a half-provisioned feature type, logging any failure."""
        try:
            removed = self.client.delete_feature_type(
                self.workspace, self.data_store, layer_name
            )
        except errors.ExportError as exc:
            logger.error("Could not remove partial layer %s: %s", layer_name, exc.message)
            return

        if not removed:
            logger.error("Could not remove partial layer %s", layer_name)
