"""GeoServer REST and OWS client.

This module wraps the handful of GeoServer REST calls needed to publish a
collaboration room as a layer (register a SQL view feature type, style it,
bound it, enable it) and the plain OWS downloads used by the exporters.

The client owns a single ``httpx.Client`` created on first use and reused
for the lifetime of the process. A transport failure drops that connection
pool and retries the call once on a fresh one; business logic never sees
reconnection.

Example:
    Probe for a layer and download its GeoJSON:
        >>> from datalayer_export.core import config
        >>> from datalayer_export.services import geoserver
        >>> client = geoserver.GeoServerClient.from_settings(config.get_settings())
        >>> client.get_layer("R42_point") is None
        True
"""

from __future__ import annotations

import functools
import logging
import re
import threading
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from datalayer_export.core import config, errors
from datalayer_export.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

NO_SUCH_LAYER = "No such layer"
REST_PATH = "/rest"

_DATASTORE_HREF = re.compile(r"/datastores/([^/]+)/")


class GeoServerProtocol(Protocol):
    """Capability surface of the geo server used by the pipeline."""

    def get_layer(self, layer_name: str) -> db_models.LayerDescriptor | None: ...

    def add_feature_type_from_sql(
        self,
        workspace: str,
        data_store: str,
        layer_name: str,
        srs: str,
        sql: str,
        geometry_column: str,
        geometry_type: str,
        srid: int,
    ) -> bool: ...

    def set_layer_style(self, layer_name: str, workspace: str, style: str) -> bool: ...

    def set_feature_type_bounds(
        self,
        workspace: str,
        data_store: str,
        layer_name: str,
        bbox: db_models.BBox,
        lat_lon_bbox: db_models.BBox,
        srs: str,
    ) -> bool: ...

    def set_feature_type_enabled(
        self, workspace: str, data_store: str, layer_name: str, enabled: bool
    ) -> bool: ...

    def set_layer_enabled(self, layer_name: str, workspace: str, enabled: bool) -> bool: ...

    def delete_feature_type(
        self, workspace: str, data_store: str, layer_name: str
    ) -> bool: ...

    def fetch(self, url: str, params: Mapping[str, str] | None = None) -> bytes: ...


def _bounding_box(bbox: db_models.BBox, crs: str) -> dict[str, Any]:
    minx, miny, maxx, maxy = bbox
    return {"minx": minx, "miny": miny, "maxx": maxx, "maxy": maxy, "crs": crs}


class GeoServerClient(GeoServerProtocol):
    """HTTP client for a single GeoServer workspace.

    Args:
        base_url: GeoServer root, e.g. ``http://host:8080/geoserver``.
        username: REST user.
        password: REST password.
        workspace: Workspace layers are probed in.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        workspace: str,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.rest_url = self.base_url + REST_PATH
        self.workspace = workspace
        self._auth = httpx.BasicAuth(username, password)
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: config.Settings) -> GeoServerClient:
        return cls(
            base_url=settings.base_mapserver_url,
            username=settings.mapserver_username,
            password=settings.mapserver_password,
            workspace=settings.workspace_name,
            timeout=settings.geoserver_timeout_seconds,
        )

    def _connection(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(
                    auth=self._auth,
                    timeout=self._timeout,
                    transport=self._transport,
                )
            return self._client

    def _reset(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None

    def close(self) -> None:
        """Close the underlying connection pool, if one was opened."""
        self._reset()

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, reconnecting once on a transport failure.

        Raises:
            GeoServerError: if the request fails twice at the transport level.
        """
        try:
            return self._connection().request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("GeoServer %s %s failed (%s), reconnecting", method, url, exc)
            self._reset()

        try:
            return self._connection().request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise errors.GeoServerError(f"GeoServer unreachable: {exc}") from exc

    def _checked(self, action: str, response: httpx.Response) -> bool:
        if response.is_success:
            return True

        logger.error(
            "GeoServer %s failed with HTTP %s: %s",
            action,
            response.status_code,
            response.text[:500],
        )
        return False

    def _feature_type_url(self, workspace: str, data_store: str, layer_name: str = "") -> str:
        url = f"{self.rest_url}/workspaces/{workspace}/datastores/{data_store}/featuretypes"
        return f"{url}/{layer_name}" if layer_name else url

    def get_layer(self, layer_name: str) -> db_models.LayerDescriptor | None:
        """Look a layer up in the REST registry.

        Returns:
            The layer descriptor, or ``None`` when GeoServer answers with its
            "No such layer" sentinel.

        Raises:
            GeoServerError: on transport failures or unexpected statuses.
        """
        response = self._send(
            "GET",
            f"{self.rest_url}/layers/{self.workspace}:{layer_name}.json",
            headers={"Accept": "application/json"},
        )
        if response.status_code == 404 or response.text.startswith(NO_SUCH_LAYER):
            return None

        if not response.is_success:
            raise errors.GeoServerError(
                f"Layer lookup for {layer_name} returned HTTP {response.status_code}"
            )

        try:
            resource = response.json().get("layer", {}).get("resource", {})
        except (ValueError, AttributeError) as exc:
            raise errors.GeoServerError(
                f"Layer lookup for {layer_name} returned an unreadable body"
            ) from exc

        match = _DATASTORE_HREF.search(resource.get("href", ""))
        return db_models.LayerDescriptor(
            layer_name=layer_name,
            workspace=self.workspace,
            data_store=match.group(1) if match else None,
        )

    def add_feature_type_from_sql(
        self,
        workspace: str,
        data_store: str,
        layer_name: str,
        srs: str,
        sql: str,
        geometry_column: str,
        geometry_type: str,
        srid: int,
    ) -> bool:
        """Register a feature type backed by a SQL view."""
        body = {
            "featureType": {
                "name": layer_name,
                "nativeName": layer_name,
                "title": layer_name,
                "srs": srs,
                "metadata": {
                    "entry": {
                        "@key": "JDBC_VIRTUAL_TABLE",
                        "virtualTable": {
                            "name": layer_name,
                            "sql": sql,
                            "escapeSql": False,
                            "geometry": {
                                "name": geometry_column,
                                "type": geometry_type,
                                "srid": srid,
                            },
                        },
                    }
                },
            }
        }
        response = self._send(
            "POST", self._feature_type_url(workspace, data_store), json=body
        )
        return self._checked(f"register feature type {layer_name}", response)

    def set_layer_style(self, layer_name: str, workspace: str, style: str) -> bool:
        response = self._send(
            "PUT",
            f"{self.rest_url}/layers/{workspace}:{layer_name}",
            json={"layer": {"defaultStyle": {"name": style}}},
        )
        return self._checked(f"style layer {layer_name}", response)

    def set_feature_type_bounds(
        self,
        workspace: str,
        data_store: str,
        layer_name: str,
        bbox: db_models.BBox,
        lat_lon_bbox: db_models.BBox,
        srs: str,
    ) -> bool:
        body = {
            "featureType": {
                "nativeBoundingBox": _bounding_box(bbox, srs),
                "latLonBoundingBox": _bounding_box(lat_lon_bbox, "EPSG:4326"),
            }
        }
        response = self._send(
            "PUT", self._feature_type_url(workspace, data_store, layer_name), json=body
        )
        return self._checked(f"bound feature type {layer_name}", response)

    def set_feature_type_enabled(
        self, workspace: str, data_store: str, layer_name: str, enabled: bool
    ) -> bool:
        response = self._send(
            "PUT",
            self._feature_type_url(workspace, data_store, layer_name),
            json={"featureType": {"enabled": enabled}},
        )
        return self._checked(f"enable feature type {layer_name}", response)

    def set_layer_enabled(self, layer_name: str, workspace: str, enabled: bool) -> bool:
        response = self._send(
            "PUT",
            f"{self.rest_url}/layers/{workspace}:{layer_name}",
            json={"layer": {"enabled": enabled}},
        )
        return self._checked(f"enable layer {layer_name}", response)

    def delete_feature_type(self, workspace: str, data_store: str, layer_name: str) -> bool:
        """Remove a feature type together with its layer."""
        response = self._send(
            "DELETE",
            self._feature_type_url(workspace, data_store, layer_name),
            params={"recurse": "true"},
        )
        return self._checked(f"delete feature type {layer_name}", response)

    def fetch(self, url: str, params: Mapping[str, str] | None = None) -> bytes:
        """Download an OWS document.

        Raises:
            GeoServerError: on transport failures or a non-2xx status.
        """
        response = self._send("GET", url, params=params)
        if not response.is_success:
            raise errors.GeoServerError(
                f"GeoServer returned HTTP {response.status_code} for {url}"
            )
        return response.content


@functools.lru_cache
def get_geoserver_client() -> GeoServerClient:
    """Process-wide GeoServer client built from the cached settings."""
    return GeoServerClient.from_settings(config.get_settings())
