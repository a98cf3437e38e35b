"""Exception hierarchy for the datalayer export pipeline.

Every failure the pipeline knows about derives from :class:`ExportError` and
carries the message that ends up in the diagnostic text file handed back to
the caller, plus the HTTP status the boundary should use. Nothing in this
hierarchy is allowed to escape the pipeline; see
``datalayer_export.services.pipeline``.
"""

from http import HTTPStatus

PERMISSION_ERROR = "You do not have permissions to download this file."
INVALID_TYPE_ERROR = "An invalid geometry type was provided."
EXPORT_ERROR = "There was an error processing your request."
TYPE_ERROR = "There was an error retrieving an export file for format "


class ExportError(Exception):
    """Base class for all export pipeline failures.

    Attributes:
        message: Human-readable text for the diagnostic artifact.
        status: HTTP status the response should carry.
    """

    status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str = EXPORT_ERROR) -> None:
        super().__init__(message)
        self.message = message


class IdentityMismatch(ExportError):
    """The session user does not match the user id in the request."""

    status = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str = PERMISSION_ERROR) -> None:
        super().__init__(message)


class InvalidGeometryType(ExportError):
    """Geometry type is not one of point, line, polygon or all."""

    status = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str = INVALID_TYPE_ERROR) -> None:
        super().__init__(message)


class PermissionDenied(ExportError):
    """The user may not read the collaboration room."""

    status = HTTPStatus.UNAUTHORIZED

    def __init__(self, message: str = PERMISSION_ERROR) -> None:
        super().__init__(message)


class GeoServerError(ExportError):
    """A GeoServer call failed at the transport or HTTP level."""


class LayerProbeFailure(ExportError):
    """Looking the layer up in GeoServer failed (not the same as absent)."""


class LayerProvisionFailure(ExportError):
    """One of the provisioning steps failed.

    Attributes:
        layer_name: Layer that was being provisioned.
        step: Name of the step that failed.
    """

    def __init__(self, layer_name: str, step: str) -> None:
        super().__init__(f"Provisioning of layer {layer_name} failed at {step}")
        self.layer_name = layer_name
        self.step = step


class MetadataFetchFailure(ExportError):
    """A metadata lookup failed. Absorbed per field by the collector."""


class UnsupportedFormat(ExportError):
    """The export format is unknown or disabled for the requested path."""

    def __init__(self, export_format: str) -> None:
        super().__init__(TYPE_ERROR + export_format)
        self.export_format = export_format


class ArtifactAssemblyFailure(ExportError):
    """The export body could not be fetched or packaged."""
