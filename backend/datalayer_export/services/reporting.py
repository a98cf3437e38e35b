"""Diagnostic artifacts substituted for failed exports."""

from datalayer_export.core import errors
from datalayer_export.db import models as db_models


def report(message: str) -> db_models.ErrorArtifact:
    """Wrap ``message`` in a non-empty ``Export_Error.txt`` artifact.

    A blank message is replaced with the generic processing error so the
    file is never empty.
    """
    text = message.strip() or errors.EXPORT_ERROR
    return db_models.ErrorArtifact(
        filename=f"{db_models.ERROR_FILENAME}.txt",
        content=text.encode("utf-8"),
        media_type=db_models.TEXT_MEDIA_TYPE,
        message=text,
    )
