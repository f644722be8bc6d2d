"""Error taxonomy for the layer ingestion pipeline.

Every failure the pipeline can report is an IngestionError subclass. Each
class carries the HTTP status it maps to and a short public message that
is safe to return to callers. The exception text itself holds the full
diagnostic (subprocess stderr, paths, database errors) and is only ever
written to the server log.

Example:
    Raise with a diagnostic, render with the public message:
        >>> from geoingest.core import errors
        >>> try:
        ...     raise errors.LoadFailure("psql: ERROR: relation exists")
        ... except errors.IngestionError as exc:
        ...     exc.status_code, exc.public_message
        (500, 'Loading the layer into the database failed')
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for all pipeline failures.

    Attributes:
        status_code: HTTP status the API responds with.
        public_message: Message returned to the caller.
    """

    status_code: int = 500
    public_message: str = "Layer ingestion failed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)


class InvalidUpload(IngestionError):
    status_code = 400
    public_message = "Invalid upload: a non-empty zip archive is required"


class UploadTooLarge(InvalidUpload):
    status_code = 413
    public_message = "Upload too large"


class InvalidIdentifier(IngestionError):
    status_code = 400
    public_message = "Invalid department or layer name"


class DuplicateLayer(IngestionError):
    status_code = 400
    public_message = "Layer already exists"


class LayerNotFound(IngestionError):
    status_code = 400
    public_message = "Layer not found"


class ExtractionError(IngestionError):
    public_message = "Archive could not be extracted"


class NoGeometrySource(IngestionError):
    status_code = 400
    public_message = "No .shp file found in archive"


class AmbiguousGeometrySource(IngestionError):
    status_code = 400
    public_message = "Archive contains more than one .shp file"


class ToolchainUnavailable(IngestionError):
    public_message = "Layer loading is currently unavailable"


class LoadFailure(IngestionError):
    public_message = "Loading the layer into the database failed"


class LoadTimeout(LoadFailure):
    public_message = "Loading the layer into the database timed out"


class PartialReplaceFailure(IngestionError):
    """Replacement dropped the old table but could not load the new one.

    The layer is absent from the spatial store while its metadata row still
    exists, so operators need to be alerted.
    """

    public_message = (
        "Layer replacement failed after the previous data was removed; "
        "the layer is currently unavailable"
    )


class GeometryNotFound(IngestionError):
    public_message = "Loaded table has no registered geometry column"
