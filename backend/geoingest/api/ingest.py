"""Layer upload, replacement and metadata API endpoints.

This module exposes the ingestion pipeline over HTTP. A layer is addressed
by department and layer name; its data arrives as a zipped ESRI shapefile
in a multipart form together with the SRID of the data and optional title
and description.

- ``POST /api/layers/{department}/{layer_name}`` creates a new layer and
  fails if the layer already exists.
- ``PUT /api/layers/{department}/{layer_name}`` replaces the data of an
  existing layer.
- ``PUT /api/layers/{department}/{layer_name}/metainfo`` updates title and
  description.

Every response body is ``{"message": ...}``. Failures are rendered by
ingestion_error_handler with the status and public message of the
IngestionError subclass, and malformed form fields or JSON bodies by
validation_error_handler as 400 "Invalid request"; diagnostic details
stay in the server log.

Example:
    Create a layer from a zipped shapefile:
        >>> response = client.post(
        ...     "/api/layers/acme/parcels",
        ...     files={"file": ("parcels.zip", open("parcels.zip", "rb"),
        ...                     "application/zip")},
        ...     data={"srid": "4326", "title": "Parcels"},
        ... )
        >>> response.status_code, response.json()
        (201, {'message': 'Layer created successfully'})
"""

from __future__ import annotations

import logging
from typing_extensions import TypedDict

import fastapi
import pydantic
from fastapi import exceptions, responses

from geoingest.core import errors
from geoingest.services import pipeline, staging
from geoingest.services.ingest_vector import LoadMode

logger = logging.getLogger(__name__)

router = fastapi.APIRouter(prefix="/api/layers", tags=["layers"])


class MessageResponse(TypedDict):
    message: str


class LayerInfo(pydantic.BaseModel):
    title: str | None = None
    description: str | None = None


def _get_pipeline(request: fastapi.Request) -> pipeline.IngestionPipeline:
    """Resolve the ingestion pipeline built during application startup.

    Args:
        request: Incoming request (injected by FastAPI).

    Returns:
        The IngestionPipeline stored on ``app.state``.
    """
    return request.app.state.pipeline


def _to_upload(file: fastapi.UploadFile | None) -> staging.ArchiveUpload | None:
    if file is None:
        return None
    return staging.ArchiveUpload(
        filename=file.filename,
        content_type=file.content_type,
        file=file.file,
    )


async def ingestion_error_handler(
    request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    """Render an IngestionError as ``{"message": ...}`` with its status."""
    if not isinstance(exc, errors.IngestionError):
        raise exc
    return responses.JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.public_message},
    )


async def validation_error_handler(
    request: fastapi.Request,
    exc: Exception,
) -> responses.JSONResponse:
    """Render malformed form fields or bodies as a 400 ``{"message": ...}``.

    The validation details echo client input, so they are only logged.
    """
    if not isinstance(exc, exceptions.RequestValidationError):
        raise exc
    logger.warning(
        "Rejected %s %s: %s", request.method, request.url.path, exc.errors()
    )
    return responses.JSONResponse(
        status_code=400,
        content={"message": "Invalid request"},
    )


async def _ingest(
    department: str,
    layer_name: str,
    mode: LoadMode,
    file: fastapi.UploadFile | None,
    srid: int,
    title: str | None,
    description: str | None,
    ingestion: pipeline.IngestionPipeline,
) -> None:
    await ingestion.ingest(
        pipeline.IngestionRequest(
            department=department,
            layer_name=layer_name,
            mode=mode,
            srid=srid,
            upload=_to_upload(file),
            title=title,
            description=description,
        )
    )


@router.post("/{department}/{layer_name}", status_code=201)
async def create_layer(
    department: str,
    layer_name: str,
    file: fastapi.UploadFile | None = fastapi.File(None),  # noqa: B008
    srid: int = fastapi.Form(..., gt=0),  # noqa: B008
    title: str | None = fastapi.Form(None),  # noqa: B008
    description: str | None = fastapi.Form(None),  # noqa: B008
    ingestion: pipeline.IngestionPipeline = fastapi.Depends(_get_pipeline),  # noqa: B008
) -> MessageResponse:
    """Create a new layer from a zipped shapefile.

    Args:
        department: Department owning the layer (becomes the schema).
        layer_name: Layer name (becomes the table).
        file: Zip archive containing exactly one ``.shp`` with sidecars.
        srid: Spatial reference identifier of the shapefile's coordinates.
        title: Optional layer title.
        description: Optional layer description.
        ingestion: Ingestion pipeline (injected via FastAPI Depends).

    Returns:
        ``{"message": "Layer created successfully"}`` with status 201.

    Raises:
        IngestionError: Rendered by ingestion_error_handler; 400 for an
            invalid name or upload or an existing layer, 500 for
            extraction, toolchain and database failures.
    """
    await _ingest(
        department,
        layer_name,
        LoadMode.CREATE,
        file,
        srid,
        title,
        description,
        ingestion,
    )
    return MessageResponse(message="Layer created successfully")


@router.put("/{department}/{layer_name}", status_code=201)
async def replace_layer(
    department: str,
    layer_name: str,
    file: fastapi.UploadFile | None = fastapi.File(None),  # noqa: B008
    srid: int = fastapi.Form(..., gt=0),  # noqa: B008
    title: str | None = fastapi.Form(None),  # noqa: B008
    description: str | None = fastapi.Form(None),  # noqa: B008
    ingestion: pipeline.IngestionPipeline = fastapi.Depends(_get_pipeline),  # noqa: B008
) -> MessageResponse:
    """Replace the data of an existing layer.

    The previous table is dropped (cascading) only after the new archive
    has been extracted and translated. If loading fails after that point
    the response is a 500 stating that the layer is currently unavailable.

    Raises:
        IngestionError: As for create_layer; 400 when the layer does not
            exist.
    """
    await _ingest(
        department,
        layer_name,
        LoadMode.REPLACE,
        file,
        srid,
        title,
        description,
        ingestion,
    )
    return MessageResponse(message="Layer updated successfully")


@router.put("/{department}/{layer_name}/metainfo")
async def update_layer_info(
    department: str,
    layer_name: str,
    info: LayerInfo,
    ingestion: pipeline.IngestionPipeline = fastapi.Depends(_get_pipeline),  # noqa: B008
) -> MessageResponse:
    """Update title and description of an existing layer."""
    await ingestion.update_info(
        department,
        layer_name,
        info.title,
        info.description,
    )
    return MessageResponse(message="Metadata updated")
