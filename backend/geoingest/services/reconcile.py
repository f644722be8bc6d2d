"""Metadata reconciliation after a successful load.

The SRID and geometry type recorded in ``layer_metadata`` are never taken
from the caller: they are read back from PostGIS' ``geometry_columns`` for
the table that was just loaded, and only then written to the catalog.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from geoingest.core import errors
from geoingest.db import models as db_models

if TYPE_CHECKING:
    from geoingest.db import database

logger = logging.getLogger(__name__)


async def reconcile_metadata(
    repo: database.LayerRepositoryProtocol,
    department: str,
    layer_name: str,
    table: db_models.QualifiedTable,
    title: str | None = None,
    description: str | None = None,
) -> db_models.LayerMetadata:
    """Upsert the catalog record of a freshly loaded table.

    Args:
        repo: Layer repository.
        department: Department as supplied by the caller.
        layer_name: Layer name as supplied by the caller.
        table: Table that was loaded for this layer.
        title: Optional title; kept from the existing record when None.
        description: Optional description; kept from the existing record
            when None.

    Returns:
        The stored LayerMetadata.

    Raises:
        GeometryNotFound: if PostGIS has no geometry column registered for
            ``table`` (the load produced a non-spatial or missing table).
    """
    descriptor = await asyncio.to_thread(repo.geometry_descriptor, table)
    if descriptor is None:
        raise errors.GeometryNotFound(f"No geometry_columns entry for {table}")

    layer = await asyncio.to_thread(
        repo.upsert,
        db_models.LayerMetadata(
            department=department,
            layer_name=layer_name,
            srid=descriptor.srid,
            geometry_type=descriptor.geometry_type,
            title=title,
            description=description,
        ),
    )
    logger.info(
        "Reconciled %s/%s: srid=%d geometry_type=%s",
        department,
        layer_name,
        layer.srid,
        layer.geometry_type,
    )
    return layer
