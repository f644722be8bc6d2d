"""Data models for layer metadata and spatial tables.

This module defines the core data structures shared by the repository and
the ingestion pipeline. LayerMetadata mirrors one row of the
``layer_metadata`` catalog table, QualifiedTable names a schema-qualified
geometry table in the spatial store, and GeometryTableDescriptor is the
read-only projection of PostGIS' ``geometry_columns`` view for one table.

Example:
    Creating a LayerMetadata instance after a load:
        >>> from geoingest.db.models import LayerMetadata
        >>> layer = LayerMetadata(
        ...     department="acme",
        ...     layer_name="parcels",
        ...     srid=4326,
        ...     geometry_type="MULTIPOLYGON",
        ... )
        >>> layer.table
        QualifiedTable(schema='acme', table='parcels')
"""

from __future__ import annotations

import dataclasses
import datetime
from typing import NamedTuple


class QualifiedTable(NamedTuple):
    """A schema-qualified table name in the spatial store.

    Instances are expected to be built by
    ``geoingest.services.naming.qualified_table``, which validates both
    parts before they reach SQL or a command line.
    """

    schema: str
    table: str

    def __str__(self) -> str:
        return f"{self.schema}.{self.table}"


class GeometryTableDescriptor(NamedTuple):
    srid: int
    geometry_type: str


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.UTC)


@dataclasses.dataclass
class LayerMetadata:
    """Catalog record of a layer loaded into the spatial store.

    Attributes:
        department: Department the layer belongs to, as supplied by the
            caller.
        layer_name: Layer name within the department, as supplied by the
            caller.
        srid: Spatial reference identifier read back from PostGIS.
        geometry_type: Geometry type read back from PostGIS
            ("POINT", "MULTIPOLYGON", ...).
        title: Optional human readable title.
        description: Optional free-text description.
        created_at: Timestamp when the record was first written.
    """

    department: str
    layer_name: str
    srid: int
    geometry_type: str
    title: str | None = None
    description: str | None = None
    created_at: datetime.datetime = dataclasses.field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.department, self.layer_name)

    @property
    def table(self) -> QualifiedTable:
        return QualifiedTable(
            self.department.lower(),
            self.layer_name.lower(),
        )
