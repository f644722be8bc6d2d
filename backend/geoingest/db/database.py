"""Spatial store access and the layer metadata repository.

SpatialStore owns the psycopg2 connection pool. It is opened once at
application startup, closed at shutdown and passed explicitly to the
repository, so no module keeps ambient connection state. Every repository
call borrows one connection for a single transaction and gives it back,
which keeps connections free while the external loader process runs.

The repository covers both halves of a layer: the ``layer_metadata``
catalog row and the geometry table behind it (existence checks, schema
creation, cascading drop and the ``geometry_columns`` descriptor).

Example:
    Open the store and look up a layer:
        >>> from geoingest.core.config import get_settings
        >>> from geoingest.db import database
        >>> store = database.SpatialStore(get_settings())
        >>> store.open()
        >>> repo = database.get_layer_repository(store)
        >>> repo.get("acme", "parcels")
        >>> store.close()
"""

from __future__ import annotations

import contextlib
import datetime
import logging
import threading
from typing import TYPE_CHECKING, Protocol, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool
from psycopg2 import sql

from geoingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator

    from geoingest.core import config

logger = logging.getLogger(__name__)


class SpatialStore:
    """Pooled access to the PostGIS database.

    The pool is bounded by ``db_pool_max_size``; callers beyond that limit
    wait for a free connection instead of failing.
    """

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        self._pool: psycopg2.pool.ThreadedConnectionPool | None = None
        self._slots = threading.BoundedSemaphore(settings.db_pool_max_size)

    @property
    def is_open(self) -> bool:
        return self._pool is not None

    def open(self) -> None:
        """Create the connection pool. Calling it twice is a no-op."""
        if self._pool is not None:
            return
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            self.settings.db_pool_min_size,
            self.settings.db_pool_max_size,
            self.settings.database_url,
        )
        logger.info(
            "Opened spatial store pool (min=%d, max=%d)",
            self.settings.db_pool_min_size,
            self.settings.db_pool_max_size,
        )

    def close(self) -> None:
        """Close every pooled connection."""
        if self._pool is None:
            return
        self._pool.closeall()
        self._pool = None
        logger.info("Closed spatial store pool")

    @contextlib.contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Borrow a connection for one transaction.

        The transaction is committed when the block exits normally and
        rolled back when it raises. The connection always goes back to the
        pool.

        Raises:
            RuntimeError: If the store has not been opened.
        """
        if self._pool is None:
            raise RuntimeError("Spatial store is not open")
        pool = self._pool
        with self._slots:
            conn = pool.getconn()
            try:
                with conn:
                    yield conn
            finally:
                pool.putconn(conn)


class LayerRepositoryProtocol(Protocol):
    """Protocol interface for layer metadata and geometry tables.

    Implementations provide persistence for LayerMetadata objects and the
    table-level operations the ingestion pipeline needs, supporting both
    in-memory (testing) and PostgreSQL (production) backends.
    """

    def get(
        self,
        department: str,
        layer_name: str,
    ) -> db_models.LayerMetadata | None:
        """Find the record of a layer, ignoring the case of both names."""
        ...

    def upsert(
        self,
        layer: db_models.LayerMetadata,
    ) -> db_models.LayerMetadata: ...

    def update_info(
        self,
        department: str,
        layer_name: str,
        title: str | None,
        description: str | None,
    ) -> db_models.LayerMetadata | None: ...

    def table_exists(self, table: db_models.QualifiedTable) -> bool: ...

    def ensure_schema(self, schema: str) -> None: ...

    def drop_table(self, table: db_models.QualifiedTable) -> None: ...

    def geometry_descriptor(
        self,
        table: db_models.QualifiedTable,
    ) -> db_models.GeometryTableDescriptor | None: ...


class InMemoryLayerRepository(LayerRepositoryProtocol):
    """Simple in-memory store for tests and local development.

    Geometry tables are modelled as a mapping from QualifiedTable to the
    descriptor PostGIS would report (None for a table without a geometry
    column). Data is lost when the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._store: dict[tuple[str, str], db_models.LayerMetadata] = {}
        self.tables: dict[
            db_models.QualifiedTable,
            db_models.GeometryTableDescriptor | None,
        ] = {}
        self.schemas: set[str] = set()
        self.dropped: list[db_models.QualifiedTable] = []

    def get(
        self,
        department: str,
        layer_name: str,
    ) -> db_models.LayerMetadata | None:
        wanted = (department.lower(), layer_name.lower())
        for layer in self._store.values():
            if (layer.department.lower(), layer.layer_name.lower()) == wanted:
                return layer
        return None

    def upsert(
        self,
        layer: db_models.LayerMetadata,
    ) -> db_models.LayerMetadata:
        """Insert the layer or refresh srid/geometry type of the existing one.

        Title and description of an existing record are only replaced when
        the incoming layer carries them.
        """
        existing = self._store.get(layer.key)
        if existing is None:
            self._store[layer.key] = layer
            return layer
        existing.srid = layer.srid
        existing.geometry_type = layer.geometry_type
        if layer.title is not None:
            existing.title = layer.title
        if layer.description is not None:
            existing.description = layer.description
        return existing

    def update_info(
        self,
        department: str,
        layer_name: str,
        title: str | None,
        description: str | None,
    ) -> db_models.LayerMetadata | None:
        existing = self.get(department, layer_name)
        if existing is None:
            return None
        existing.title = title
        existing.description = description
        return existing

    def table_exists(self, table: db_models.QualifiedTable) -> bool:
        return table in self.tables

    def ensure_schema(self, schema: str) -> None:
        self.schemas.add(schema)

    def drop_table(self, table: db_models.QualifiedTable) -> None:
        self.tables.pop(table, None)
        self.dropped.append(table)

    def geometry_descriptor(
        self,
        table: db_models.QualifiedTable,
    ) -> db_models.GeometryTableDescriptor | None:
        return self.tables.get(table)


class PostgresLayerRepository(LayerRepositoryProtocol):
    """PostgreSQL/PostGIS-backed repository.

    Persists layer metadata in ``layer_metadata`` and operates on geometry
    tables through the shared SpatialStore. Creates the PostGIS extension
    and the catalog table on initialization.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS layer_metadata (
      id SERIAL PRIMARY KEY,
      department TEXT NOT NULL,
      layer_name TEXT NOT NULL,
      title TEXT,
      description TEXT,
      srid INTEGER,
      geometry_type TEXT,
      created_at TIMESTAMPTZ DEFAULT now(),
      UNIQUE (department, layer_name)
    );
    """

    UPSERT_SQL = """
    INSERT INTO layer_metadata (
        department, layer_name, title, description, srid, geometry_type,
        created_at
    ) VALUES (%(department)s, %(layer_name)s, %(title)s, %(description)s,
        %(srid)s, %(geometry_type)s, %(created_at)s)
    ON CONFLICT (department, layer_name) DO UPDATE SET
        srid = EXCLUDED.srid,
        geometry_type = EXCLUDED.geometry_type,
        title = COALESCE(EXCLUDED.title, layer_metadata.title),
        description = COALESCE(EXCLUDED.description,
                               layer_metadata.description)
    RETURNING department, layer_name, title, description, srid,
        geometry_type, created_at;
    """

    def __init__(self, store: SpatialStore) -> None:
        """Initialize repository on an open spatial store.

        Args:
            store: Opened SpatialStore shared by the application.
        """
        self.store = store
        self._ensure_schema()

    def _cursor(
        self,
        conn: psycopg2.extensions.connection,
    ) -> psycopg2.extensions.cursor:
        return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)

    def _ensure_schema(self) -> None:
        """Ensure the PostGIS extension and layer_metadata table exist."""
        with self.store.connection() as conn, conn.cursor() as cur:
            cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            cur.execute(self.CREATE_TABLE_SQL)

    def get(
        self,
        department: str,
        layer_name: str,
    ) -> db_models.LayerMetadata | None:
        with self.store.connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                """
                SELECT department, layer_name, title, description, srid,
                    geometry_type, created_at
                FROM layer_metadata
                WHERE lower(department) = lower(%s)
                    AND lower(layer_name) = lower(%s)
                """,
                (department, layer_name),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, object], row))

    def upsert(
        self,
        layer: db_models.LayerMetadata,
    ) -> db_models.LayerMetadata:
        """Insert or update the record keyed by (department, layer_name).

        A single ``INSERT ... ON CONFLICT`` statement, so two writers of the
        same key cannot interleave.
        """
        with self.store.connection() as conn, self._cursor(conn) as cur:
            cur.execute(self.UPSERT_SQL, self._to_row(layer))
            row = cur.fetchone()
        return self._from_row(cast(dict[str, object], row))

    def update_info(
        self,
        department: str,
        layer_name: str,
        title: str | None,
        description: str | None,
    ) -> db_models.LayerMetadata | None:
        with self.store.connection() as conn, self._cursor(conn) as cur:
            cur.execute(
                """
                UPDATE layer_metadata
                SET title = %s, description = %s
                WHERE lower(department) = lower(%s)
                    AND lower(layer_name) = lower(%s)
                RETURNING department, layer_name, title, description, srid,
                    geometry_type, created_at
                """,
                (title, description, department, layer_name),
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self._from_row(cast(dict[str, object], row))

    def table_exists(self, table: db_models.QualifiedTable) -> bool:
        with self.store.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM pg_catalog.pg_tables
                    WHERE schemaname = %s AND tablename = %s
                )
                """,
                (table.schema, table.table),
            )
            row = cur.fetchone()
        return bool(row and row[0])

    def ensure_schema(self, schema: str) -> None:
        with self.store.connection() as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(
                    sql.Identifier(schema)
                )
            )

    def drop_table(self, table: db_models.QualifiedTable) -> None:
        """Drop the table together with every object depending on it."""
        with self.store.connection() as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL("DROP TABLE IF EXISTS {}.{} CASCADE").format(
                    sql.Identifier(table.schema),
                    sql.Identifier(table.table),
                )
            )
        logger.info("Dropped table %s", table)

    def geometry_descriptor(
        self,
        table: db_models.QualifiedTable,
    ) -> db_models.GeometryTableDescriptor | None:
        """Read SRID and geometry type of the table from geometry_columns."""
        with self.store.connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                SELECT srid, type FROM geometry_columns
                WHERE f_table_schema = %s AND f_table_name = %s
                ORDER BY f_geometry_column
                LIMIT 1
                """,
                (table.schema, table.table),
            )
            row = cur.fetchone()
        if row is None:
            return None
        srid, geometry_type = row
        return db_models.GeometryTableDescriptor(int(srid), str(geometry_type))

    @staticmethod
    def _to_row(layer: db_models.LayerMetadata) -> dict[str, object]:
        """Convert LayerMetadata to a parameter dictionary for SQL."""
        return {
            "department": layer.department,
            "layer_name": layer.layer_name,
            "title": layer.title,
            "description": layer.description,
            "srid": layer.srid,
            "geometry_type": layer.geometry_type,
            "created_at": layer.created_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.LayerMetadata:
        """Convert a database row dictionary to LayerMetadata."""
        created_at = row.get("created_at")
        if not isinstance(created_at, datetime.datetime):
            created_at = datetime.datetime.now(datetime.UTC)
        title = row.get("title")
        description = row.get("description")
        return db_models.LayerMetadata(
            department=str(row["department"]),
            layer_name=str(row["layer_name"]),
            srid=int(cast(int, row["srid"])),
            geometry_type=str(row["geometry_type"]),
            title=str(title) if title is not None else None,
            description=str(description) if description is not None else None,
            created_at=created_at,
        )


def get_layer_repository(store: SpatialStore) -> LayerRepositoryProtocol:
    """Factory function to create a layer repository.

    Args:
        store: Opened spatial store.

    Returns:
        PostgresLayerRepository instance for production use.
    """
    return PostgresLayerRepository(store)
