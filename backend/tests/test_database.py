"""Tests for the spatial store and layer repositories.

This module covers:
- SpatialStore: pool lifecycle and per-transaction connection borrowing,
  with psycopg2's pool replaced by a fake.
- InMemoryLayerRepository: upsert semantics and table bookkeeping.
- PostgresLayerRepository: the SQL it issues and row conversion, run
  against a fake store so no database is needed.
"""

from __future__ import annotations

import contextlib
import datetime
from typing import TYPE_CHECKING, Any

import pytest
from psycopg2 import sql

from geoingest.core import config
from geoingest.db import database
from geoingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator


class FakeCursor:
    def __init__(self, conn: FakeConn) -> None:
        self.conn = conn

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    def execute(self, statement: Any, params: Any = None) -> None:
        self.conn.executed.append((statement, params))

    def fetchone(self) -> Any:
        return self.conn.rows.pop(0) if self.conn.rows else None


class FakeConn:
    def __init__(self) -> None:
        self.executed: list[tuple[Any, Any]] = []
        self.rows: list[Any] = []
        self.committed = 0
        self.rolled_back = 0
        self.cursor_factories: list[Any] = []

    def __enter__(self) -> FakeConn:
        return self

    def __exit__(self, exc_type: Any, *args: Any) -> None:
        if exc_type is None:
            self.committed += 1
        else:
            self.rolled_back += 1

    def cursor(self, cursor_factory: Any = None) -> FakeCursor:
        self.cursor_factories.append(cursor_factory)
        return FakeCursor(self)


class FakeStore:
    def __init__(self) -> None:
        self.conn = FakeConn()

    @contextlib.contextmanager
    def connection(self) -> Iterator[FakeConn]:
        with self.conn:
            yield self.conn


def _identifiers(statement: Any) -> list[str]:
    assert isinstance(statement, sql.Composed)
    return [
        part.string
        for part in statement.seq
        if isinstance(part, sql.Identifier)
    ]


def _postgres_repo() -> tuple[database.PostgresLayerRepository, FakeConn]:
    store = FakeStore()
    repo = database.PostgresLayerRepository(store)  # type: ignore[arg-type]
    store.conn.executed.clear()
    return repo, store.conn


def test_spatial_store_requires_open() -> None:
    store = database.SpatialStore(config.Settings())
    assert not store.is_open
    with pytest.raises(RuntimeError):
        with store.connection():
            pass


def test_spatial_store_borrows_and_returns(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    created: list[Any] = []

    class FakePool:
        def __init__(self, minconn: int, maxconn: int, dsn: str) -> None:
            self.args = (minconn, maxconn, dsn)
            self.out: list[FakeConn] = []
            self.returned: list[FakeConn] = []
            self.closed = False
            created.append(self)

        def getconn(self) -> FakeConn:
            conn = FakeConn()
            self.out.append(conn)
            return conn

        def putconn(self, conn: FakeConn) -> None:
            self.returned.append(conn)

        def closeall(self) -> None:
            self.closed = True

    monkeypatch.setattr(
        database.psycopg2.pool, "ThreadedConnectionPool", FakePool
    )
    settings = config.Settings(db_pool_min_size=2, db_pool_max_size=4)
    store = database.SpatialStore(settings)
    store.open()
    store.open()
    assert len(created) == 1
    pool = created[0]
    assert pool.args == (2, 4, settings.database_url)

    with store.connection() as conn:
        assert conn is pool.out[0]
    assert pool.returned == [pool.out[0]]
    assert pool.out[0].committed == 1

    with pytest.raises(ValueError):
        with store.connection():
            raise ValueError("boom")
    assert pool.returned[-1] is pool.out[1]
    assert pool.out[1].rolled_back == 1

    store.close()
    assert pool.closed
    assert not store.is_open


def test_in_memory_repository_upsert_inserts_then_updates() -> None:
    repo = database.InMemoryLayerRepository()
    first = repo.upsert(
        db_models.LayerMetadata(
            "acme", "parcels", 4326, "MULTIPOLYGON", title="Parcels"
        )
    )
    assert repo.get("acme", "parcels") is first

    updated = repo.upsert(
        db_models.LayerMetadata("acme", "parcels", 3857, "POLYGON")
    )
    assert updated is first
    assert updated.srid == 3857
    assert updated.geometry_type == "POLYGON"
    assert updated.title == "Parcels"


def test_in_memory_repository_update_info() -> None:
    repo = database.InMemoryLayerRepository()
    assert repo.update_info("acme", "parcels", "t", "d") is None
    repo.upsert(db_models.LayerMetadata("acme", "parcels", 4326, "POINT"))
    layer = repo.update_info("acme", "parcels", "Title", "Description")
    assert layer is not None
    assert (layer.title, layer.description) == ("Title", "Description")


def test_in_memory_repository_tables() -> None:
    repo = database.InMemoryLayerRepository()
    table = db_models.QualifiedTable("acme", "parcels")
    descriptor = db_models.GeometryTableDescriptor(4326, "POINT")
    assert not repo.table_exists(table)
    repo.tables[table] = descriptor
    assert repo.table_exists(table)
    assert repo.geometry_descriptor(table) == descriptor
    repo.drop_table(table)
    assert not repo.table_exists(table)
    assert repo.dropped == [table]
    repo.ensure_schema("acme")
    assert "acme" in repo.schemas


def test_postgres_repository_bootstraps_catalog() -> None:
    store = FakeStore()
    database.PostgresLayerRepository(store)  # type: ignore[arg-type]
    statements = [statement for statement, _ in store.conn.executed]
    assert "CREATE EXTENSION IF NOT EXISTS postgis" in statements[0]
    assert "CREATE TABLE IF NOT EXISTS layer_metadata" in statements[1]
    assert "UNIQUE (department, layer_name)" in statements[1]


def test_postgres_repository_upsert_uses_on_conflict() -> None:
    repo, conn = _postgres_repo()
    created_at = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)
    conn.rows.append(
        {
            "department": "acme",
            "layer_name": "parcels",
            "title": None,
            "description": None,
            "srid": 4326,
            "geometry_type": "MULTIPOLYGON",
            "created_at": created_at,
        }
    )
    layer = repo.upsert(
        db_models.LayerMetadata("acme", "parcels", 4326, "MULTIPOLYGON")
    )
    statement, params = conn.executed[0]
    assert "ON CONFLICT (department, layer_name) DO UPDATE" in statement
    assert params["department"] == "acme"
    assert params["srid"] == 4326
    assert layer.created_at == created_at
    assert layer.geometry_type == "MULTIPOLYGON"


def test_postgres_repository_get_missing() -> None:
    repo, conn = _postgres_repo()
    assert repo.get("acme", "missing") is None
    _, params = conn.executed[0]
    assert params == ("acme", "missing")


def test_postgres_repository_geometry_descriptor() -> None:
    repo, conn = _postgres_repo()
    table = db_models.QualifiedTable("acme", "parcels")
    conn.rows.append((4326, "MULTIPOLYGON"))
    descriptor = repo.geometry_descriptor(table)
    assert descriptor == db_models.GeometryTableDescriptor(4326, "MULTIPOLYGON")
    statement, params = conn.executed[0]
    assert "geometry_columns" in statement
    assert params == ("acme", "parcels")

    assert repo.geometry_descriptor(table) is None


def test_postgres_repository_drop_table_cascades() -> None:
    repo, conn = _postgres_repo()
    repo.drop_table(db_models.QualifiedTable("acme", "parcels"))
    statement, _ = conn.executed[0]
    assert _identifiers(statement) == ["acme", "parcels"]
    assert any(
        isinstance(part, sql.SQL) and "CASCADE" in part.string
        for part in statement.seq
    )


def test_postgres_repository_ensure_schema_quotes_identifier() -> None:
    repo, conn = _postgres_repo()
    repo.ensure_schema("acme")
    statement, _ = conn.executed[0]
    assert _identifiers(statement) == ["acme"]


def test_postgres_repository_table_exists() -> None:
    repo, conn = _postgres_repo()
    conn.rows.append((True,))
    assert repo.table_exists(db_models.QualifiedTable("acme", "parcels"))
    assert not repo.table_exists(db_models.QualifiedTable("acme", "other"))


def test_postgres_repository_from_row() -> None:
    row = {
        "department": "acme",
        "layer_name": "parcels",
        "title": "Parcels",
        "description": None,
        "srid": 4326,
        "geometry_type": "MULTIPOLYGON",
        "created_at": datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC),
    }
    layer = database.PostgresLayerRepository._from_row(row)
    assert layer.key == ("acme", "parcels")
    assert layer.title == "Parcels"
    assert layer.description is None
    assert layer.srid == 4326


def test_postgres_repository_to_row() -> None:
    layer = db_models.LayerMetadata(
        "acme", "parcels", 4326, "MULTIPOLYGON", description="All parcels"
    )
    row = database.PostgresLayerRepository._to_row(layer)
    assert row["department"] == "acme"
    assert row["description"] == "All parcels"
    assert row["created_at"] is layer.created_at


def test_in_memory_repository_lookup_ignores_case() -> None:
    repo = database.InMemoryLayerRepository()
    stored = repo.upsert(
        db_models.LayerMetadata("Acme", "Parcels", 4326, "POINT")
    )
    assert repo.get("acme", "PARCELS") is stored
    assert repo.update_info("ACME", "parcels", "Title", None) is stored
    assert stored.title == "Title"


def test_postgres_repository_lookups_ignore_case() -> None:
    repo, conn = _postgres_repo()
    repo.get("Acme", "Parcels")
    repo.update_info("Acme", "Parcels", "t", None)
    for statement, _ in conn.executed:
        assert "lower(department) = lower(%s)" in statement
        assert "lower(layer_name) = lower(%s)" in statement
