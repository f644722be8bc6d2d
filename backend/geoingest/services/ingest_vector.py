"""Shapefile loading into PostGIS using shp2pgsql and psql.

This module materializes an extracted shapefile as a schema-qualified
PostGIS table. Loading is a two-step pipeline of external tools:

1. ``shp2pgsql`` translates the shapefile into SQL (CREATE TABLE, INSERTs
   and a spatial index) written to a file in the job directory.
2. ``psql`` executes that file against the configured database with
   ``ON_ERROR_STOP`` so the first failing statement aborts the load.

Both tools are executed with argument lists (no shell) under a bounded
timeout. The table name comes from a validated QualifiedTable, so it never
contains characters that are unsafe in SQL or on a command line.

In ``replace`` mode the existing table is dropped with CASCADE only after
the translation step succeeded; if executing the SQL then fails, the old
table is already gone and PartialReplaceFailure is raised instead of a
plain LoadFailure.

Example:
    Load a shapefile as ``acme.parcels``:
        >>> from geoingest.services import ingest_vector
        >>> await ingest_vector.load_geometry(
        ...     source_path=pathlib.Path("/jobs/abc/extracted/parcels.shp"),
        ...     table=QualifiedTable("acme", "parcels"),
        ...     srid=4326,
        ...     mode=ingest_vector.LoadMode.CREATE,
        ...     settings=settings,
        ...     repo=repo,
        ...     workdir=pathlib.Path("/jobs/abc"),
        ... )

    The commands executed:
        $ shp2pgsql -s 4326 -I -W UTF-8 -g geom -c parcels.shp acme.parcels
        $ psql --no-psqlrc --quiet -v ON_ERROR_STOP=1 \\
        $    --dbname postgresql://... -f /jobs/abc/parcels.sql
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from typing import TYPE_CHECKING

from geoingest.core import errors
from geoingest.utils import toolchain

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Sequence

    from geoingest.core import config
    from geoingest.db import database
    from geoingest.db import models as db_models

logger = logging.getLogger(__name__)

_ERROR_RE = re.compile(r"^(?:psql:.*?)?\s*(?:ERROR|FATAL):", re.MULTILINE)


class LoadMode(enum.StrEnum):
    CREATE = "create"
    REPLACE = "replace"


def build_translate_command(
    source_path: pathlib.Path,
    table: db_models.QualifiedTable,
    srid: int,
    settings: config.Settings,
) -> tuple[str, ...]:
    """Build the shp2pgsql invocation producing CREATE TABLE + INSERT SQL.

    The table is always created (``-c``); replacing an existing table is
    handled by an explicit cascading drop beforehand.
    """
    return (
        settings.shp2pgsql_path,
        "-s",
        str(srid),
        "-I",
        "-W",
        settings.source_encoding,
        "-g",
        settings.geometry_column,
        "-c",
        str(source_path),
        str(table),
    )


def build_execute_command(
    sql_path: pathlib.Path,
    settings: config.Settings,
) -> tuple[str, ...]:
    return (
        settings.psql_path,
        "--no-psqlrc",
        "--quiet",
        "-v",
        "ON_ERROR_STOP=1",
        "--dbname",
        settings.database_url,
        "-f",
        str(sql_path),
    )


def ensure_toolchain(settings: config.Settings) -> None:
    """Check that shp2pgsql and psql can be executed.

    Raises:
        ToolchainUnavailable: if either program is missing.
    """
    for program in (settings.shp2pgsql_path, settings.psql_path):
        try:
            toolchain.find_executable(program)
        except toolchain.ToolNotFound as exc:
            raise errors.ToolchainUnavailable(str(exc)) from exc


async def _run_step(
    command: Sequence[str],
    settings: config.Settings,
    workdir: pathlib.Path,
    stdout_path: pathlib.Path | None = None,
) -> toolchain.CommandResult:
    """Run one toolchain command, translating failures to load errors."""
    try:
        result = await toolchain.run_command(
            command,
            timeout=settings.load_timeout_seconds,
            workdir=workdir,
            stdout_path=stdout_path,
        )
    except toolchain.ToolNotFound as exc:
        raise errors.ToolchainUnavailable(str(exc)) from exc
    except toolchain.CommandTimeout as exc:
        raise errors.LoadTimeout(str(exc)) from exc
    except toolchain.CommandError as exc:
        raise errors.LoadFailure(f"{command[0]} failed: {exc}") from exc

    if _ERROR_RE.search(result.stderr):
        raise errors.LoadFailure(
            f"{command[0]} reported errors: {result.stderr.strip()}"
        )
    return result


async def load_geometry(
    source_path: pathlib.Path,
    table: db_models.QualifiedTable,
    srid: int,
    mode: LoadMode,
    settings: config.Settings,
    repo: database.LayerRepositoryProtocol,
    workdir: pathlib.Path,
) -> None:
    """Load a shapefile into ``table``.

    Args:
        source_path: Extracted ``.shp`` file.
        table: Validated destination table.
        srid: Spatial reference identifier declared for the source.
        mode: CREATE loads into a new table, REPLACE drops the existing
            table (cascading) before loading.
        settings: Toolchain paths, encoding, geometry column, timeout and
            database URL.
        repo: Repository used for schema creation and the drop.
        workdir: Job directory receiving the intermediate SQL file.

    Raises:
        ToolchainUnavailable: shp2pgsql or psql cannot be executed.
        LoadFailure: a tool exited non-zero or reported errors.
        LoadTimeout: a tool exceeded ``load_timeout_seconds``.
        PartialReplaceFailure: REPLACE mode dropped the table and the
            subsequent load failed; the cause is chained.
    """
    ensure_toolchain(settings)

    sql_path = workdir / f"{table.table}.sql"
    await _run_step(
        build_translate_command(source_path, table, srid, settings),
        settings,
        workdir,
        stdout_path=sql_path,
    )
    if not sql_path.exists() or sql_path.stat().st_size == 0:
        raise errors.LoadFailure(f"shp2pgsql produced no SQL for {source_path}")
    logger.info("Translated %s into %s", source_path.name, sql_path.name)

    dropped = False
    if mode is LoadMode.REPLACE:
        await asyncio.to_thread(repo.drop_table, table)
        dropped = True
    else:
        await asyncio.to_thread(repo.ensure_schema, table.schema)

    try:
        await _run_step(build_execute_command(sql_path, settings), settings, workdir)
    except errors.IngestionError as exc:
        if dropped:
            raise errors.PartialReplaceFailure(
                f"{table} was dropped but reloading failed: {exc}"
            ) from exc
        raise

    logger.info("Loaded %s into %s", source_path.name, table)
