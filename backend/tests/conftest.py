"""Shared fixtures for the ingestion tests.

The external toolchain is replaced by FakeToolchain: shp2pgsql writes a
small SQL file, and psql registers the table in an InMemoryLayerRepository
with a configurable geometry descriptor, the way PostGIS would after a real
load. Failures, delays and concurrency tracking are configurable per test.
"""

from __future__ import annotations

import asyncio
import io
import zipfile
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest

from geoingest.core import config
from geoingest.db import database
from geoingest.db import models as db_models
from geoingest.utils import toolchain

if TYPE_CHECKING:
    import pathlib


class FakeToolchain:
    """Stand-in for toolchain.run_command and toolchain.find_executable."""

    def __init__(self, repo: database.InMemoryLayerRepository) -> None:
        self.repo = repo
        self.calls: list[list[str]] = []
        self.descriptor: db_models.GeometryTableDescriptor | None = (
            db_models.GeometryTableDescriptor(4326, "MULTIPOLYGON")
        )
        self.fail_program: str | None = None
        self.failure: Exception = toolchain.CommandError(
            "psql:/jobs/x.sql:3: ERROR:  syntax error"
        )
        self.missing_programs: set[str] = set()
        self.load_delay = 0.0
        self.active_loads = 0
        self.max_active_loads = 0
        self._pending: dict[str, db_models.QualifiedTable] = {}

    def find_executable(self, program: str) -> str:
        if program in self.missing_programs:
            raise toolchain.ToolNotFound(f"{program}: not found")
        return program

    async def run_command(
        self,
        command: Any,
        *,
        timeout: float,
        workdir: pathlib.Path | None = None,
        stdout_path: pathlib.Path | None = None,
    ) -> toolchain.CommandResult:
        args = [str(part) for part in command]
        self.calls.append(args)
        program = args[0]
        if program == self.fail_program:
            raise self.failure

        if program == "shp2pgsql":
            assert stdout_path is not None
            schema, table = args[-1].split(".")
            self._pending[str(stdout_path)] = db_models.QualifiedTable(
                schema, table
            )
            stdout_path.write_text(
                f'BEGIN;\nCREATE TABLE "{schema}"."{table}" (gid serial);\n'
                "COMMIT;\n"
            )
            return toolchain.CommandResult(0, "", "")

        self.active_loads += 1
        self.max_active_loads = max(self.max_active_loads, self.active_loads)
        try:
            await asyncio.sleep(self.load_delay)
        finally:
            self.active_loads -= 1
        loaded = self._pending.pop(args[-1])
        self.repo.tables[loaded] = self.descriptor
        return toolchain.CommandResult(0, "", "")

    def programs(self) -> list[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    test_settings = config.Settings(
        storage_dir=tmp_path / "jobs",
        allow_origins=["*"],
        load_timeout_seconds=5,
    )
    test_settings.ensure_directories()
    return test_settings


@pytest.fixture
def repo() -> database.InMemoryLayerRepository:
    return database.InMemoryLayerRepository()


@pytest.fixture
def fake_toolchain(
    monkeypatch: pytest.MonkeyPatch,
    repo: database.InMemoryLayerRepository,
) -> FakeToolchain:
    fake = FakeToolchain(repo)
    monkeypatch.setattr(toolchain, "run_command", fake.run_command)
    monkeypatch.setattr(toolchain, "find_executable", fake.find_executable)
    return fake


@pytest.fixture
def make_zip() -> Callable[..., bytes]:
    """Build an in-memory zip archive from ``{name: content}``."""

    def _make_zip(members: dict[str, bytes] | None = None) -> bytes:
        if members is None:
            members = {
                "parcels.shp": b"shp",
                "parcels.shx": b"shx",
                "parcels.dbf": b"dbf",
                "parcels.prj": b"prj",
            }
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            for name, content in members.items():
                archive.writestr(name, content)
        return buffer.getvalue()

    return _make_zip
