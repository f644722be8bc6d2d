"""Tests for per-job scratch directories."""

from __future__ import annotations

import asyncio
import logging
import pathlib

import pytest

from geoingest.services import workspace


def test_workspace_removed_on_success(tmp_path: pathlib.Path) -> None:
    async def main() -> pathlib.Path:
        async with workspace.job_workspace(tmp_path, "job1") as workdir:
            assert workdir.is_dir()
            (workdir / "extracted").mkdir()
            (workdir / "extracted" / "parcels.shp").write_bytes(b"shp")
            return workdir

    workdir = asyncio.run(main())
    assert not workdir.exists()
    assert list(tmp_path.iterdir()) == []


def test_workspace_removed_on_exception(tmp_path: pathlib.Path) -> None:
    async def main() -> None:
        async with workspace.job_workspace(tmp_path, "job1") as workdir:
            (workdir / "archive.zip").write_bytes(b"zip")
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(main())
    assert not (tmp_path / "job1").exists()


def test_workspace_refuses_existing_directory(tmp_path: pathlib.Path) -> None:
    (tmp_path / "job1").mkdir()

    async def main() -> None:
        async with workspace.job_workspace(tmp_path, "job1"):
            pass

    with pytest.raises(FileExistsError):
        asyncio.run(main())
    assert (tmp_path / "job1").exists()


def test_remove_tree_missing_directory(tmp_path: pathlib.Path) -> None:
    assert workspace.remove_tree(tmp_path / "gone")


def test_remove_tree_failure_is_logged(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    def broken_rmtree(path: pathlib.Path) -> None:
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(workspace.shutil, "rmtree", broken_rmtree)
    with caplog.at_level(logging.WARNING, logger=workspace.__name__):
        assert not workspace.remove_tree(tmp_path)
    assert "Could not remove job directory" in caplog.text


def test_cleanup_failure_does_not_mask_job_error(
    tmp_path: pathlib.Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_rmtree(path: pathlib.Path) -> None:
        raise OSError("busy")

    monkeypatch.setattr(workspace.shutil, "rmtree", broken_rmtree)

    async def main() -> None:
        async with workspace.job_workspace(tmp_path, "job1"):
            raise ValueError("job failed")

    with pytest.raises(ValueError, match="job failed"):
        asyncio.run(main())
