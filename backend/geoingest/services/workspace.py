"""Per-job scratch directories with guaranteed cleanup.

Each ingestion job works inside ``<storage_dir>/<job_id>/``: the staged
archive, the extracted files and the generated SQL all live there. The
directory is created when the job starts and removed when it ends,
whatever the outcome.

Example:
    >>> async with workspace.job_workspace(settings.storage_dir, job_id) as workdir:
    ...     archive = staging.stage_upload(upload, workdir, ...)
    ... # workdir and everything in it is gone here, even on exception
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import pathlib
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


def remove_tree(path: pathlib.Path) -> bool:
    """Remove ``path`` recursively, logging instead of raising.

    Returns:
        True if the directory is gone afterwards.
    """
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return True
    except OSError:
        logger.warning("Could not remove job directory %s", path, exc_info=True)
        return False
    logger.debug("Removed job directory %s", path)
    return True


@contextlib.asynccontextmanager
async def job_workspace(
    storage_dir: pathlib.Path,
    job_id: str,
) -> AsyncIterator[pathlib.Path]:
    """Create a job directory and remove it on every exit path.

    Removal problems are logged and never raised, so they cannot replace
    the exception (or result) of the job itself.

    Args:
        storage_dir: Parent scratch directory.
        job_id: Unique job identifier naming the directory.

    Yields:
        The job directory.
    """
    workdir = storage_dir / job_id
    await asyncio.to_thread(workdir.mkdir, parents=True, exist_ok=False)
    try:
        yield workdir
    finally:
        await asyncio.to_thread(remove_tree, workdir)
