"""Ingestion pipeline orchestration.

IngestionPipeline runs one upload through its stages::

    RECEIVED -> STAGED -> EXTRACTED -> LOADED -> RECONCILED
        any stage -> FAILED

1. Department and layer names are validated before any file is written
   or any process is started.
2. The job gets its own scratch directory (see ``services.workspace``),
   removed whatever the outcome.
3. The upload is staged and extracted and its shapefile located.
4. Under the lock of the target table, the layer's state is checked
   (create requires an unused name, replace requires an existing layer),
   the geometry is loaded and the catalog record reconciled.

Stages are never re-entered and nothing is retried: a failed job has to be
resubmitted. Every failure surfaces as an IngestionError subclass; anything
unexpected is logged with its traceback and wrapped in IngestionError.

Example:
    >>> pipeline = IngestionPipeline(settings, repo)
    >>> layer = await pipeline.ingest(
    ...     IngestionRequest(
    ...         department="acme",
    ...         layer_name="parcels",
    ...         mode=LoadMode.CREATE,
    ...         srid=4326,
    ...         upload=ArchiveUpload("parcels.zip", "application/zip", fh),
    ...     )
    ... )
    >>> layer.geometry_type
    'MULTIPOLYGON'
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import uuid
from typing import TYPE_CHECKING

from geoingest.core import errors
from geoingest.services import (
    extract,
    ingest_vector,
    locks,
    naming,
    reconcile,
    staging,
    workspace,
)
from geoingest.services.ingest_vector import LoadMode

if TYPE_CHECKING:
    import pathlib

    from geoingest.core import config
    from geoingest.db import database
    from geoingest.db import models as db_models

logger = logging.getLogger(__name__)

EXTRACT_DIR_NAME = "extracted"


class JobState(enum.StrEnum):
    RECEIVED = "received"
    STAGED = "staged"
    EXTRACTED = "extracted"
    LOADED = "loaded"
    RECONCILED = "reconciled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.RECONCILED, JobState.FAILED})


@dataclasses.dataclass
class IngestionRequest:
    """One create or replace request as handed over by the API."""

    department: str
    layer_name: str
    mode: LoadMode
    srid: int
    upload: staging.ArchiveUpload | None
    title: str | None = None
    description: str | None = None


@dataclasses.dataclass
class IngestionJob:
    """Ephemeral state of a request moving through the pipeline.

    The job exclusively owns ``workdir`` and everything below it.
    """

    department: str
    layer_name: str
    mode: LoadMode
    srid: int
    table: db_models.QualifiedTable
    job_id: str = dataclasses.field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.RECEIVED
    workdir: pathlib.Path | None = None
    archive_path: pathlib.Path | None = None
    extract_dir: pathlib.Path | None = None
    source_path: pathlib.Path | None = None
    error: errors.IngestionError | None = None

    def advance(self, state: JobState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Job {self.job_id} already {self.state}")
        logger.info(
            "Job %s (%s %s): %s -> %s",
            self.job_id,
            self.mode,
            self.table,
            self.state,
            state,
        )
        self.state = state

    def fail(self, error: errors.IngestionError) -> None:
        self.error = error
        self.state = JobState.FAILED


class IngestionPipeline:
    """Sequences staging, extraction, loading and reconciliation.

    Attributes:
        settings: Application settings.
        repo: Layer repository backed by the shared spatial store.
        locks: Per-table lock table serializing Load+Reconcile.
    """

    def __init__(
        self,
        settings: config.Settings,
        repo: database.LayerRepositoryProtocol,
        key_locks: locks.KeyedLock | None = None,
    ) -> None:
        self.settings = settings
        self.repo = repo
        self.locks = key_locks or locks.KeyedLock()

    async def ingest(self, request: IngestionRequest) -> db_models.LayerMetadata:
        """Run a request to completion.

        Returns:
            The reconciled LayerMetadata.

        Raises:
            IngestionError: the job failed; the concrete subclass names the
                reason.
        """
        try:
            table = naming.qualified_table(
                request.department, request.layer_name
            )
        except errors.InvalidIdentifier as exc:
            logger.warning("Rejected %s request: %s", request.mode, exc)
            raise
        job = IngestionJob(
            department=request.department,
            layer_name=request.layer_name,
            mode=request.mode,
            srid=request.srid,
            table=table,
        )
        logger.info(
            "Job %s received: %s %s (srid=%d)",
            job.job_id,
            job.mode,
            job.table,
            job.srid,
        )

        try:
            async with workspace.job_workspace(
                self.settings.storage_dir, job.job_id
            ) as workdir:
                job.workdir = workdir
                return await self._run(job, request)
        except errors.IngestionError as exc:
            self._fail(job, exc)
            raise
        except Exception as exc:
            error = errors.IngestionError(f"{type(exc).__name__}: {exc}")
            logger.exception("Job %s hit an unexpected error", job.job_id)
            self._fail(job, error)
            raise error from exc

    async def _run(
        self,
        job: IngestionJob,
        request: IngestionRequest,
    ) -> db_models.LayerMetadata:
        assert job.workdir is not None
        settings = self.settings

        job.archive_path = await asyncio.to_thread(
            staging.stage_upload,
            request.upload,
            job.workdir,
            settings.max_upload_size_bytes,
            settings.allowed_content_types,
        )
        job.advance(JobState.STAGED)

        job.extract_dir = await asyncio.to_thread(
            extract.extract_archive,
            job.archive_path,
            job.workdir / EXTRACT_DIR_NAME,
            settings.max_extracted_bytes,
        )
        job.source_path = await asyncio.to_thread(
            extract.find_geometry_source, job.extract_dir
        )
        job.advance(JobState.EXTRACTED)

        async with self.locks.hold(job.table):
            await self._check_target(job)
            await ingest_vector.load_geometry(
                source_path=job.source_path,
                table=job.table,
                srid=job.srid,
                mode=job.mode,
                settings=settings,
                repo=self.repo,
                workdir=job.workdir,
            )
            job.advance(JobState.LOADED)

            try:
                layer = await reconcile.reconcile_metadata(
                    self.repo,
                    job.department,
                    job.layer_name,
                    job.table,
                    title=request.title,
                    description=request.description,
                )
            except errors.GeometryNotFound:
                if job.mode is LoadMode.CREATE:
                    await self._discard_table(job)
                raise
            job.advance(JobState.RECONCILED)

        return layer

    async def _check_target(self, job: IngestionJob) -> None:
        """Verify the layer's current state allows the requested mode.

        Metadata is matched case-insensitively; a replace continues under
        the casing the layer was created with.

        Raises:
            DuplicateLayer: create mode and the layer or its table exists.
            LayerNotFound: replace mode and no metadata record exists.
        """
        existing = await asyncio.to_thread(
            self.repo.get, job.department, job.layer_name
        )
        if job.mode is LoadMode.CREATE:
            if existing is not None or await asyncio.to_thread(
                self.repo.table_exists, job.table
            ):
                raise errors.DuplicateLayer(
                    f"{job.department}/{job.layer_name} already exists "
                    f"as {job.table}"
                )
        elif existing is None:
            raise errors.LayerNotFound(
                f"{job.department}/{job.layer_name} has no metadata record"
            )
        else:
            # The record keeps the casing it was created with.
            job.department = existing.department
            job.layer_name = existing.layer_name

    async def _discard_table(self, job: IngestionJob) -> None:
        """Drop a table created by this job that could not be catalogued.

        A table without a metadata record would block both create and
        replace of the layer.
        """
        logger.warning(
            "Job %s: dropping %s, it has no registered geometry column",
            job.job_id,
            job.table,
        )
        await asyncio.to_thread(self.repo.drop_table, job.table)

    def _fail(self, job: IngestionJob, error: errors.IngestionError) -> None:
        job.fail(error)
        if isinstance(error, errors.PartialReplaceFailure):
            logger.critical(
                "Job %s: layer %s/%s is missing from the spatial store "
                "and needs operator attention: %s",
                job.job_id,
                job.department,
                job.layer_name,
                error,
            )
        elif error.status_code < 500:
            logger.warning(
                "Job %s rejected (%s): %s",
                job.job_id,
                type(error).__name__,
                error,
            )
        else:
            logger.error(
                "Job %s failed (%s): %s",
                job.job_id,
                type(error).__name__,
                error,
            )

    async def update_info(
        self,
        department: str,
        layer_name: str,
        title: str | None,
        description: str | None,
    ) -> db_models.LayerMetadata:
        """Replace title and description of an existing layer.

        Raises:
            InvalidIdentifier: if department or layer name is invalid.
            LayerNotFound: if the layer has no metadata record.
        """
        naming.qualified_table(department, layer_name)
        layer = await asyncio.to_thread(
            self.repo.update_info, department, layer_name, title, description
        )
        if layer is None:
            raise errors.LayerNotFound(
                f"{department}/{layer_name} has no metadata record"
            )
        logger.info("Updated title/description of %s/%s", department, layer_name)
        return layer
