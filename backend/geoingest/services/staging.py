"""Archive staging: persist an uploaded zip into the job directory.

The stager only checks what can be known without opening the archive:
that a file was sent, that its content type is an accepted archive type,
that it is not empty and that it fits the upload size limit. Archive
structure is validated by the extractor.
"""

from __future__ import annotations

import dataclasses
import logging
import shutil
import tempfile
from typing import IO, TYPE_CHECKING

from geoingest.core import errors

if TYPE_CHECKING:
    import pathlib
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
ARCHIVE_NAME = "archive.zip"


@dataclasses.dataclass
class ArchiveUpload:
    """An uploaded file as received from the HTTP layer.

    Attributes:
        filename: Client-side file name, if any.
        content_type: Declared content type, if any.
        file: Binary stream positioned at the start of the payload.
    """

    filename: str | None
    content_type: str | None
    file: IO[bytes] | None


def _normalize_content_type(content_type: str | None) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def stage_upload(
    upload: ArchiveUpload | None,
    destination: pathlib.Path,
    max_size: int,
    allowed_content_types: Iterable[str],
) -> pathlib.Path:
    """Persist an uploaded archive to disk with validation.

    The payload is streamed in chunks into a temporary file inside
    ``destination`` and moved to ``archive.zip`` once complete.

    Args:
        upload: The uploaded archive.
        destination: Job directory that receives the archive.
        max_size: Maximum allowed payload size in bytes.
        allowed_content_types: Accepted content types.

    Returns:
        Path to the staged archive.

    Raises:
        InvalidUpload: missing file, wrong content type or empty payload.
        UploadTooLarge: payload larger than ``max_size``.
    """
    if upload is None or upload.file is None or not upload.filename:
        raise errors.InvalidUpload("No file was uploaded")

    content_type = _normalize_content_type(upload.content_type)
    allowed = {_normalize_content_type(value) for value in allowed_content_types}
    if content_type not in allowed:
        raise errors.InvalidUpload(
            f"Unsupported content type {content_type!r} for {upload.filename!r}"
        )

    stream = upload.file
    destination.mkdir(parents=True, exist_ok=True)
    target_path = destination / ARCHIVE_NAME
    with tempfile.NamedTemporaryFile(delete=False, dir=destination) as tmp:
        size = 0
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            size += len(chunk)
            if size > max_size:
                raise errors.UploadTooLarge(
                    f"Upload {upload.filename!r} exceeds {max_size} bytes"
                )

            tmp.write(chunk)

        tmp.flush()

    if size == 0:
        raise errors.InvalidUpload(f"Upload {upload.filename!r} is empty")

    shutil.move(tmp.name, target_path)
    logger.info("Staged %s (%d bytes) at %s", upload.filename, size, target_path)

    return target_path
