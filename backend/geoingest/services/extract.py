"""Archive extraction and geometry source discovery.

The staged zip is expanded into a directory that must not exist yet, so a
job never mixes its files with anything left over from another run. Before
writing anything, every member is checked: absolute paths or ``..``
components that would land outside the destination, and archives whose
uncompressed size exceeds the configured limit, are rejected.

After extraction the tree is searched recursively for the ESRI shapefile
(``.shp``) to load. Exactly one is required; macOS resource-fork folders
(``__MACOSX``) and dotfiles are ignored.

Example:
    Extract a staged upload and find its shapefile:
        >>> from geoingest.services import extract
        >>> extract.extract_archive(
        ...     pathlib.Path("/jobs/abc/archive.zip"),
        ...     pathlib.Path("/jobs/abc/extracted"),
        ...     max_extracted_bytes=2 * 1024**3,
        ... )
        >>> extract.find_geometry_source(pathlib.Path("/jobs/abc/extracted"))
        PosixPath('/jobs/abc/extracted/parcels.shp')
"""

from __future__ import annotations

import logging
import pathlib
import zipfile

from geoingest.core import errors

logger = logging.getLogger(__name__)

GEOMETRY_SOURCE_SUFFIX = ".shp"
IGNORED_DIRECTORIES = frozenset({"__MACOSX"})


def _check_members(
    archive: zipfile.ZipFile,
    destination: pathlib.Path,
    max_extracted_bytes: int,
) -> None:
    root = destination.resolve()
    total = 0
    for info in archive.infolist():
        target = (root / info.filename).resolve()
        if not target.is_relative_to(root):
            raise errors.ExtractionError(
                f"Archive member {info.filename!r} escapes the destination"
            )
        total += info.file_size
        if total > max_extracted_bytes:
            raise errors.ExtractionError(
                f"Archive expands beyond {max_extracted_bytes} bytes"
            )


def extract_archive(
    archive_path: pathlib.Path,
    destination: pathlib.Path,
    max_extracted_bytes: int,
) -> pathlib.Path:
    """Expand ``archive_path`` into the new directory ``destination``.

    Args:
        archive_path: Staged zip archive.
        destination: Directory to create and extract into. Must not exist.
        max_extracted_bytes: Upper bound of the summed uncompressed size.

    Returns:
        The destination directory.

    Raises:
        ExtractionError: corrupt archive, unsafe member path, archive too
            large once expanded, or destination that cannot be created.
    """
    try:
        destination.mkdir(parents=True, exist_ok=False)
    except OSError as exc:
        raise errors.ExtractionError(
            f"Cannot create extraction directory {destination}: {exc}"
        ) from exc

    try:
        with zipfile.ZipFile(archive_path) as archive:
            _check_members(archive, destination, max_extracted_bytes)
            archive.extractall(destination)
    except errors.ExtractionError:
        raise
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as exc:
        raise errors.ExtractionError(
            f"Cannot extract {archive_path}: {exc}"
        ) from exc

    logger.info("Extracted %s into %s", archive_path.name, destination)
    return destination


def _is_ignored(path: pathlib.Path, root: pathlib.Path) -> bool:
    parts = path.relative_to(root).parts
    return any(
        part in IGNORED_DIRECTORIES or part.startswith(".") for part in parts
    )


def find_geometry_source(root: pathlib.Path) -> pathlib.Path:
    """Locate the single shapefile inside an extracted archive.

    Raises:
        NoGeometrySource: if the tree holds no ``.shp`` file.
        AmbiguousGeometrySource: if it holds more than one.
    """
    candidates = sorted(
        path
        for path in root.rglob("*")
        if path.is_file()
        and path.suffix.lower() == GEOMETRY_SOURCE_SUFFIX
        and not _is_ignored(path, root)
    )
    if not candidates:
        raise errors.NoGeometrySource(f"No .shp file found under {root}")
    if len(candidates) > 1:
        names = [str(path.relative_to(root)) for path in candidates]
        raise errors.AmbiguousGeometrySource(
            f"Multiple .shp files found: {names}"
        )

    logger.debug("Geometry source is %s", candidates[0])
    return candidates[0]
