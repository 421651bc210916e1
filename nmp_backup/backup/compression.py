"""
Archive codec for backup archives.

Every archive is a gzip compressed tar named <name>.tar.gz. The staging
directory is packed with backup_meta.json as the first member so listings can
read the metadata without decompressing the whole archive.

Archives are written to a hidden .partial file next to the final path and
moved into place with os.replace() once fully flushed, so a crash never
leaves a truncated archive under its final name.
"""

import gzip
import json
import logging
import os
import tarfile
import tempfile
import zlib
from pathlib import Path
from typing import Any, Dict, List

from .errors import ArchiveCorrupt, ArchiveError, ArchiveNotFound


logger = logging.getLogger(__name__)


ARCHIVE_EXTENSION = '.tar.gz'
METADATA_FILENAME = 'backup_meta.json'
PARTIAL_SUFFIX = '.partial'

# Errors raised by tarfile/gzip when an archive cannot be decoded
DECODE_ERRORS = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)


def create_archive(source_dir: str, output_path: str, compress: bool = True) -> str:
    """
    Pack a directory into a .tar.gz archive, atomically.

    Members are stored relative to source_dir, metadata first.

    Args:
        source_dir: Directory to pack (the staging directory)
        output_path: Final archive path, including the .tar.gz extension
        compress: False stores data with gzip level 0 (still a valid .tar.gz)

    Returns:
        output_path

    Raises:
        ArchiveError: If the archive cannot be written or moved into place
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise ArchiveError(f"Source directory does not exist: {source_dir}")

    output_dir = os.path.dirname(os.path.abspath(output_path))
    compresslevel = 9 if compress else 0

    try:
        fd, temp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(output_path)}.",
            suffix=PARTIAL_SUFFIX,
            dir=output_dir
        )
    except OSError as e:
        raise ArchiveError(f"Failed to create temporary archive in {output_dir}: {e}") from e

    moved = False
    try:
        with os.fdopen(fd, 'wb') as raw:
            with tarfile.open(fileobj=raw, mode='w:gz', compresslevel=compresslevel) as tar:
                _add_tree(tar, source)
            raw.flush()
            os.fsync(raw.fileno())

        if os.path.getsize(temp_path) == 0:
            raise ArchiveError("Archive is empty after writing")

        os.replace(temp_path, output_path)
        moved = True
    except (OSError, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to create archive: {e}") from e
    finally:
        if not moved:
            _remove_quietly(temp_path)

    return output_path


def _add_tree(tar: tarfile.TarFile, source: Path):
    metadata = source / METADATA_FILENAME
    if metadata.is_file():
        tar.add(metadata, arcname=METADATA_FILENAME)

    for entry in sorted(source.iterdir()):
        if entry.name == METADATA_FILENAME:
            continue
        tar.add(entry, arcname=entry.name, recursive=True)


def extract_archive(archive_path: str, dest_dir: str) -> List[str]:
    """
    Unpack an archive into dest_dir.

    Members with absolute paths, '..' components or device entries are
    rejected before anything is written.

    Args:
        archive_path: Path to a .tar.gz archive
        dest_dir: Directory to extract into (created if missing)

    Returns:
        Names of the extracted members

    Raises:
        ArchiveNotFound: If the archive does not exist
        ArchiveCorrupt: If the archive cannot be decoded or is unsafe
        ArchiveError: On other I/O failures
    """
    if not os.path.isfile(archive_path):
        raise ArchiveNotFound(archive_path)

    dest = Path(dest_dir)
    try:
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, 'r:gz') as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member)
            _drain(tar)

            if hasattr(tarfile, 'data_filter'):
                tar.extractall(dest, members=members, filter='data')
            else:
                tar.extractall(dest, members=members)
    except DECODE_ERRORS as e:
        raise ArchiveCorrupt(f"Archive {os.path.basename(archive_path)} is corrupt: {e}") from e
    except OSError as e:
        raise ArchiveError(f"Failed to extract {archive_path}: {e}") from e

    return [member.name for member in members]


def _check_member(member: tarfile.TarInfo):
    name = member.name
    parts = Path(name).parts
    if name.startswith(('/', '\\')) or os.path.isabs(name) or '..' in parts:
        raise ArchiveCorrupt(f"Unsafe path in archive: {name}")
    if member.isdev():
        raise ArchiveCorrupt(f"Device entry in archive: {name}")


def _drain(tar: tarfile.TarFile):
    # tarfile stops at the end-of-archive marker; reading the rest of the
    # gzip stream makes a truncated archive fail its trailer check
    while tar.fileobj.read(1024 * 1024):
        pass


def read_archive_metadata(archive_path: str) -> Dict[str, Any]:
    """
    Read backup_meta.json from the head of an archive.

    Only the first member is inspected; archives that do not start with the
    metadata file (e.g. produced by other tools) yield an empty dict.

    Raises:
        ArchiveCorrupt: If the archive header cannot be decoded
    """
    try:
        with tarfile.open(archive_path, 'r|gz') as tar:
            member = tar.next()
            if member is None or member.name != METADATA_FILENAME or not member.isfile():
                return {}
            handle = tar.extractfile(member)
            data = json.load(handle)
    except DECODE_ERRORS + (OSError, ValueError) as e:
        raise ArchiveCorrupt(f"Cannot read metadata from {os.path.basename(archive_path)}: {e}") from e

    return data if isinstance(data, dict) else {}


def verify_archive(archive_path: str) -> List[str]:
    """
    Decode an archive end to end.

    Returns:
        Member names

    Raises:
        ArchiveNotFound: If the archive does not exist
        ArchiveCorrupt: If any part fails to decode
    """
    if not os.path.isfile(archive_path):
        raise ArchiveNotFound(archive_path)

    names = []
    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            for member in tar:
                names.append(member.name)
                if member.isfile():
                    handle = tar.extractfile(member)
                    while handle.read(1024 * 1024):
                        pass
            _drain(tar)
    except DECODE_ERRORS + (OSError,) as e:
        raise ArchiveCorrupt(f"Archive {os.path.basename(archive_path)} is corrupt: {e}") from e

    return names


def write_metadata(dest_dir: str, metadata: Dict[str, Any]) -> str:
    """Write backup_meta.json into a staging directory."""
    path = os.path.join(dest_dir, METADATA_FILENAME)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(metadata, f, indent=2, ensure_ascii=False)
    return path


def safe_archive_name(name: str) -> str:
    """
    Sanitize a backup name for use as an archive base filename.

    Anything other than letters, digits, '-', '_' and '.' becomes '_';
    leading dots are stripped so archives are never hidden files.
    """
    safe = "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in name.strip()
    ).lstrip('.')
    return safe or 'backup'


def strip_archive_extension(filename: str) -> str:
    """Strip the .tar.gz extension from a filename, if present."""
    if filename.endswith(ARCHIVE_EXTENSION):
        return filename[:-len(ARCHIVE_EXTENSION)]
    return os.path.splitext(filename)[0]


def is_archive_filename(filename: str) -> bool:
    """True for visible *.tar.gz names (temp .partial files never match)."""
    return filename.endswith(ARCHIVE_EXTENSION) and not filename.startswith('.')


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}") from e


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        # Leftover .partial files never match *.tar.gz, so listings ignore them
        logger.warning(f"Failed to remove partial archive {path}: {e}")
