"""
Compression handler for backup archives.

A dump directory is packed into a single zip archive at maximum
compression. The archive is only reported as created once it has been
flushed to disk and closed.
"""

import os
import zipfile
from datetime import datetime
from pathlib import Path


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def create_archive(source_directory: str, archive_path: str) -> str:
    """
    Create a zip archive from the contents of a directory.

    Entries are stored relative to source_directory, so extracting the
    archive recreates the directory contents without the directory itself.

    Args:
        source_directory: Directory to compress
        archive_path: Full path of the zip file to write

    Returns:
        archive_path

    Raises:
        CompressionError: If the source cannot be read or the archive
            cannot be written
    """
    source = Path(source_directory)
    if not source.is_dir():
        raise CompressionError(f"Source directory does not exist: {source_directory}")

    try:
        with open(archive_path, 'wb') as output:
            with zipfile.ZipFile(output, 'w', zipfile.ZIP_DEFLATED, compresslevel=9) as zipf:
                _add_directory_to_zip(zipf, source)
            # ZipFile.close() has written the central directory, push it to disk
            output.flush()
            os.fsync(output.fileno())
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise CompressionError(f"Failed to create archive: {e}") from e


def _add_directory_to_zip(zipf: zipfile.ZipFile, directory: Path):
    """
    Recursively add directory contents to zip archive.

    Args:
        zipf: ZipFile object
        directory: Directory whose contents are added
    """
    for item in sorted(directory.rglob('*')):
        relative_path = item.relative_to(directory)
        if item.is_dir():
            # Keep empty directories (mongodump writes one per database)
            if not any(item.iterdir()):
                zipf.write(item, f"{relative_path.as_posix()}/")
        elif item.is_file():
            zipf.write(item, relative_path.as_posix())
        else:
            raise CompressionError(f"Invalid path type: {item}")


def generate_backup_name(database_name: str, backup_kind: str, timestamp: datetime = None) -> str:
    """
    Generate a standardized backup name.

    Format: {database}_{kind}_{YYYY-MM-DDTHH-MM-SS-ffffff}

    Every character that is not safe in a filename or URI is replaced with
    an underscore.

    Args:
        database_name: Name of the database being backed up
        backup_kind: Backup kind value (full, incremental, differential)
        timestamp: Run start time (default: now)

    Returns:
        Name without path or extension
    """
    timestamp = timestamp or datetime.now()
    stamp = timestamp.strftime('%Y-%m-%dT%H-%M-%S-%f')

    raw_name = f"{database_name}_{backup_kind}_{stamp}"
    return "".join(
        c if c.isascii() and (c.isalnum() or c in ('-', '_')) else '_'
        for c in raw_name
    )


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")
