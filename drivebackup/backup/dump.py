"""
Database dump handling.

The dump tool (mongodump by default) is treated as an opaque command that
either produces a directory tree at the requested output path or exits with
a non-zero status and a diagnostic on stderr.

Supported backup kinds:
- full: plain dump
- incremental: passes --incremental through to the tool
- differential: passes --oplog through to the tool
"""

import logging
import subprocess
from enum import Enum
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)


class DumpError(Exception):
    """Raised when the external dump command fails."""

    def __init__(self, message: str, stderr: str = '', returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class InvalidBackupKindError(ValueError):
    """Raised when an unknown backup kind is requested."""
    pass


class BackupKind(Enum):
    FULL = 'full'
    INCREMENTAL = 'incremental'
    DIFFERENTIAL = 'differential'

    @property
    def dump_flags(self) -> List[str]:
        """Extra command line flags for this kind. Passed through unchecked."""
        return list(_DUMP_FLAGS[self])

    @property
    def label(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value) -> 'BackupKind':
        """
        Resolve a backup kind from an enum member, its value or a menu choice.

        Args:
            value: BackupKind, 'full'/'incremental'/'differential' or '1'/'2'/'3'

        Returns:
            Matching BackupKind

        Raises:
            InvalidBackupKindError: If value does not name a backup kind
        """
        if isinstance(value, cls):
            return value

        text = str(value).strip().lower() if value is not None else ''
        if text in _MENU_CHOICES:
            return _MENU_CHOICES[text]

        for kind in cls:
            if kind.value == text:
                return kind

        raise InvalidBackupKindError(f"Invalid backup type: {value}")


_DUMP_FLAGS = {
    BackupKind.FULL: (),
    BackupKind.INCREMENTAL: ('--incremental',),
    BackupKind.DIFFERENTIAL: ('--oplog',),
}

_MENU_CHOICES = {
    '1': BackupKind.FULL,
    '2': BackupKind.INCREMENTAL,
    '3': BackupKind.DIFFERENTIAL,
}


def build_dump_command(
    dump_command: str,
    mongodb_uri: str,
    database_name: str,
    output_path: str,
    backup_kind: BackupKind
) -> List[str]:
    """
    Build the argument list for the dump tool.

    The database name is appended to the connection URI, so MONGODB_URI is
    expected to end with the path separator (e.g. mongodb://host:27017/).
    """
    return [
        dump_command,
        f'--uri={mongodb_uri}{database_name}',
        f'--out={output_path}',
        *backup_kind.dump_flags,
    ]


def run_dump(
    mongodb_uri: str,
    database_name: str,
    output_path: str,
    backup_kind: BackupKind,
    dump_command: str = 'mongodump',
    timeout: Optional[float] = None
) -> str:
    """
    Run the dump tool and wait for it to exit.

    Args:
        mongodb_uri: Connection string prefix
        database_name: Database to dump
        output_path: Directory the tool should write into
        backup_kind: Selects the extra flags
        dump_command: Executable to run
        timeout: Seconds before the process is killed (None = no limit)

    Returns:
        output_path, once the tool has exited successfully

    Raises:
        DumpError: If the tool is missing, times out, exits non-zero or
            produces no output directory
    """
    command = build_dump_command(dump_command, mongodb_uri, database_name, output_path, backup_kind)
    # Don't log the command itself, the URI may carry credentials
    logger.info(f"Running {dump_command} for database {database_name} ({backup_kind.value})")

    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False
        )
    except FileNotFoundError as e:
        raise DumpError(f"Dump command not found: {dump_command}") from e
    except subprocess.TimeoutExpired as e:
        # TimeoutExpired carries raw bytes even with text=True
        stderr = e.stderr or ''
        if isinstance(stderr, bytes):
            stderr = stderr.decode('utf-8', errors='replace')
        stderr = stderr.strip()
        raise DumpError(f"Dump of {database_name} timed out after {timeout}s", stderr=stderr) from e
    except OSError as e:
        raise DumpError(f"Failed to start {dump_command}: {e}") from e

    if result.returncode != 0:
        stderr = (result.stderr or '').strip()
        raise DumpError(
            f"Error backing up database {database_name} (exit code {result.returncode}): {stderr}",
            stderr=stderr,
            returncode=result.returncode
        )

    if not Path(output_path).is_dir():
        raise DumpError(f"Dump of {database_name} produced no output at {output_path}")

    return output_path
