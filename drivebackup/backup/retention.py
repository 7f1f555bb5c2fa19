"""
Retention policy enforcement for local backups.

Deletes entries in the local backup directory that are older than the
configured retention period. The sweep is best effort: a file that cannot
be inspected or removed is logged and skipped.
"""

import logging
import os
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Removes aged entries from a local backup directory.

    Entries created at or after not_after (the start of a backup that is
    currently running) are never touched, whatever their age.
    """

    def __init__(self):
        """Initialize retention manager."""
        self.logs = []

    def sweep(
        self,
        directory: str,
        max_age: timedelta,
        now: Optional[datetime] = None,
        not_after: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Delete directory entries older than max_age.

        Args:
            directory: Local backup directory
            max_age: Entries older than this are deleted
            now: Reference time (default: current time)
            not_after: Skip entries with a timestamp at or after this time

        Returns:
            Dict with summary of the sweep:
            {
                'deleted': List[str],
                'errors': List[str],
                'logs': List[str]
            }
        """
        now = now or datetime.now()
        cutoff = now - max_age
        summary = {
            'deleted': [],
            'errors': []
        }

        self._log(f"Sweeping {directory} for backups older than {max_age.days} days")

        try:
            entries = sorted(Path(directory).iterdir())
        except OSError as e:
            error_msg = f"Error reading backup directory {directory}: {e}"
            self._log(error_msg, logging.ERROR)
            summary['errors'].append(error_msg)
            summary['logs'] = self.logs
            return summary

        for entry in entries:
            try:
                entry_time = datetime.fromtimestamp(entry.lstat().st_mtime)
            except OSError as e:
                error_msg = f"Error getting file stats for {entry}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)
                continue

            if not_after is not None and entry_time >= not_after:
                continue
            if entry_time >= cutoff:
                continue

            try:
                _remove_entry(entry)
                summary['deleted'].append(str(entry))
                self._log(f"Deleted old backup: {entry}")
            except OSError as e:
                error_msg = f"Error deleting old backup file {entry}: {e}"
                self._log(error_msg, logging.ERROR)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention sweep complete. "
            f"Deleted: {len(summary['deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level used for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def _remove_entry(entry: Path):
    if entry.is_dir() and not entry.is_symlink():
        shutil.rmtree(entry)
    else:
        os.remove(entry)


def sweep_old_backups(
    directory: str,
    retention_days: int,
    not_after: Optional[datetime] = None
) -> Dict[str, Any]:
    """
    Enforce the local retention period for a backup directory.

    This function is run by the scheduler in the background.

    Returns:
        Summary dict from RetentionManager.sweep()
    """
    manager = RetentionManager()
    return manager.sweep(directory, timedelta(days=retention_days), not_after=not_after)
