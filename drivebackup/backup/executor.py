"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create BackupRun record (status: running)
2. Dump the database with the external dump tool
3. Create compressed archive
4. Upload to Google Drive
5. Cleanup local dump directory and archive
6. Update BackupRun (status: success/failed)

Each step starts only after the previous one has fully completed. A failure
in steps 2-4 aborts the run and is re-raised to the caller; a failure in
step 5 is only logged.
"""

import logging
import os
import shutil
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from drivebackup.models import BackupRun, RemoteFile
from .dump import BackupKind, DumpError, run_dump
from .compression import create_archive, generate_backup_name, get_archive_size, CompressionError
from .storage import GoogleDriveStorage, StorageError


logger = logging.getLogger(__name__)


class BackupError(Exception):
    """Base class for errors that abort a backup run."""
    pass


class PermissionDeniedError(BackupError):
    """Raised when the storage permission pre-check fails."""
    pass


class BackupInProgressError(BackupError):
    """Raised when a backup of the same database is already running."""
    pass


class BackupStageError(BackupError):
    """Raised when a pipeline stage (dump, archive, upload) fails."""

    def __init__(self, stage: str, error: Exception):
        super().__init__(f"{stage} failed: {error}")
        self.stage = stage
        self.error = error


# One lock per database name, shared by every executor in the process
_run_locks: Dict[str, threading.Lock] = {}
_run_locks_guard = threading.Lock()


def _get_run_lock(database_name: str) -> threading.Lock:
    with _run_locks_guard:
        lock = _run_locks.get(database_name)
        if lock is None:
            lock = threading.Lock()
            _run_locks[database_name] = lock
        return lock


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a database.

    Each call to execute() owns its BackupRun, so one executor can serve
    backups of different databases from several threads. The record of the
    most recently finished run is kept in last_run.
    """

    def __init__(
        self,
        storage: GoogleDriveStorage,
        backup_dir: str,
        mongodb_uri: str,
        dump_command: str = 'mongodump',
        dump_timeout: Optional[float] = None
    ):
        """
        Initialize backup executor.

        Args:
            storage: Storage handler the archives are uploaded with
            backup_dir: Local directory for dumps and archives
            mongodb_uri: Connection string prefix passed to the dump tool
            dump_command: Dump executable
            dump_timeout: Seconds before the dump is aborted (None = no limit)
        """
        self.storage = storage
        self.backup_dir = backup_dir
        self.mongodb_uri = mongodb_uri
        self.dump_command = dump_command
        self.dump_timeout = dump_timeout
        self.last_run = None

    def check_permissions(self):
        """
        Verify the storage credentials before anything is touched on disk.

        Raises:
            PermissionDeniedError: If the storage permission check fails
        """
        if not self.storage.check_permissions():
            raise PermissionDeniedError("Failed to verify Google Drive permissions")

    def execute(self, database_name: str, backup_kind) -> RemoteFile:
        """
        Back up one database.

        Args:
            database_name: Database to dump
            backup_kind: BackupKind or its value

        Returns:
            RemoteFile of the uploaded archive

        Raises:
            ValueError: If database_name is empty
            InvalidBackupKindError: If backup_kind is unknown
            BackupInProgressError: If this database is already being backed up
            BackupStageError: If the dump, archive or upload stage fails
        """
        if not database_name or not database_name.strip():
            raise ValueError("Database name must not be empty")
        backup_kind = BackupKind.parse(backup_kind)

        lock = _get_run_lock(database_name)
        if not lock.acquire(blocking=False):
            raise BackupInProgressError(f"A backup of {database_name} is already running")

        run = BackupRun(
            database_name=database_name,
            backup_kind=backup_kind.value,
            started_at=datetime.now()
        )
        try:
            self._log(run, f"Starting {backup_kind.value.upper()} database backup of {database_name}")

            try:
                self._execute_workflow(run, backup_kind)

                run.status = 'success'
                run.completed_at = datetime.now()
                self._log(run, "Backup completed successfully")

            except BackupStageError as e:
                run.status = 'failed'
                run.completed_at = datetime.now()
                run.failed_stage = e.stage
                run.error_message = str(e.error)
                self._log(run, f"Backup failed during {e.stage}: {e.error}", logging.ERROR)
                raise

            except Exception as e:
                run.status = 'failed'
                run.completed_at = datetime.now()
                run.error_message = str(e)
                self._log(run, f"Backup failed: {e}", logging.ERROR)
                raise

            # Cleanup only once the upload has succeeded
            self._cleanup(run)
            return run.remote_file

        finally:
            self.last_run = run
            lock.release()

    def _execute_workflow(self, run: BackupRun, backup_kind: BackupKind):
        """Execute the main backup workflow steps."""
        backup_name = generate_backup_name(run.database_name, backup_kind.value, run.started_at)
        output_path = os.path.join(self.backup_dir, backup_name)

        # Step 1: Dump database
        try:
            Path(self.backup_dir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupStageError('dump', e) from e

        self._log(run, f"Dumping database to {output_path}")
        try:
            run.local_directory_path = run_dump(
                self.mongodb_uri,
                run.database_name,
                output_path,
                backup_kind,
                dump_command=self.dump_command,
                timeout=self.dump_timeout
            )
        except DumpError as e:
            # mongodump may leave a partial directory behind
            run.local_directory_path = output_path
            raise BackupStageError('dump', e) from e
        self._log(run, f"Database {run.database_name} backed up successfully")

        # Step 2: Create archive
        self._log(run, "Creating zip file...")
        try:
            archive_path = create_archive(run.local_directory_path, f"{output_path}.zip")
            run.file_size_bytes = get_archive_size(archive_path)
        except CompressionError as e:
            raise BackupStageError('archive', e) from e
        run.archive_path = archive_path
        self._log(
            run,
            f"Archive created: {os.path.basename(archive_path)} "
            f"({run.file_size_bytes / 1024 / 1024:.2f} MB)"
        )

        # Step 3: Upload to Google Drive
        self._log(run, "Uploading to Google Drive...")
        try:
            run.remote_file = self.storage.upload(archive_path)
        except (StorageError, OSError) as e:
            raise BackupStageError('upload', e) from e
        self._log(run, f"Backup uploaded successfully, available at: {run.remote_file.web_view_link}")

    def _cleanup(self, run: BackupRun):
        """Remove the dump directory and archive. Failures are only logged."""
        self._log(run, "Cleaning up local files...")

        directory = run.local_directory_path
        if directory and os.path.exists(directory):
            try:
                shutil.rmtree(directory)
            except OSError as e:
                self._log(run, f"Warning: cleanup failed for {directory}: {e}", logging.WARNING)

        archive = run.archive_path
        if archive and os.path.exists(archive):
            try:
                os.remove(archive)
            except OSError as e:
                self._log(run, f"Warning: cleanup failed for {archive}: {e}", logging.WARNING)

        self._log(run, "Local cleanup completed")

    def _log(self, run: BackupRun, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to a run.

        Args:
            run: Run the message belongs to
            message: Log message
            level: Level used for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        run.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{run.database_name}] {message}")


def execute_backup_job(
    executor: BackupExecutor,
    database_names: Sequence[str],
    backup_kind,
    retention_days: int = 0,
    sweep_in_background: bool = True
) -> List[RemoteFile]:
    """
    Run a complete backup job for one or more databases.

    Verifies storage permissions first, then starts the retention sweep of
    the backup directory (in the background unless disabled) and backs up
    each database in turn.

    Args:
        executor: Configured BackupExecutor
        database_names: Databases to back up, in order
        backup_kind: BackupKind or its value
        retention_days: Local retention period (0 disables the sweep)
        sweep_in_background: Run the sweep beside the backups

    Returns:
        List of uploaded RemoteFiles, one per database

    Raises:
        PermissionDeniedError: If the storage pre-check fails
        BackupError: If any database backup fails
    """
    backup_kind = BackupKind.parse(backup_kind)
    if not database_names:
        raise ValueError("No databases configured")

    executor.check_permissions()

    if retention_days > 0:
        started_at = datetime.now()
        if sweep_in_background:
            from drivebackup.scheduler import start_retention_sweep
            start_retention_sweep(executor.backup_dir, retention_days, not_after=started_at)
        else:
            from .retention import sweep_old_backups
            sweep_old_backups(executor.backup_dir, retention_days, not_after=started_at)

    results = []
    for database_name in database_names:
        results.append(executor.execute(database_name, backup_kind))
    return results
