"""
Backup module for drivebackup.

This module handles the core backup functionality including:
- Database dumps (full, incremental, differential)
- Compression
- Storage (Google Drive)
- Execution orchestration
- Local retention sweeps
"""

from .executor import BackupExecutor, execute_backup_job
from .dump import BackupKind, run_dump
from .compression import create_archive
from .storage import GoogleDriveStorage, create_drive_service
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'execute_backup_job',
    'BackupKind',
    'run_dump',
    'create_archive',
    'GoogleDriveStorage',
    'create_drive_service',
    'RetentionManager'
]
