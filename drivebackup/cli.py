"""
Command line entry point.

Exit codes:
    0 - backup uploaded (or listing printed)
    1 - permission check or a pipeline stage failed
    2 - missing configuration or invalid backup type
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable, List, Optional

from drivebackup import configure_logging
from drivebackup.config import Config
from drivebackup.models import RemoteFile
from drivebackup.backup.dump import BackupKind, InvalidBackupKindError
from drivebackup.backup.executor import (
    BackupError,
    BackupExecutor,
    BackupStageError,
    execute_backup_job
)
from drivebackup.backup.storage import GoogleDriveStorage, StorageError, create_drive_service


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

BANNER = """
╔═══════════════════════════════════════════════════════════════════════════╗
║                        MongoDB Backup Utility                             ║
╚═══════════════════════════════════════════════════════════════════════════╝
"""

MENU = (
    "Choose backup type:\n"
    "1. Full Backup\n"
    "2. Incremental Backup\n"
    "3. Differential Backup\n"
    "Enter option (1-3): "
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='drivebackup',
        description='Dump MongoDB databases, zip them and upload the archives to Google Drive.'
    )
    parser.add_argument(
        '--kind',
        choices=[kind.value for kind in BackupKind],
        help='Backup type (default: BACKUP_KIND, otherwise ask interactively)'
    )
    parser.add_argument(
        '--database',
        action='append',
        dest='databases',
        metavar='NAME',
        help='Database to back up, may be repeated (default: DB_NAMES)'
    )
    parser.add_argument(
        '--schedule',
        action='store_true',
        help='Keep running and back up on the BACKUP_CRON schedule'
    )
    parser.add_argument(
        '--no-sweep',
        action='store_true',
        help='Do not delete old local backups'
    )
    parser.add_argument(
        '--list',
        action='store_true',
        help='Only list the backups stored in Google Drive'
    )
    parser.add_argument(
        '--env-file',
        help='Path of a .env file to load'
    )
    return parser


def prompt_backup_kind(input_func=None) -> BackupKind:
    """
    Ask for the backup type on the terminal.

    Raises:
        InvalidBackupKindError: If the answer is not 1, 2 or 3
    """
    print(BANNER)
    answer = (input_func or input)(MENU).strip()
    if answer not in ('1', '2', '3'):
        raise InvalidBackupKindError(f"Invalid option: {answer}")
    return BackupKind.parse(answer)


def print_manifest(files: Iterable[RemoteFile]):
    """Print the backups stored in Google Drive."""
    print('\nListing all backups in Google Drive:')
    count = 0
    for remote_file in files:
        created = 'unknown'
        if remote_file.created_time:
            created = remote_file.created_time.astimezone().strftime('%Y-%m-%d %H:%M:%S')
        print(f"- {remote_file.name} (Created: {created})")
        print(f"  Link: {remote_file.web_view_link}")
        count += 1
    if count == 0:
        print('No backups found.')


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = Config.from_env(args.env_file)
    configure_logging(config.LOG_DIR, config.LOG_LEVEL)

    if args.databases:
        config.DB_NAMES = args.databases

    missing = config.validate()
    if missing and not args.list:
        logger.error(f"Missing required configuration: {', '.join(missing)}")
        return EXIT_USAGE

    Path(config.BACKUP_DIR).mkdir(parents=True, exist_ok=True)

    try:
        service = create_drive_service(config.GOOGLE_CREDENTIALS_FILE, timeout=config.REQUEST_TIMEOUT)
    except StorageError as e:
        logger.error(f"Backup process failed: {e}")
        return EXIT_FAILURE

    storage = GoogleDriveStorage(
        service,
        share_with=config.SHARE_WITH_EMAIL,
        folder_name=config.DRIVE_FOLDER_NAME
    )

    if args.list:
        try:
            print_manifest(storage.list_backups())
        except StorageError as e:
            logger.error(f"Failed to list backups: {e}")
            return EXIT_FAILURE
        return EXIT_OK

    executor = BackupExecutor(
        storage,
        backup_dir=config.BACKUP_DIR,
        mongodb_uri=config.MONGODB_URI,
        dump_command=config.DUMP_COMMAND,
        dump_timeout=config.DUMP_TIMEOUT
    )
    retention_days = 0 if args.no_sweep else config.DELETION_DAYS

    try:
        kind_value = args.kind or config.BACKUP_KIND
        if kind_value:
            backup_kind = BackupKind.parse(kind_value)
        elif args.schedule:
            backup_kind = BackupKind.FULL
        else:
            backup_kind = prompt_backup_kind()
    except InvalidBackupKindError as e:
        logger.error(f"{e}. Exiting...")
        return EXIT_USAGE

    if args.schedule:
        from drivebackup.scheduler import run_scheduled
        try:
            run_scheduled(
                executor,
                config.DB_NAMES,
                backup_kind,
                retention_days,
                config.BACKUP_CRON,
                run_now=True
            )
        except ValueError as e:
            logger.error(f"Invalid BACKUP_CRON '{config.BACKUP_CRON}': {e}")
            return EXIT_USAGE
        return EXIT_OK

    try:
        results = execute_backup_job(executor, config.DB_NAMES, backup_kind, retention_days)
    except BackupStageError as e:
        logger.error(f"Backup failed at {e.stage}: {e.error}")
        return EXIT_FAILURE
    except BackupError as e:
        logger.error(f"Backup process failed: {e}")
        return EXIT_FAILURE

    print(f"{backup_kind.label} backup completed successfully.")
    for remote_file in results:
        print(f"File available at: {remote_file.web_view_link}")

    try:
        print_manifest(storage.list_backups())
    except StorageError as e:
        logger.warning(f"Could not list backups: {e}")

    return EXIT_OK


def run():
    sys.exit(main())


if __name__ == '__main__':
    run()
