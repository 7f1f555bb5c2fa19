import os
from typing import List, Mapping, Optional

from dotenv import load_dotenv


DEFAULT_BACKUP_DIR = './backup'
DEFAULT_DELETION_DAYS = 10
DEFAULT_FOLDER_NAME = 'BbBackupService'


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _parse_float(value: Optional[str]) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class Config:
    """Runtime configuration, read from the environment"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ

        # Local storage
        self.BACKUP_DIR = env.get('BACKUP_DIR') or DEFAULT_BACKUP_DIR
        # Non-numeric values fall back to the default, 0 disables the sweep
        self.DELETION_DAYS = _parse_int(env.get('DELETION_DAYS'), DEFAULT_DELETION_DAYS)

        # Database
        self.DB_NAMES = [
            name.strip() for name in (env.get('DB_NAMES') or '').split(',') if name.strip()
        ]
        self.MONGODB_URI = env.get('MONGODB_URI', '')
        self.DUMP_COMMAND = env.get('DUMP_COMMAND') or 'mongodump'
        self.DUMP_TIMEOUT = _parse_float(env.get('DUMP_TIMEOUT'))
        self.BACKUP_KIND = env.get('BACKUP_KIND') or None

        # Google Drive
        self.GOOGLE_CREDENTIALS_FILE = env.get('GOOGLE_CREDENTIALS_FILE') or 'credentials.json'
        self.SHARE_WITH_EMAIL = env.get('USEREMAIL', '').strip()
        self.DRIVE_FOLDER_NAME = env.get('DRIVE_FOLDER_NAME') or DEFAULT_FOLDER_NAME
        self.REQUEST_TIMEOUT = _parse_float(env.get('REQUEST_TIMEOUT')) or 60.0

        # Scheduler
        self.BACKUP_CRON = env.get('BACKUP_CRON') or '0 2 * * *'

        # Logging
        self.LOG_LEVEL = (env.get('LOG_LEVEL') or 'INFO').upper()
        self.LOG_DIR = env.get('LOG_DIR') or 'logs'

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'Config':
        """Load a .env file (if present) into the environment, then read it."""
        load_dotenv(env_file)
        return cls()

    def validate(self) -> List[str]:
        """Return the names of required settings that are missing."""
        missing = []
        if not self.DB_NAMES:
            missing.append('DB_NAMES')
        if not self.MONGODB_URI:
            missing.append('MONGODB_URI')
        if not self.SHARE_WITH_EMAIL:
            missing.append('USEREMAIL')
        return missing
