from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


def _parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse a Drive timestamp such as 2024-01-15T12:00:00.000Z."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


@dataclass
class RemoteFile:
    """File or folder stored in Google Drive"""

    id: str
    name: str = ''
    created_time: Optional[datetime] = None
    web_view_link: Optional[str] = None
    permissions: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_api(cls, resource: Dict[str, Any]) -> 'RemoteFile':
        """Build a RemoteFile from a Drive v3 files resource."""
        return cls(
            id=resource['id'],
            name=resource.get('name', ''),
            created_time=_parse_rfc3339(resource.get('createdTime')),
            web_view_link=resource.get('webViewLink'),
            permissions=list(resource.get('permissions') or []),
        )

    def __repr__(self):
        return f'<RemoteFile {self.name} id={self.id}>'


@dataclass
class BackupRun:
    """State of a single backup pipeline execution"""

    database_name: str
    backup_kind: str
    started_at: datetime
    status: str = 'running'  # running, success, failed
    local_directory_path: Optional[str] = None
    archive_path: Optional[str] = None
    remote_file: Optional[RemoteFile] = None
    file_size_bytes: Optional[int] = None
    completed_at: Optional[datetime] = None
    failed_stage: Optional[str] = None
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self):
        return f'<BackupRun {self.database_name} kind={self.backup_kind} status={self.status}>'
