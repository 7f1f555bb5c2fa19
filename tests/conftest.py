"""
Shared pytest fixtures for drivebackup tests.

This module provides fixtures for:
- An in-memory fake of the Google Drive v3 client
- Storage and executor instances wired to the fake
- A fake dump step that writes a realistic dump directory
- Temporary file fixtures
"""

import re
from pathlib import Path
from unittest.mock import patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from drivebackup.backup.executor import BackupExecutor
from drivebackup.backup.storage import FOLDER_MIME_TYPE, GoogleDriveStorage


SHARE_TARGET = 'owner@example.com'


def make_http_error(status: int = 403, content: bytes = b'forbidden') -> HttpError:
    """Build a googleapiclient HttpError with the given status."""
    return HttpError(httplib2.Response({'status': str(status)}), content)


class FakeRequest:
    """Stands in for googleapiclient.http.HttpRequest."""

    def __init__(self, func):
        self._func = func
        self.num_retries = None

    def execute(self, num_retries=0):
        self.num_retries = num_retries
        return self._func()


class FakeDriveService:
    """
    Minimal in-memory Drive v3 client.

    Supports the calls made by GoogleDriveStorage: files().list/create and
    permissions().list/create. Errors can be injected per operation through
    the failures dict, e.g. failures['files.list'] = make_http_error().
    """

    def __init__(self):
        self.items = {}
        self.item_permissions = {}
        self.failures = {}
        self.calls = []
        self._counter = 0

    def files(self):
        return _FakeFiles(self)

    def permissions(self):
        return _FakePermissions(self)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _record(self, operation: str, kwargs: dict):
        self.calls.append((operation, kwargs))
        failure = self.failures.get(operation)
        if failure is not None:
            raise failure

    def _new_id(self) -> str:
        self._counter += 1
        return f"id{self._counter:04d}"

    def add_item(self, name, mime_type='application/zip', parents=None, trashed=False):
        item_id = self._new_id()
        self.items[item_id] = {
            'id': item_id,
            'name': name,
            'mimeType': mime_type,
            'parents': list(parents or []),
            'trashed': trashed,
            'createdTime': f"2024-01-15T12:00:{self._counter:02d}.000Z",
            'webViewLink': f"https://drive.google.com/file/d/{item_id}/view",
        }
        self.item_permissions[item_id] = []
        return item_id


def _matches(item: dict, query: str) -> bool:
    name = re.search(r"name='((?:[^'\\]|\\.)*)'", query)
    if name and item['name'] != re.sub(r"\\(.)", r"\1", name.group(1)):
        return False
    mime = re.search(r"mimeType='([^']*)'", query)
    if mime and item['mimeType'] != mime.group(1):
        return False
    parent = re.search(r"'([^']*)' in parents", query)
    if parent and parent.group(1) not in item['parents']:
        return False
    return True


class _FakeFiles:

    def __init__(self, service: FakeDriveService):
        self.service = service

    def list(self, q=None, pageSize=None, fields=None, spaces=None, orderBy=None, pageToken=None):
        def run():
            self.service._record('files.list', {'q': q, 'pageSize': pageSize, 'orderBy': orderBy})
            items = [item for item in self.service.items.values() if not item['trashed']]
            if q:
                items = [item for item in items if _matches(item, q)]
            if orderBy == 'createdTime desc':
                items.sort(key=lambda item: item['createdTime'], reverse=True)
            if pageSize:
                items = items[:pageSize]
            return {'files': [dict(item) for item in items]}
        return FakeRequest(run)

    def create(self, body=None, media_body=None, fields=None):
        def run():
            self.service._record('files.create', {'body': body, 'media_body': media_body})
            item_id = self.service.add_item(
                body['name'],
                mime_type=body.get('mimeType', 'application/zip'),
                parents=body.get('parents')
            )
            return dict(self.service.items[item_id])
        return FakeRequest(run)


class _FakePermissions:

    def __init__(self, service: FakeDriveService):
        self.service = service

    def list(self, fileId=None, fields=None, pageToken=None):
        def run():
            self.service._record('permissions.list', {'fileId': fileId})
            return {'permissions': list(self.service.item_permissions.get(fileId, []))}
        return FakeRequest(run)

    def create(self, fileId=None, body=None, sendNotificationEmail=True, fields=None):
        def run():
            self.service._record('permissions.create', {
                'fileId': fileId,
                'body': body,
                'sendNotificationEmail': sendNotificationEmail,
            })
            permission = dict(body, id=f"perm{len(self.service.calls)}")
            self.service.item_permissions.setdefault(fileId, []).append(permission)
            return {'id': permission['id']}
        return FakeRequest(run)


@pytest.fixture
def http_error():
    """Factory for googleapiclient HttpErrors."""
    return make_http_error


@pytest.fixture
def share_target():
    return SHARE_TARGET


@pytest.fixture
def drive_service():
    """Empty in-memory Drive."""
    return FakeDriveService()


@pytest.fixture
def storage(drive_service):
    """GoogleDriveStorage backed by the in-memory Drive."""
    return GoogleDriveStorage(drive_service, share_with=SHARE_TARGET)


@pytest.fixture
def backup_folder(drive_service):
    """Existing backup folder in the in-memory Drive."""
    return drive_service.add_item('BbBackupService', mime_type=FOLDER_MIME_TYPE)


@pytest.fixture
def backup_dir(tmp_path):
    """Empty local backup directory."""
    directory = tmp_path / 'backup'
    directory.mkdir()
    return directory


@pytest.fixture
def executor(storage, backup_dir):
    """BackupExecutor wired to the in-memory Drive."""
    return BackupExecutor(
        storage,
        backup_dir=str(backup_dir),
        mongodb_uri='mongodb://localhost:27017/'
    )


def write_dump_directory(output_path: str, database_name: str = 'shop') -> str:
    """Write a directory laid out like mongodump output."""
    db_dir = Path(output_path) / database_name
    db_dir.mkdir(parents=True)
    (db_dir / 'orders.bson').write_bytes(b'\x16\x00\x00\x00orders' * 50)
    (db_dir / 'orders.metadata.json').write_text('{"indexes": []}')
    (db_dir / 'customers.bson').write_bytes(b'\x16\x00\x00\x00customers' * 20)
    return output_path


@pytest.fixture
def fake_dump():
    """
    Replace the external dump tool.

    The patched run_dump writes a small dump directory at the requested
    output path and returns it, like a successful mongodump.
    """
    def _run_dump(mongodb_uri, database_name, output_path, backup_kind, **kwargs):
        return write_dump_directory(output_path, database_name)

    with patch('drivebackup.backup.executor.run_dump', side_effect=_run_dump) as mock_dump:
        yield mock_dump


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - source/test_file1.txt
    - source/test_file2.log
    - source/nested/test_file3.bin
    - source/nested/deeper/test_file4.json
    - source/empty/
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content\n' * 100)

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.bin').write_bytes(bytes(range(256)) * 10)

    deeper_dir = nested_dir / 'deeper'
    deeper_dir.mkdir()
    (deeper_dir / 'test_file4.json').write_text('{"key": "value"}')

    (source / 'empty').mkdir()

    return source
