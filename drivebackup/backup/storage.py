"""
Storage handler for backup archives.

GoogleDriveStorage uploads archives into a well-known Drive folder and
shares every uploaded object with a single configured user.

Every operation is safe to repeat: the folder is looked up before it is
created and permissions are checked before they are granted, so a retried
upload does not create duplicate folders or send repeated share
notifications.
"""

import logging
import os
import socket
from pathlib import Path
from typing import Iterator, Optional

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload

from drivebackup.models import RemoteFile


logger = logging.getLogger(__name__)

DRIVE_SCOPES = [
    'https://www.googleapis.com/auth/drive.file',
    'https://www.googleapis.com/auth/drive.metadata.readonly',
]

FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
ARCHIVE_MIME_TYPE = 'application/zip'
DEFAULT_FOLDER_NAME = 'BbBackupService'

# 10MB chunks for resumable uploads
UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024

FILE_FIELDS = 'id, name, webViewLink, createdTime, permissions'


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class StorageTimeoutError(StorageError):
    """Raised when a request to the storage provider times out."""
    pass


class UploadError(StorageError):
    """Raised when an archive could not be uploaded."""
    pass


class UploadTimeoutError(UploadError, StorageTimeoutError):
    """Raised when an upload failed because a request timed out."""
    pass


def create_drive_service(credentials_file: str, timeout: float = 60):
    """
    Create an authenticated Drive v3 client from a service account key.

    The client is meant to be created once per process and shared by all
    storage operations.

    Args:
        credentials_file: Path to the service account JSON key
        timeout: Socket timeout in seconds for every request

    Returns:
        googleapiclient Resource for the Drive v3 API

    Raises:
        StorageError: If the key is missing or invalid
    """
    if not os.path.exists(credentials_file):
        raise StorageError(f"Credentials file not found: {credentials_file}")

    try:
        credentials = service_account.Credentials.from_service_account_file(
            credentials_file,
            scopes=DRIVE_SCOPES
        )
    except (ValueError, KeyError) as e:
        raise StorageError(
            f"Invalid credentials file (client_email and private_key are required): {e}"
        )

    try:
        http = google_auth_httplib2.AuthorizedHttp(
            credentials,
            http=httplib2.Http(timeout=timeout)
        )
        return build('drive', 'v3', http=http, cache_discovery=False)
    except Exception as e:
        raise StorageError(f"Failed to authenticate with Google Drive: {e}")


def _escape_query_value(value: str) -> str:
    return value.replace('\\', '\\\\').replace("'", "\\'")


class GoogleDriveStorage:
    """
    Handler for uploading backups to Google Drive.

    Archives are placed in a single folder ({folder_name}) which, like every
    uploaded archive, is shared read-only with share_with.
    """

    def __init__(
        self,
        service,
        share_with: str,
        folder_name: str = DEFAULT_FOLDER_NAME,
        num_retries: int = 3
    ):
        """
        Initialize Drive storage handler.

        Args:
            service: Authenticated Drive v3 client (see create_drive_service)
            share_with: Email address that gets reader access to backups
            folder_name: Name of the destination folder
            num_retries: Retries for transient failures on each request
        """
        self.service = service
        self.share_with = share_with
        self.folder_name = folder_name
        self.num_retries = num_retries

    def _execute(self, request, action: str):
        """
        Execute an API request and translate transport errors.

        Raises:
            StorageTimeoutError: If the request timed out
            StorageError: For API and authentication errors
        """
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as e:
            status = getattr(e.resp, 'status', 'Unknown')
            raise StorageError(f"Drive {action} failed ({status}): {e}") from e
        except (socket.timeout, TimeoutError) as e:
            raise StorageTimeoutError(f"Drive {action} timed out: {e}") from e
        except GoogleAuthError as e:
            raise StorageError(f"Drive authentication failed during {action}: {e}") from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise StorageError(f"Drive {action} failed: {e}") from e

    def check_permissions(self) -> bool:
        """
        Check that the credentials can reach the Drive API.

        Lists at most one file. Never raises for authentication or
        transport problems.

        Returns:
            True if the check succeeded
        """
        try:
            self._execute(
                self.service.files().list(pageSize=1, fields='files(id, name)'),
                'permission check'
            )
            return True
        except StorageError as e:
            logger.error(f"Permissions check failed: {e}")
            return False

    def find_folder(self, name: Optional[str] = None) -> Optional[str]:
        """
        Find a non-trashed folder by exact name.

        Returns:
            Folder ID, or None if no such folder exists

        Raises:
            StorageError: If the lookup fails
        """
        name = name or self.folder_name
        query = (
            f"name='{_escape_query_value(name)}' "
            f"and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"
        )
        response = self._execute(
            self.service.files().list(q=query, spaces='drive', fields='files(id)'),
            'folder lookup'
        )

        files = response.get('files', [])
        if files:
            return files[0]['id']
        return None

    def create_folder(self, name: Optional[str] = None) -> str:
        """
        Create a folder and share it with the configured user.

        Returns:
            ID of the new folder

        Raises:
            StorageError: If the folder cannot be created
        """
        name = name or self.folder_name
        logger.info(f"Creating new folder: {name}")

        response = self._execute(
            self.service.files().create(
                body={'name': name, 'mimeType': FOLDER_MIME_TYPE},
                fields='id'
            ),
            'folder creation'
        )
        folder_id = response['id']
        logger.info(f"Created folder with ID: {folder_id}")

        self.share_with_user(folder_id)
        return folder_id

    def get_or_create_folder(self, name: Optional[str] = None) -> str:
        """
        Return the ID of the backup folder, creating it if needed.

        Repeated calls converge on the same folder. Two processes creating
        the folder at the same moment can still produce duplicates.

        Raises:
            StorageError: If lookup or creation fails
        """
        folder_id = self.find_folder(name)
        if folder_id:
            return folder_id

        logger.info("Backup folder not found, creating new one...")
        return self.create_folder(name)

    def upload(self, local_path: str) -> RemoteFile:
        """
        Upload an archive into the backup folder and share it.

        Args:
            local_path: Path to local archive file

        Returns:
            RemoteFile describing the uploaded object

        Raises:
            UploadError: If permissions, folder resolution or the transfer
                fail. Interrupted transfers are not resumed across calls.
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        if not self.check_permissions():
            raise UploadError("Failed permissions check")

        try:
            folder_id = self.find_folder()
            if folder_id:
                # Ensure the existing folder is shared
                self.share_with_user(folder_id)
            else:
                logger.info("Backup folder not found, creating new one...")
                folder_id = self.create_folder()
            logger.info(f"Using folder ID: {folder_id}")

            file_name = Path(local_path).name
            media = MediaFileUpload(
                local_path,
                mimetype=ARCHIVE_MIME_TYPE,
                chunksize=UPLOAD_CHUNK_SIZE,
                resumable=True
            )
            logger.info(f"Uploading {file_name} ({os.path.getsize(local_path)} bytes)")

            # execute() drives the resumable upload until the final chunk is acknowledged
            response = self._execute(
                self.service.files().create(
                    body={'name': file_name, 'parents': [folder_id]},
                    media_body=media,
                    fields=FILE_FIELDS
                ),
                'upload'
            )
        except StorageTimeoutError as e:
            raise UploadTimeoutError(f"Upload timed out: {e}") from e
        except StorageError as e:
            raise UploadError(f"Failed to upload to Google Drive: {e}") from e
        except OSError as e:
            raise UploadError(f"Failed to read {local_path}: {e}") from e

        remote_file = RemoteFile.from_api(response)
        logger.info(f"Upload successful, file ID: {remote_file.id}")

        if self.share_with_user(remote_file.id):
            logger.info(f"Shared file with {self.share_with}")
        else:
            logger.warning(f"Uploaded file {remote_file.id} could not be shared with {self.share_with}")

        return remote_file

    def share_with_user(self, object_id: str, email: Optional[str] = None) -> bool:
        """
        Grant reader access on a file or folder, once.

        If the user already has any permission on the object nothing is
        changed. New grants are created without a notification email.

        Args:
            object_id: Drive file or folder ID
            email: User to share with (default: configured share target)

        Returns:
            True if the user has access afterwards, False on failure
        """
        email = email or self.share_with
        if not email:
            logger.warning(f"No share target configured, not sharing {object_id}")
            return False

        try:
            if self._has_permission(object_id, email):
                logger.info(f"User {email} already has access to file {object_id}")
                return True

            self._execute(
                self.service.permissions().create(
                    fileId=object_id,
                    body={'type': 'user', 'role': 'reader', 'emailAddress': email},
                    sendNotificationEmail=False,
                    fields='id'
                ),
                'permission grant'
            )
            logger.info(f"Shared file {object_id} with {email}")
            return True

        except StorageError as e:
            logger.error(f"Error sharing file {object_id}: {e}")
            return False

    def _has_permission(self, object_id: str, email: str) -> bool:
        page_token = None
        while True:
            response = self._execute(
                self.service.permissions().list(
                    fileId=object_id,
                    fields='nextPageToken, permissions(id, emailAddress, role, type)',
                    pageToken=page_token
                ),
                'permission listing'
            )
            for permission in response.get('permissions', []):
                if (permission.get('emailAddress') or '').lower() == email.lower():
                    return True

            page_token = response.get('nextPageToken')
            if not page_token:
                return False

    def list_backups(self) -> Iterator[RemoteFile]:
        """
        List uploaded backups, newest first.

        Pages are fetched lazily as the iterator is consumed.

        Yields:
            RemoteFile for each non-trashed file in the backup folder

        Raises:
            StorageError: If listing fails
        """
        folder_id = self.find_folder()
        if not folder_id:
            return

        page_token = None
        while True:
            response = self._execute(
                self.service.files().list(
                    q=f"'{folder_id}' in parents and trashed=false",
                    fields='nextPageToken, files(id, name, webViewLink, createdTime)',
                    orderBy='createdTime desc',
                    pageToken=page_token
                ),
                'backup listing'
            )
            for resource in response.get('files', []):
                yield RemoteFile.from_api(resource)

            page_token = response.get('nextPageToken')
            if not page_token:
                break
