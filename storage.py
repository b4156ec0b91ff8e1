import asyncio
import logging
import os
import posixpath
from concurrent.futures import ThreadPoolExecutor

from googleapiclient.discovery import build
from googleapiclient.http import MediaFileUpload

from drive_logging import BraceAdapter

logger = BraceAdapter(logging.getLogger(__name__))

FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'
UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024


def _escape_query_value(value):
    return value.replace('\\', '\\\\').replace("'", "\\'")


def _split_path(path):
    return [part for part in path.split('/') if part]


class DriveStorage:
    """Google Drive, addressed by slash separated paths from the root of the user's Drive.

    Both operations are idempotent: they look the item up by name under its parent first and only
    create it when it is missing. The Drive client is blocking, so calls run on a thread pool.
    """

    def __init__(self, max_workers=4):
        self._thread_pool = ThreadPoolExecutor(max_workers, 'drive')

    def _build_service(self, credentials):
        return build('drive', 'v3', credentials=credentials, cache_discovery=False)

    def _find_child(self, service, parent_id, name, fields, folder):
        query = "name = '{}' and '{}' in parents and trashed = false".format(_escape_query_value(name), parent_id)
        if folder:
            query += " and mimeType = '{}'".format(FOLDER_MIME_TYPE)
        else:
            query += " and mimeType != '{}'".format(FOLDER_MIME_TYPE)
        result = service.files().list(
            q=query,
            spaces='drive',
            fields='files({})'.format(fields),
            pageSize=1,
        ).execute()
        files = result.get('files', [])
        return files[0] if files else None

    def _ensure_folder(self, service, parts, fields):
        folder = {'id': 'root'}
        for name in parts:
            child = self._find_child(service, folder['id'], name, fields, folder=True)
            if child is None:
                logger.debug('Creating Drive folder {} under {}', name, folder['id'])
                child = service.files().create(
                    body={'name': name, 'mimeType': FOLDER_MIME_TYPE, 'parents': [folder['id']]},
                    fields=fields,
                ).execute()
            folder = child
        return folder

    def _create_folder_if_not_exists(self, path, fields, credentials):
        service = self._build_service(credentials)
        return self._ensure_folder(service, _split_path(path), _with_id(fields))

    def _upload_file_if_not_exists(self, local_path, remote_path, fields, credentials):
        if not os.path.isfile(local_path):
            raise FileNotFoundError('Local file {} does not exist.'.format(local_path))

        service = self._build_service(credentials)
        fields = _with_id(fields)
        parts = _split_path(remote_path)
        parent = self._ensure_folder(service, parts[:-1], fields)
        name = parts[-1] if parts else posixpath.basename(local_path)

        existing = self._find_child(service, parent['id'], name, fields, folder=False)
        if existing is not None:
            logger.debug('{} already exists in Drive, skipping upload', remote_path)
            return existing

        logger.info('Uploading {} to Drive {}', local_path, remote_path)
        media = MediaFileUpload(local_path, chunksize=UPLOAD_CHUNK_SIZE, resumable=True)
        request = service.files().create(
            body={'name': name, 'parents': [parent['id']]},
            media_body=media,
            fields=fields,
        )
        response = None
        while response is None:
            status, response = request.next_chunk()
            if status:
                logger.debug('Uploading {}: {:.0f}%', remote_path, status.progress() * 100)
        return response

    async def create_folder_if_not_exists(self, path, fields, credentials):
        return await asyncio.wrap_future(self._thread_pool.submit(
            self._create_folder_if_not_exists, path, fields, credentials))

    async def upload_file_if_not_exists(self, local_path, remote_path, fields, credentials):
        return await asyncio.wrap_future(self._thread_pool.submit(
            self._upload_file_if_not_exists, local_path, remote_path, fields, credentials))

    def shutdown(self):
        self._thread_pool.shutdown(wait=False)


def _with_id(fields):
    names = [name.strip() for name in fields.split(',') if name.strip()]
    if 'id' not in names:
        names.insert(0, 'id')
    return ','.join(names)
