import asyncio
import logging
from asyncio import CancelledError

from drive_logging import BraceAdapter
from progress import get_torrent_info
from selection import has_selection
from utils import join_remote_path

logger = BraceAdapter(logging.getLogger(__name__))

EVENT_UPDATE = 'torrent-update'
EVENT_SUCCESS = 'torrent-success'
EVENT_ERROR = 'torrent-error'


class TorrentSynchronizer:
    """Mirrors the completed, selected files of one torrent into cloud storage.

    Every storage call for the torrent is made while holding the torrent's lock, so folder creation and
    uploads never overlap for the same destination tree. Other torrents have their own synchronizer
    and lock and proceed independently.
    """

    STATE_DOWNLOADING = 'downloading'
    STATE_SYNCING = 'syncing'
    STATE_SYNCED = 'synced'
    STATE_SYNC_FAILED = 'sync_failed'

    def __init__(self, torrent, storage, credentials, root_folder, return_fields, notify):
        self.torrent = torrent
        self._storage = storage
        self._credentials = credentials
        self._root_folder = root_folder
        self._return_fields = return_fields
        # Coroutine function (event, torrent_info) delivering to the user's channel
        self._notify = notify
        self._lock = asyncio.Lock()
        # Remote paths already uploaded/created, so duplicate done events don't repeat the call
        self._uploaded_paths = set()
        self._created_folders = set()
        # Set when the torrent is deleted, queued operations are dropped
        self._closed = False

        self.torrent.sync_state = self.STATE_DOWNLOADING

    @property
    def state(self):
        return self.torrent.sync_state

    @property
    def uploaded_paths(self):
        return set(self._uploaded_paths)

    @property
    def folder_path(self):
        return join_remote_path(self._root_folder, self.torrent.name)

    def get_upload_path(self, file):
        return join_remote_path(self._root_folder, self.torrent.name, file.path)

    def close(self):
        self._closed = True

    def _should_create_folder(self):
        files = self.torrent.files
        # A torrent with nothing selected is not considered finished
        return self.torrent.ready and has_selection(files) and self.torrent.is_complete

    async def on_file_done(self, file):
        if file.selected:
            await self._upload(file)
        await self.evaluate()

    async def resync(self):
        """Upload selected files that were already done when they got selected, then re-evaluate."""
        for file in self.torrent.selected_files:
            if file.done:
                await self._upload(file)
        await self.evaluate()

    async def evaluate(self):
        if not self._should_create_folder():
            return

        async with self._lock:
            # Selection or other events may have changed things while waiting for the lock
            folder_path = self.folder_path
            if self._closed or folder_path in self._created_folders or not self._should_create_folder():
                return

            self.torrent.sync_state = self.STATE_SYNCING
            try:
                folder = await self._storage.create_folder_if_not_exists(
                    folder_path, self._return_fields, self._credentials)
            except CancelledError:
                raise
            except Exception as exc:
                await self._fail('Unable to create folder {}: {}'.format(folder_path, exc))
                return

            self._created_folders.add(folder_path)
            self.torrent.drive_url = folder.get('webViewLink')
            self.torrent.sync_state = self.STATE_SYNCED
            logger.info('Created torrent folder {} for {}', folder_path, self.torrent.info_hash)
            await self._notify(EVENT_SUCCESS, get_torrent_info(self.torrent))

    async def _upload(self, file):
        remote_path = self.get_upload_path(file)

        async with self._lock:
            if self._closed or remote_path in self._uploaded_paths:
                return

            self.torrent.sync_state = self.STATE_SYNCING
            try:
                uploaded = await self._storage.upload_file_if_not_exists(
                    file.local_path, remote_path, self._return_fields, self._credentials)
            except CancelledError:
                raise
            except Exception as exc:
                await self._fail('Unable to upload {}: {}'.format(remote_path, exc))
                return

            self._uploaded_paths.add(remote_path)
            if self.torrent.drive_url and self.torrent.is_complete:
                self.torrent.sync_state = self.STATE_SYNCED
            else:
                self.torrent.sync_state = self.STATE_DOWNLOADING
            logger.info('File uploaded to {} with id {}', remote_path, uploaded.get('id'))
            await self._notify(EVENT_UPDATE, get_torrent_info(self.torrent))

    async def _fail(self, message):
        logger.error('Sync failed for {}: {}', self.torrent.info_hash, message)
        self.torrent.error = message
        self.torrent.sync_state = self.STATE_SYNC_FAILED
        await self._notify(EVENT_ERROR, get_torrent_info(self.torrent))
