import asyncio
import logging
import os
import shutil
import time
import traceback
from abc import ABC, abstractmethod
from asyncio import CancelledError

from drive_logging import BraceAdapter
from error_manager import ErrorManager, Severity
from selection import FileState, apply_selection, is_complete, selected_files
from utils import timezone_now, strip_torrent_root

logger = BraceAdapter(logging.getLogger(__name__))


class TorrentDriveException(Exception):
    pass


class InvalidTorrentSourceException(TorrentDriveException):
    def __init__(self, message=None, *args, **kwargs):
        message = message or 'Invalid torrent identifier.'
        super().__init__(message, *args, **kwargs)


class ClientNotFoundException(TorrentDriveException):
    def __init__(self, message=None, *args, **kwargs):
        message = message or 'Client not found for user.'
        super().__init__(message, *args, **kwargs)


class TorrentNotFoundException(TorrentDriveException):
    def __init__(self, message=None, *args, **kwargs):
        message = message or 'Torrent does not exist.'
        super().__init__(message, *args, **kwargs)


class TorrentAlreadyAddedException(TorrentDriveException):
    def __init__(self, message=None, *args, **kwargs):
        message = message or 'Torrent already added.'
        super().__init__(message, *args, **kwargs)


class TorrentEngineException(TorrentDriveException):
    pass


def get_torrent_error_prefix(info_hash):
    return 'torrent_{}_'.format(info_hash)


class FieldInfo:
    def __init__(self, local_name, remote_name, converter=None):
        self.local_name = local_name
        self.remote_name = remote_name
        self.converter = converter


class TorrentState:
    _FIELD_MAPPING = []

    def __init__(self, client, info_hash, download_path):
        self.client = client
        self.info_hash = info_hash
        # Local scratch directory the engine writes into
        self.download_path = download_path

        self.name = None
        self.magnet_uri = None
        self.files = []
        self.downloaded = 0
        self.uploaded = 0
        self.download_rate = 0
        self.upload_rate = 0
        self.num_peers = 0
        self.date_added = timezone_now()
        # Last error reported by the engine or the synchronizer
        self.error = None
        # Link to the torrent's cloud folder, set once it is created
        self.drive_url = None
        # Set by the synchronizer, see synchronizer.TorrentSynchronizer
        self.sync_state = None

        self._ready = asyncio.Event()
        self._failure = None

    @property
    def ready(self):
        return self._ready.is_set()

    @property
    def selected_files(self):
        return selected_files(self.files)

    @property
    def is_complete(self):
        return is_complete(self.files)

    def set_ready(self):
        self._ready.set()

    def set_failed(self, message):
        self._failure = message
        self._ready.set()

    async def wait_ready(self, timeout=None):
        await asyncio.wait_for(self._ready.wait(), timeout)
        if self._failure:
            raise TorrentEngineException(self._failure)
        return self

    def find_file(self, file_id):
        for file in self.files:
            if file.file_id == file_id:
                return file
        return None

    def _sync_fields(self, remote):
        updated = False
        for field_info in self._FIELD_MAPPING:
            local_value = getattr(self, field_info.local_name)
            if field_info.remote_name:
                remote_value = getattr(remote, field_info.remote_name)
            else:
                remote_value = remote
            if field_info.converter:
                remote_value = field_info.converter(remote_value)
            if local_value != remote_value:
                setattr(self, field_info.local_name, remote_value)
                updated = True
        return updated

    def __repr__(self):
        return '<TorrentState {} {}>'.format(self.info_hash, self.name)


class PeriodicTaskInfo:
    def __init__(self, fn, interval_seconds):
        self.fn = fn
        self.interval_seconds = interval_seconds
        self.last_run_at = None

    async def run_if_needed(self, current_time):
        if not self.last_run_at or current_time - self.last_run_at > self.interval_seconds:
            self.last_run_at = current_time
            await self.fn()
            return True
        return False


class TorrentEventListener:
    """Receives engine events from a TorrentClient. Always called on the event loop."""

    def on_torrent_ready(self, client, torrent):
        pass

    def on_torrent_warning(self, client, torrent, message):
        pass

    def on_torrent_error(self, client, torrent, message):
        pass

    def on_file_done(self, client, torrent, file):
        pass


class TorrentClient(ABC):
    """A single user's torrent engine session and the torrents it holds."""

    key = None
    torrent_state_class = TorrentState
    # Seconds between iterations of the engine loop
    loop_interval = 0.2
    # Slower loops than this many seconds emit a warning
    slow_loop_threshold = 0.5

    def __init__(self, user_id, listener):
        self._user_id = user_id
        # Receives ready/warning/error/file done events, normally the TorrentController
        self._listener = listener
        # Named used for display/system purposes
        self._name = '{}-{}'.format(self.key, user_id)
        # Used to track errors, warnings and info messages in the client and the error status.
        self._error_manager = ErrorManager()
        # Registry for the periodic tasks
        self._periodic_tasks = []
        # Map of info_hash: TorrentState, in the order they were added
        self._torrents = {}
        # When the instance was launched
        self._launch_datetime = None
        # asyncio task running _loop
        self._loop_task = None

    @property
    def user_id(self):
        return self._user_id

    @property
    def name(self):
        return self._name

    @property
    def error_manager(self):
        return self._error_manager

    @property
    def torrents(self):
        return list(self._torrents.values())

    @property
    @abstractmethod
    def peer_port(self):
        pass

    @abstractmethod
    def launch(self):
        logger.info('Launching {}', self._name)
        self._launch_datetime = timezone_now()
        self._loop_task = asyncio.ensure_future(self._loop())

    @abstractmethod
    async def shutdown(self):
        if self._loop_task:
            self._loop_task.cancel()
            self._loop_task = None

    @abstractmethod
    async def _add_to_engine(self, torrent, source):
        pass

    @abstractmethod
    async def _remove_from_engine(self, torrent):
        pass

    @abstractmethod
    async def _apply_file_selection(self, torrent):
        pass

    async def _process_engine_events(self):
        pass

    def get_info_dict(self):
        return {
            'type': self.key,
            'name': self._name,
            'peer_port': self.peer_port,
            'launched_at': self._launch_datetime.isoformat() if self._launch_datetime else None,
            'status': self._error_manager.status,
            'errors': self._error_manager.to_dict(),
            'torrent_count': len(self._torrents),
        }

    def get_debug_dict(self):
        data = self.get_info_dict()
        data.update({
            'periodic_tasks': {task.fn.__name__: task.last_run_at for task in self._periodic_tasks},
        })
        return data

    def find_torrent(self, info_hash):
        return self._torrents.get(info_hash.lower())

    def get_torrent(self, info_hash):
        torrent = self.find_torrent(info_hash)
        if not torrent:
            raise TorrentNotFoundException()
        return torrent

    async def add_torrent(self, source, download_path):
        if source.info_hash in self._torrents:
            raise TorrentAlreadyAddedException()

        logger.info('Adding torrent {} to {} at {}', source.info_hash, self._name, download_path)
        torrent = self.torrent_state_class(self, source.info_hash, download_path)
        torrent.name = source.name or source.info_hash
        torrent.magnet_uri = source.magnet_uri
        self._torrents[torrent.info_hash] = torrent
        try:
            await self._add_to_engine(torrent, source)
        except Exception:
            self._torrents.pop(torrent.info_hash, None)
            raise
        return torrent

    async def remove_torrent(self, info_hash):
        torrent = self.get_torrent(info_hash)
        logger.info('Deleting torrent {} from {}', torrent.info_hash, self._name)
        del self._torrents[torrent.info_hash]
        # Errors recorded for an earlier incarnation of this torrent no longer apply
        self._error_manager.clear_prefix(get_torrent_error_prefix(torrent.info_hash))
        await self._remove_from_engine(torrent)
        return torrent

    async def update_selection(self, info_hash, selection):
        torrent = self.get_torrent(info_hash)
        changed = apply_selection(torrent.files, selection)
        if changed:
            logger.info('Changing selection of {} files in {}', len(changed), torrent.info_hash)
            await self._apply_file_selection(torrent)
        return changed

    def _on_metadata(self, torrent, name, file_entries):
        """file_entries is a list of (path inside the torrent, length) in metadata order."""
        if torrent.ready:
            return
        torrent.name = name
        torrent.files = [
            FileState(
                index=index,
                path=strip_torrent_root(path, name, len(file_entries)),
                length=length,
                local_path=os.path.join(torrent.download_path, path),
            )
            for index, (path, length) in enumerate(file_entries)
        ]
        torrent.set_ready()
        logger.info('Torrent {} is ready with {} files', torrent.info_hash, len(torrent.files))
        self._listener.on_torrent_ready(self, torrent)

    def _on_file_progress(self, torrent, file_progress):
        for file, downloaded in zip(torrent.files, file_progress):
            if file.update_downloaded(downloaded):
                self._on_file_done(torrent, file)

    def _on_file_completed(self, torrent, index):
        if 0 <= index < len(torrent.files):
            file = torrent.files[index]
            if file.mark_done():
                self._on_file_done(torrent, file)

    def _on_file_done(self, torrent, file):
        logger.info('Done for file {} of {}', file.path, torrent.info_hash)
        self._listener.on_file_done(self, torrent, file)

    def _on_torrent_error(self, torrent, message):
        logger.error('Torrent {} in {} errored: {}', torrent.info_hash, self._name, message)
        torrent.error = message
        if not torrent.ready:
            torrent.set_failed(message)
        self._listener.on_torrent_error(self, torrent, message)

    def _on_torrent_warning(self, torrent, message):
        logger.warning('Torrent {} in {} warning: {}', torrent.info_hash, self._name, message)
        self._listener.on_torrent_warning(self, torrent, message)

    async def _loop(self):
        while True:
            start = time.time()

            try:
                await self._run_periodic_tasks()
                await self._process_engine_events()
            except CancelledError:
                break
            except Exception:
                self._error_manager.add_error(
                    severity=Severity.ERROR,
                    key='loop',
                    message='Loop crashed',
                    traceback=traceback.format_exc(),
                )
                logger.exception('Loop crashed for {}', self._name)

            time_taken = time.time() - start
            if time_taken > self.slow_loop_threshold:
                logger.warning('Slow loop for {} took {:.3f}', self._name, time_taken)
            await asyncio.sleep(max(0, self.loop_interval - time_taken))

    async def _run_periodic_task_if_needed(self, current_time, task):
        start = time.time()
        ran = await task.run_if_needed(current_time)
        if ran:
            logger.debug('{}.{} took {:.3f}', self._name, task.fn.__name__, time.time() - start)
        return ran

    async def _run_periodic_tasks(self):
        current_time = time.time()
        for task in self._periodic_tasks:
            try:
                ran = await self._run_periodic_task_if_needed(current_time, task)
                if ran:
                    self._error_manager.clear_error(task.fn.__name__)
            except CancelledError:
                raise
            except Exception:
                message = 'Periodic task {} running every {}s crashed'.format(
                    task.fn.__name__, task.interval_seconds)
                self._error_manager.add_error(
                    severity=Severity.ERROR,
                    key=task.fn.__name__,
                    message=message,
                    traceback=traceback.format_exc()
                )
                logger.exception(message)

    def clean_torrent_directory(self, torrent):
        """Remove the scratch directory of a deleted torrent and the user's directory if it is left empty."""
        try:
            if os.path.isdir(torrent.download_path):
                logger.info('Removing torrent directory {}.', torrent.download_path)
                shutil.rmtree(torrent.download_path)
            user_dir = os.path.dirname(torrent.download_path)
            if os.path.isdir(user_dir) and not os.listdir(user_dir):
                os.rmdir(user_dir)
        except OSError:
            self._error_manager.add_error(
                Severity.ERROR,
                get_torrent_error_prefix(torrent.info_hash) + 'clean_directory',
                'Unable to clean torrent directory {}.'.format(torrent.download_path),
                traceback.format_exc(),
            )
            logger.exception('Unable to clean torrent directory {}', torrent.download_path)
