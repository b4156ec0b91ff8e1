import asyncio
import logging
import os
import traceback
from concurrent.futures.thread import ThreadPoolExecutor

import libtorrent as lt

from clients import PeriodicTaskInfo, TorrentAlreadyAddedException, TorrentClient
from drive_logging import BraceAdapter
from error_manager import Severity
from libtorrent_impl import params
from libtorrent_impl.torrent_state import LibtorrentTorrentState
from libtorrent_impl.utils import format_alert_message, get_metadata

logger = BraceAdapter(logging.getLogger(__name__))

EVENT_METADATA = 'metadata'
EVENT_STATUS = 'status'
EVENT_FILE_COMPLETED = 'file_completed'
EVENT_ERROR = 'error'
EVENT_WARNING = 'warning'
EVENT_DELETED = 'deleted'

WARNING_ALERTS = (lt.tracker_error_alert, lt.tracker_warning_alert, lt.scrape_failed_alert, lt.performance_alert)
ERROR_ALERTS = (lt.torrent_error_alert, lt.file_error_alert, lt.metadata_failed_alert)


class LibtorrentClient(TorrentClient):
    """One libtorrent session per user.

    Every call into libtorrent happens on the client's single worker thread. Alerts are popped there
    and turned into plain events, which are then applied to the TorrentStates on the event loop.
    """

    key = 'libtorrent'
    torrent_state_class = LibtorrentTorrentState
    loop_interval = params.LOOP_INTERVAL
    slow_loop_threshold = params.SLOW_LOOP_THRESHOLD

    def __init__(self, user_id, listener, peer_port, enable_dht=True):
        super().__init__(user_id, listener)

        self._peer_port = peer_port
        self._enable_dht = enable_dht
        self._session = None
        # Torrents removed with delete_files whose deletion alert has not arrived yet, by info hash
        self._deleted_torrents = {}

        self._periodic_tasks.append(PeriodicTaskInfo(self._post_torrent_updates, params.POST_UPDATES_INTERVAL))

        self._executor = ThreadPoolExecutor(1, self._name)

    async def _exec(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    @property
    def peer_port(self):
        return self._peer_port

    def launch(self):
        logger.debug('Creating libtorrent session for {} on peer port {}', self._name, self._peer_port)
        self._session = lt.session(params.get_session_settings(self._peer_port, self._enable_dht))
        super().launch()

    async def shutdown(self):
        await super().shutdown()
        if self._session is None:
            return
        logger.debug('Pausing libtorrent session {}', self._name)
        await self._exec(self._session.pause)

        # This will dealloc the session object, which takes time
        def _dealloc_session(self):
            self._session = None

        await self._exec(_dealloc_session, self)
        self._executor.shutdown(wait=False)
        logger.info('Session {} destroyed.', self._name)

    def get_info_dict(self):
        data = super().get_info_dict()
        data.update({
            'dht_enabled': self._enable_dht,
        })
        return data

    def _add(self, source, download_path):
        os.makedirs(download_path, exist_ok=True)
        if source.torrent_file is not None:
            add_params = lt.add_torrent_params()
            add_params.ti = lt.torrent_info(lt.bdecode(source.torrent_file))
        else:
            add_params = lt.parse_magnet_uri(source.magnet_uri)
        add_params.save_path = download_path
        return self._session.add_torrent(add_params)

    async def _add_to_engine(self, torrent, source):
        try:
            torrent.handle = await self._exec(self._add, source, torrent.download_path)
        except RuntimeError as exc:
            if str(exc) == 'torrent already exists in session':
                raise TorrentAlreadyAddedException()
            raise

    async def _remove_from_engine(self, torrent):
        self._deleted_torrents[torrent.info_hash] = torrent
        await self._exec(self._session.remove_torrent, torrent.handle, lt.session.delete_files)

    async def _apply_file_selection(self, torrent):
        # Priorities for all files go in one call, so a deselect never races with the other files' selects
        priorities = [
            params.FILE_PRIORITY_DEFAULT if file.selected else params.FILE_PRIORITY_SKIP
            for file in torrent.files
        ]
        await self._exec(torrent.handle.prioritize_files, priorities)

    async def _post_torrent_updates(self):
        await self._exec(self._session.post_torrent_updates)

    async def _process_engine_events(self):
        events = await self._exec(self._pop_events)
        for kind, info_hash, payload in events:
            try:
                self._dispatch(kind, info_hash, payload)
            except Exception:
                self._error_manager.add_error(
                    severity=Severity.ERROR,
                    key=params.ERROR_KEY_ALERT_PROCESSING.format(kind),
                    message='Processing {} event for {} crashed'.format(kind, info_hash),
                    traceback=traceback.format_exc(),
                )
                logger.exception('Processing {} event for {} crashed', kind, info_hash)

    def _pop_events(self):
        """Runs on the worker thread. Converts pending alerts into (kind, info_hash, payload) tuples."""
        events = []
        for alert in self._session.pop_alerts():
            try:
                event = self._convert_alert(alert)
            except RuntimeError:
                # Mostly alerts for handles that were removed in the meantime
                logger.debug('Unable to convert alert {}: {}', alert.what(), traceback.format_exc())
                continue
            if event:
                events.extend(event)
        return events

    def _convert_alert(self, alert):
        if isinstance(alert, lt.state_update_alert):
            result = []
            for status in alert.status:
                file_progress = status.handle.file_progress() if status.has_metadata else None
                result.append((EVENT_STATUS, str(status.handle.info_hash()), (status, file_progress)))
            return result
        elif isinstance(alert, (lt.add_torrent_alert, lt.metadata_received_alert)):
            # Failed adds raise from session.add_torrent, the alert only matters for .torrent metadata
            return self._convert_metadata(alert.handle)
        elif isinstance(alert, lt.file_completed_alert):
            return [(EVENT_FILE_COMPLETED, str(alert.handle.info_hash()), alert.index)]
        elif isinstance(alert, ERROR_ALERTS):
            return [(EVENT_ERROR, str(alert.handle.info_hash()), format_alert_message(alert))]
        elif isinstance(alert, WARNING_ALERTS):
            return [(EVENT_WARNING, str(alert.handle.info_hash()), format_alert_message(alert))]
        elif isinstance(alert, (lt.torrent_deleted_alert, lt.torrent_delete_failed_alert)):
            return [(EVENT_DELETED, str(alert.info_hash), format_alert_message(alert))]
        return None

    def _convert_metadata(self, handle):
        if not handle.is_valid() or not handle.status().has_metadata:
            return None
        name, entries = get_metadata(handle)
        magnet_uri = lt.make_magnet_uri(handle)
        return [(EVENT_METADATA, str(handle.info_hash()), (name, entries, magnet_uri))]

    def _dispatch(self, kind, info_hash, payload):
        if kind == EVENT_DELETED:
            torrent = self._deleted_torrents.pop(info_hash, None)
            if torrent is not None and self.find_torrent(info_hash) is not None:
                # Re-added before the engine finished deleting, the directory belongs to the new torrent
                logger.info('Skipping cleanup of {}, torrent was added again', torrent.download_path)
            elif torrent is not None:
                logger.debug('Engine finished deleting {}: {}', info_hash, payload)
                self.clean_torrent_directory(torrent)
            return

        torrent = self.find_torrent(info_hash)
        if torrent is None:
            return

        if kind == EVENT_METADATA:
            name, entries, magnet_uri = payload
            torrent.magnet_uri = magnet_uri
            self._on_metadata(torrent, name, entries)
        elif kind == EVENT_STATUS:
            status, file_progress = payload
            torrent.update_from_status(status, info_hash)
            if file_progress is not None and torrent.ready:
                self._on_file_progress(torrent, file_progress)
        elif kind == EVENT_FILE_COMPLETED:
            self._on_file_completed(torrent, payload)
        elif kind == EVENT_ERROR:
            self._on_torrent_error(torrent, payload)
        elif kind == EVENT_WARNING:
            self._on_torrent_warning(torrent, payload)
