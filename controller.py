import asyncio
import logging
from functools import partial

from clients import ClientNotFoundException, TorrentEventListener
from drive_logging import BraceAdapter
from notifier import EVENT_WARNING
from progress import get_torrent_info, get_torrents_info
from synchronizer import EVENT_ERROR, EVENT_UPDATE, TorrentSynchronizer
from torrent_source import parse_torrent_source
from utils import get_storage_path

logger = BraceAdapter(logging.getLogger(__name__))


class TorrentController(TorrentEventListener):
    """Adds, updates and removes users' torrents and wires engine events to synchronization and push."""

    def __init__(self, config, registry, notifier, storage, client_factory):
        self.config = config
        self.registry = registry
        self.notifier = notifier
        self.storage = storage
        # Callable (user_id, listener, peer_port) returning a new, not yet launched TorrentClient
        self.client_factory = client_factory
        self.available_peer_ports = config.peer_ports

        # Map of (user_id, info_hash): credentials of the user who added it, until the torrent is ready
        self._pending_credentials = {}
        # Map of (user_id, info_hash): TorrentSynchronizer, created when the torrent becomes ready
        self._synchronizers = {}
        # Running background tasks, so they are not garbage collected mid-flight
        self._tasks = set()

    def grab_peer_port(self):
        if not self.available_peer_ports:
            logger.warning('Peer port pool exhausted, letting the engine choose.')
            return None
        return self.available_peer_ports.pop()

    def _create_client(self, user_id):
        client = self.client_factory(user_id, self, self.grab_peer_port())
        client.launch()
        return client

    def _get_client(self, user_id):
        client = self.registry.get_client(user_id)
        if client is None:
            raise ClientNotFoundException()
        return client

    def get_synchronizer(self, user_id, info_hash):
        return self._synchronizers.get((user_id, info_hash.lower()))

    def get_torrent(self, info_hash, user_id):
        return self._get_client(user_id).get_torrent(info_hash)

    def list_torrents(self, user_id):
        client = self.registry.get_client(user_id)
        if client is None:
            return []
        return get_torrents_info(client.torrents)

    async def add_torrent(self, source, user_id, credentials):
        """Parse the source and hand it to the user's client. Returns as soon as the engine accepted it."""
        parsed = parse_torrent_source(source)
        client = self.registry.get_or_create_client(user_id, self._create_client)
        download_path = get_storage_path(self.config.temp_root, user_id, parsed.info_hash)
        logger.info('Torrent {} for user {} will be saved to {}', parsed.info_hash, user_id, download_path)

        key = (user_id, parsed.info_hash)
        self._pending_credentials[key] = credentials
        try:
            return await client.add_torrent(parsed, download_path)
        except Exception:
            self._pending_credentials.pop(key, None)
            raise

    async def update_selection(self, info_hash, user_id, selection):
        client = self._get_client(user_id)
        changed = await client.update_selection(info_hash, selection)
        for file in changed:
            logger.info('{} file {} for user {}', 'Selected' if file.selected else 'Deselected', file.path, user_id)

        synchronizer = self.get_synchronizer(user_id, info_hash)
        if changed and synchronizer:
            self._spawn(synchronizer.resync())
        return changed

    async def delete_torrent(self, info_hash, user_id):
        client = self._get_client(user_id)
        torrent = await client.remove_torrent(info_hash)
        key = (user_id, torrent.info_hash)
        self._pending_credentials.pop(key, None)
        synchronizer = self._synchronizers.pop(key, None)
        if synchronizer:
            synchronizer.close()
        logger.info('Deleted torrent {} for user {}', torrent.info_hash, user_id)
        return torrent

    async def shutdown(self):
        logger.info('Shutting down torrent clients now...')
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*[client.shutdown() for client in self.registry.get_clients()])
        logger.info('Clients are down.')

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error('Background task crashed: {!r}', exc, exc_info=exc)

    def on_torrent_ready(self, client, torrent):
        key = (client.user_id, torrent.info_hash)
        credentials = self._pending_credentials.pop(key, None)
        self._synchronizers[key] = TorrentSynchronizer(
            torrent=torrent,
            storage=self.storage,
            credentials=credentials,
            root_folder=self.config.drive_root_folder,
            return_fields=self.config.drive_return_fields,
            notify=partial(self.notifier.emit, client.user_id),
        )
        logger.info('Torrent {} of user {} is ready, synchronizer attached', torrent.info_hash, client.user_id)

    def on_file_done(self, client, torrent, file):
        synchronizer = self._synchronizers.get((client.user_id, torrent.info_hash))
        if synchronizer is None:
            logger.warning('File {} done for {} without a synchronizer', file.path, torrent.info_hash)
            return
        self._spawn(synchronizer.on_file_done(file))

    def on_torrent_warning(self, client, torrent, message):
        self._spawn(self.notifier.emit(client.user_id, EVENT_WARNING, {
            'infoHash': torrent.info_hash,
            'message': message,
        }))

    def on_torrent_error(self, client, torrent, message):
        self._spawn(self._broadcast_error(client.user_id, torrent))

    async def _broadcast_error(self, user_id, torrent):
        info = get_torrent_info(torrent)
        await self.notifier.emit(user_id, EVENT_ERROR, info)
        await self.notifier.emit(user_id, EVENT_UPDATE, info)
