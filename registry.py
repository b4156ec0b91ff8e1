import logging
import threading

from drive_logging import BraceAdapter

logger = BraceAdapter(logging.getLogger(__name__))


class SessionRegistry:
    """Per-user torrent clients and push channels.

    Passed explicitly to whoever needs it. Mutations go through a lock so the registry can also be
    used from executor threads, not just the event loop.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # Map of user_id: TorrentClient
        self._clients = {}
        # Map of user_id: channel with an async emit(event, data)
        self._channels = {}

    def get_or_create_client(self, user_id, factory):
        with self._lock:
            client = self._clients.get(user_id)
            if client is None:
                logger.info('Creating torrent client for user {}', user_id)
                client = factory(user_id)
                self._clients[user_id] = client
            return client

    def get_client(self, user_id):
        with self._lock:
            return self._clients.get(user_id)

    def get_clients(self):
        with self._lock:
            return list(self._clients.values())

    def register_channel(self, user_id, channel):
        with self._lock:
            # Last connection wins, same as a browser reconnecting
            self._channels[user_id] = channel

    def unregister_channel(self, user_id, channel):
        with self._lock:
            if self._channels.get(user_id) is channel:
                del self._channels[user_id]

    def get_channel(self, user_id):
        with self._lock:
            return self._channels.get(user_id)
