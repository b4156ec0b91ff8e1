import asyncio
import logging
from asyncio import CancelledError

from drive_logging import BraceAdapter
from progress import get_torrents_info

logger = BraceAdapter(logging.getLogger(__name__))

EVENT_ALL_TORRENTS = 'all-torrents'
EVENT_WARNING = 'torrent-warning'


class WebSocketChannel:
    """Push channel over an aiohttp WebSocketResponse. Messages are {"event": ..., "data": ...}."""

    def __init__(self, ws):
        self._ws = ws

    @property
    def closed(self):
        return self._ws.closed

    async def emit(self, event, data):
        if self._ws.closed:
            return
        await self._ws.send_json({'event': event, 'data': data})


class PushNotifier:
    def __init__(self, registry, interval_seconds=1):
        self._registry = registry
        self._interval_seconds = interval_seconds

    def get_snapshot(self, user_id):
        client = self._registry.get_client(user_id)
        if client is None:
            return []
        return get_torrents_info(client.torrents)

    async def emit(self, user_id, event, data):
        """Send an event to the user's current channel, if any. Delivery failures are only logged."""
        channel = self._registry.get_channel(user_id)
        if channel is None:
            logger.debug('No channel for user {}, dropping {}', user_id, event)
            return
        try:
            await channel.emit(event, data)
        except CancelledError:
            raise
        except Exception:
            logger.exception('Unable to send {} to user {}', event, user_id)

    async def send_snapshot(self, user_id, channel):
        await channel.emit(EVENT_ALL_TORRENTS, self.get_snapshot(user_id))

    async def serve(self, user_id, channel):
        """Register the channel and push a snapshot now and then every interval, until cancelled."""
        self._registry.register_channel(user_id, channel)
        logger.info('Push channel connected for user {}', user_id)
        try:
            while not channel.closed:
                await self.send_snapshot(user_id, channel)
                await asyncio.sleep(self._interval_seconds)
        except CancelledError:
            pass
        except Exception:
            logger.exception('Push channel for user {} failed', user_id)
        finally:
            self._registry.unregister_channel(user_id, channel)
            logger.info('Push channel disconnected for user {}', user_id)
