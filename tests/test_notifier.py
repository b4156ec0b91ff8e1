import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from clients import TorrentEventListener
from conftest import MAGNET, BrokenChannel, DummyChannel, DummyClient
from notifier import EVENT_ALL_TORRENTS, PushNotifier
from registry import SessionRegistry
from torrent_source import parse_torrent_source


def test_get_or_create_client_is_atomic():
    registry = SessionRegistry()
    created = []
    lock = threading.Lock()

    def factory(user_id):
        time.sleep(0.01)
        with lock:
            created.append(user_id)
        return object()

    with ThreadPoolExecutor(8) as executor:
        clients = list(executor.map(lambda _: registry.get_or_create_client('user-1', factory), range(16)))

    assert created == ['user-1']
    assert all(client is clients[0] for client in clients)


def test_last_channel_wins_and_stale_unregister_is_ignored():
    registry = SessionRegistry()
    first, second = DummyChannel(), DummyChannel()

    registry.register_channel('user-1', first)
    registry.register_channel('user-1', second)
    registry.unregister_channel('user-1', first)
    assert registry.get_channel('user-1') is second

    registry.unregister_channel('user-1', second)
    assert registry.get_channel('user-1') is None


@pytest.mark.asyncio
async def test_emit_without_channel_is_dropped():
    notifier = PushNotifier(SessionRegistry())
    await notifier.emit('user-1', 'torrent-update', {})


@pytest.mark.asyncio
async def test_emit_failure_does_not_raise():
    registry = SessionRegistry()
    registry.register_channel('user-1', BrokenChannel())
    notifier = PushNotifier(registry)

    await notifier.emit('user-1', 'torrent-update', {})


@pytest.mark.asyncio
async def test_serve_pushes_snapshots_until_closed():
    registry = SessionRegistry()
    client = registry.get_or_create_client(
        'user-1', lambda user_id: DummyClient(user_id, TorrentEventListener(), None))
    await client.add_torrent(parse_torrent_source(MAGNET), '/tmp/torrentdrive-tests')
    notifier = PushNotifier(registry, interval_seconds=0.01)
    channel = DummyChannel()

    task = asyncio.ensure_future(notifier.serve('user-1', channel))
    await asyncio.sleep(0.05)
    assert registry.get_channel('user-1') is channel

    channel.closed = True
    await asyncio.wait_for(task, 1)

    assert len(channel.events) >= 2
    assert set(channel.names()) == {EVENT_ALL_TORRENTS}
    assert channel.events[0][1][0]['name'] == 'Cosmos Laundromat'
    assert registry.get_channel('user-1') is None


@pytest.mark.asyncio
async def test_serve_without_client_sends_empty_snapshot():
    registry = SessionRegistry()
    notifier = PushNotifier(registry, interval_seconds=10)
    channel = DummyChannel()

    task = asyncio.ensure_future(notifier.serve('user-1', channel))
    await asyncio.sleep(0.01)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert channel.events == [(EVENT_ALL_TORRENTS, [])]
    assert registry.get_channel('user-1') is None
