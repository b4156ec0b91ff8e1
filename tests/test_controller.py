from functools import partial

import pytest

from clients import (ClientNotFoundException, InvalidTorrentSourceException, TorrentAlreadyAddedException,
                     TorrentEngineException, TorrentNotFoundException, get_torrent_error_prefix)
from conftest import INFO_HASH, MAGNET, OTHER_INFO_HASH, DummyChannel, DummyClient, drain
from controller import TorrentController
from error_manager import Severity
from notifier import EVENT_WARNING, PushNotifier
from registry import SessionRegistry
from synchronizer import EVENT_ERROR, EVENT_SUCCESS, EVENT_UPDATE

NAME = 'Cosmos Laundromat'
ENTRIES = [(NAME + '/a.mkv', 100), (NAME + '/b.mkv', 200)]


def make_controller(config, storage, metadata=None):
    registry = SessionRegistry()
    notifier = PushNotifier(registry, config.push_interval_seconds)
    controller = TorrentController(
        config=config,
        registry=registry,
        notifier=notifier,
        storage=storage,
        client_factory=partial(DummyClient, metadata=metadata),
    )
    return controller, registry


@pytest.mark.asyncio
async def test_list_torrents_without_client_is_empty(config, storage):
    controller, _ = make_controller(config, storage)
    assert controller.list_torrents('nobody') == []


@pytest.mark.asyncio
async def test_add_creates_and_launches_one_client_per_user(config, storage):
    controller, registry = make_controller(config, storage)

    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    await controller.add_torrent(OTHER_INFO_HASH, 'user-1', 'credentials')

    client = registry.get_client('user-1')
    assert client.launched
    assert client.peer_port == 21413
    assert torrent.info_hash == INFO_HASH
    assert torrent.name == NAME
    assert torrent.download_path.endswith('user-1/' + INFO_HASH)
    assert [info['infoHash'] for info in controller.list_torrents('user-1')] == [INFO_HASH, OTHER_INFO_HASH]
    assert registry.get_clients() == [client]


@pytest.mark.asyncio
async def test_peer_ports_are_not_shared_between_users(config, storage):
    controller, registry = make_controller(config, storage)

    await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    await controller.add_torrent(MAGNET, 'user-2', 'credentials')

    assert registry.get_client('user-1').peer_port == 21413
    assert registry.get_client('user-2').peer_port == 21414


@pytest.mark.asyncio
async def test_invalid_source_creates_nothing(config, storage):
    controller, registry = make_controller(config, storage)

    with pytest.raises(InvalidTorrentSourceException):
        await controller.add_torrent('not a torrent', 'user-1', 'credentials')
    assert registry.get_client('user-1') is None


@pytest.mark.asyncio
async def test_adding_twice_is_rejected(config, storage):
    controller, _ = make_controller(config, storage)

    await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    with pytest.raises(TorrentAlreadyAddedException):
        await controller.add_torrent(INFO_HASH.upper(), 'user-1', 'credentials')
    assert len(controller.list_torrents('user-1')) == 1


@pytest.mark.asyncio
async def test_delete_not_found(config, storage):
    controller, _ = make_controller(config, storage)

    with pytest.raises(ClientNotFoundException):
        await controller.delete_torrent(INFO_HASH, 'user-1')

    await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    with pytest.raises(TorrentNotFoundException):
        await controller.delete_torrent(OTHER_INFO_HASH, 'user-1')


@pytest.mark.asyncio
async def test_full_lifecycle_syncs_and_notifies(config, storage):
    controller, registry = make_controller(config, storage, metadata=(NAME, ENTRIES))
    channel = DummyChannel()
    registry.register_channel('user-1', channel)

    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    await torrent.wait_ready(1)
    assert controller.get_synchronizer('user-1', INFO_HASH) is not None

    client = registry.get_client('user-1')
    client.complete_file(INFO_HASH, 0)
    await drain(controller)
    client.complete_file(INFO_HASH, 1)
    await drain(controller)

    assert channel.names() == [EVENT_UPDATE, EVENT_UPDATE, EVENT_SUCCESS]
    assert storage.folders == ['My torrents/' + NAME]
    assert controller.list_torrents('user-1')[0]['driveUrl'] == 'https://drive.example.com/My torrents/' + NAME


@pytest.mark.asyncio
async def test_update_selection_applies_to_engine_and_resyncs(config, storage):
    controller, registry = make_controller(config, storage, metadata=(NAME, ENTRIES))
    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    await torrent.wait_ready(1)
    client = registry.get_client('user-1')

    changed = await controller.update_selection(INFO_HASH, 'user-1', [True, False])
    assert [file.path for file in changed] == ['b.mkv']
    assert client.selections == [[True, False]]

    client.complete_file(INFO_HASH, 0)
    await drain(controller)
    assert storage.uploads == ['My torrents/{}/a.mkv'.format(NAME)]
    assert storage.folders == ['My torrents/' + NAME]

    # Same selection again is a no-op for the engine
    assert await controller.update_selection(INFO_HASH, 'user-1', [True, False]) == []
    assert client.selections == [[True, False]]


@pytest.mark.asyncio
async def test_delete_removes_torrent_and_stops_sync(config, storage):
    controller, registry = make_controller(config, storage, metadata=(NAME, ENTRIES))
    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    await torrent.wait_ready(1)
    client = registry.get_client('user-1')

    deleted = await controller.delete_torrent(INFO_HASH, 'user-1')

    assert deleted is torrent
    assert client.removed == [torrent]
    assert controller.list_torrents('user-1') == []
    assert controller.get_synchronizer('user-1', INFO_HASH) is None


@pytest.mark.asyncio
async def test_engine_error_is_broadcast_and_torrent_stays_listed(config, storage):
    controller, registry = make_controller(config, storage)
    channel = DummyChannel()
    registry.register_channel('user-1', channel)
    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    client = registry.get_client('user-1')

    client._on_torrent_error(torrent, 'Disk full')
    await drain(controller)

    assert channel.names() == [EVENT_ERROR, EVENT_UPDATE]
    assert channel.events[0][1]['error'] == 'Disk full'
    assert len(controller.list_torrents('user-1')) == 1
    with pytest.raises(TorrentEngineException):
        await torrent.wait_ready(1)


@pytest.mark.asyncio
async def test_engine_warning_is_only_broadcast(config, storage):
    controller, registry = make_controller(config, storage)
    channel = DummyChannel()
    registry.register_channel('user-1', channel)
    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')

    registry.get_client('user-1')._on_torrent_warning(torrent, 'Tracker timed out')
    await drain(controller)

    assert channel.events == [(EVENT_WARNING, {'infoHash': INFO_HASH, 'message': 'Tracker timed out'})]
    assert torrent.error is None


@pytest.mark.asyncio
async def test_shutdown_stops_clients(config, storage):
    controller, registry = make_controller(config, storage)
    await controller.add_torrent(MAGNET, 'user-1', 'credentials')

    await controller.shutdown()

    assert registry.get_client('user-1').shut_down


@pytest.mark.asyncio
async def test_deselecting_last_pending_file_completes_sync(config, storage):
    controller, registry = make_controller(config, storage, metadata=(NAME, ENTRIES))
    channel = DummyChannel()
    registry.register_channel('user-1', channel)
    torrent = await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    await torrent.wait_ready(1)

    registry.get_client('user-1').complete_file(INFO_HASH, 0)
    await drain(controller)
    assert storage.folders == []
    assert EVENT_SUCCESS not in channel.names()

    await controller.update_selection(INFO_HASH, 'user-1', [True, False])
    await drain(controller)

    assert storage.folders == ['My torrents/' + NAME]
    assert channel.names()[-1] == EVENT_SUCCESS
    assert controller.list_torrents('user-1')[0]['driveUrl'] == 'https://drive.example.com/My torrents/' + NAME


@pytest.mark.asyncio
async def test_delete_clears_errors_of_that_torrent_only(config, storage):
    controller, registry = make_controller(config, storage)
    await controller.add_torrent(MAGNET, 'user-1', 'credentials')
    error_manager = registry.get_client('user-1').error_manager
    error_manager.add_error(Severity.ERROR, get_torrent_error_prefix(INFO_HASH) + 'clean_directory', 'Disk busy')
    error_manager.add_error(Severity.WARNING, 'loop', 'Slow loop')

    await controller.delete_torrent(INFO_HASH, 'user-1')

    assert list(error_manager.to_dict()) == ['loop']
    assert error_manager.status == 'yellow'
