"""Shared fakes for the engine, cloud storage, push channels and identity."""
import asyncio
from types import SimpleNamespace

import pytest

from clients import TorrentClient, TorrentEventListener
from torrent_source import parse_torrent_source

INFO_HASH = 'c9e15763f722f23e98a29decdfae341b98d53056'
MAGNET = 'magnet:?xt=urn:btih:{}&dn=Cosmos+Laundromat'.format(INFO_HASH)
OTHER_INFO_HASH = '08ada5a7a6183aae1e09d831df6748d566095a10'


class DummyClient(TorrentClient):
    """In-memory engine. Metadata and file completion are driven by the test."""

    key = 'dummy'

    def __init__(self, user_id, listener, peer_port, metadata=None):
        super().__init__(user_id, listener)
        self._peer_port = peer_port
        # (name, [(path, length)]) delivered right after the add, like a .torrent would
        self.metadata = metadata
        self.launched = False
        self.shut_down = False
        self.added = []
        self.removed = []
        self.selections = []

    @property
    def peer_port(self):
        return self._peer_port

    def launch(self):
        self.launched = True

    async def shutdown(self):
        self.shut_down = True

    async def _add_to_engine(self, torrent, source):
        self.added.append(source)
        if self.metadata:
            name, entries = self.metadata
            asyncio.get_running_loop().call_soon(self._on_metadata, torrent, name, entries)

    async def _remove_from_engine(self, torrent):
        self.removed.append(torrent)

    async def _apply_file_selection(self, torrent):
        self.selections.append([file.selected for file in torrent.files])

    def deliver_metadata(self, info_hash, name, entries):
        self._on_metadata(self.get_torrent(info_hash), name, entries)

    def complete_file(self, info_hash, index):
        self._on_file_completed(self.get_torrent(info_hash), index)


class DummyStorage:
    """Records every cloud call and the highest number of calls that were in flight at once."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.folders = []
        self.uploads = []
        self.failing_paths = set()
        self.active = 0
        self.max_active = 0

    async def _enter(self):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

    async def create_folder_if_not_exists(self, path, fields, credentials):
        await self._enter()
        if path in self.failing_paths:
            raise IOError('Drive refused {}'.format(path))
        self.folders.append(path)
        return {
            'id': 'folder-{}'.format(len(self.folders)),
            'name': path.rsplit('/', 1)[-1],
            'webViewLink': 'https://drive.example.com/{}'.format(path),
        }

    async def upload_file_if_not_exists(self, local_path, remote_path, fields, credentials):
        await self._enter()
        if remote_path in self.failing_paths:
            raise IOError('Drive refused {}'.format(remote_path))
        self.uploads.append(remote_path)
        return {'id': 'file-{}'.format(len(self.uploads)), 'name': remote_path.rsplit('/', 1)[-1]}


class DummyChannel:
    def __init__(self):
        self.events = []
        self.closed = False

    async def emit(self, event, data):
        self.events.append((event, data))

    def names(self):
        return [event for event, _ in self.events]


class BrokenChannel(DummyChannel):
    async def emit(self, event, data):
        raise ConnectionResetError('Gone')


class EventRecorder:
    """Stands in for PushNotifier.emit bound to one user."""

    def __init__(self):
        self.events = []

    async def __call__(self, event, data):
        self.events.append((event, data))

    def names(self):
        return [event for event, _ in self.events]


class DummyIdentity:
    def __init__(self, user):
        self.user = user
        self.codes = []

    def get_authorization_url(self, state):
        return 'https://accounts.example.com/auth?state={}'.format(state)

    async def exchange_code(self, code):
        self.codes.append(code)
        return {'access_token': 'access-{}'.format(code), 'refresh_token': 'refresh'}

    def build_credentials(self, tokens):
        return 'credentials-{}'.format(tokens['access_token'])

    async def get_user(self, tokens):
        return self.user


async def drain(controller):
    """Wait for every background task the controller spawned, including ones spawned meanwhile."""
    while controller._tasks:
        await asyncio.gather(*list(controller._tasks))


async def make_ready_torrent(files, name='Cosmos Laundromat', info_hash=INFO_HASH,
                             download_path='/tmp/torrentdrive-tests'):
    """Returns (client, torrent) with metadata already delivered. files is a list of (path, length)."""
    client = DummyClient('user-1', TorrentEventListener(), None)
    torrent = await client.add_torrent(parse_torrent_source(info_hash), download_path)
    client.deliver_metadata(info_hash, name, files)
    return client, torrent


@pytest.fixture
def config(tmp_path):
    return SimpleNamespace(
        api_port=7002,
        temp_root=str(tmp_path),
        drive_root_folder='My torrents',
        drive_return_fields='id,name,webViewLink',
        push_interval_seconds=0.01,
        metadata_timeout_seconds=1,
        peer_ports=[21415, 21414, 21413],
        force_https=False,
    )


@pytest.fixture
def storage():
    return DummyStorage()
