import logging
import os
from functools import partial

from api import TorrentDriveAPI
from controller import TorrentController
from drive_logging import BraceAdapter
from identity import GoogleIdentity
from libtorrent_impl.libtorrent_client import LibtorrentClient
from migrations import apply_migrations
from models import DB, MIGRATIONS, MODELS, Config
from notifier import PushNotifier
from registry import SessionRegistry
from sessions import SessionStore
from storage import DriveStorage
from utils import DEFAULT_PORT

logger = BraceAdapter(logging.getLogger(__name__))

# Options accepted by DriveHost.config(), mapped onto Config fields when given
CONFIG_OPTIONS = (
    'api_port',
    'google_client_id',
    'google_client_secret',
    'redirect_uri',
    'temp_root',
    'drive_root_folder',
    'push_interval_seconds',
    'metadata_timeout_seconds',
    'session_max_age_seconds',
    'peer_port_pools_fmt',
    'is_dht_enabled',
    'force_https',
)


class DriveHost:
    def __init__(self, state_path):
        self.state_path = state_path
        self.db_path = os.path.join(state_path, 'db.sqlite3')

    def _init_db(self):
        apply_migrations(DB, MODELS, MIGRATIONS)

    def config(self, **options):
        logger.info('Configuring torrentdrive with state at {}', self.state_path)

        os.makedirs(self.state_path, exist_ok=True)
        DB.init(self.db_path)

        with DB:
            self._init_db()

            config = Config.select().first()
            if not config:
                config = Config(api_port=DEFAULT_PORT, is_fully_configured=False)

            config.update_from_dict({
                key: value for key, value in options.items()
                if key in CONFIG_OPTIONS and value is not None
            })
            config.is_fully_configured = bool(config.google_client_id and config.google_client_secret)
            config.save()

            if not config.is_fully_configured:
                logger.warning('Google client id and secret are missing, run will refuse to start.')

        logger.info('Saved configuration - done.')

    def run(self):
        logger.info('Starting torrentdrive with state at {}.', self.state_path)

        if not os.path.isfile(self.db_path):
            print('Missing state DB at {}! Exiting.'.format(self.db_path))
            exit(1)

        DB.init(self.db_path)
        DB.connect()
        self._init_db()

        config = Config.get()
        if not config.is_fully_configured:
            print('Configuration is incomplete, run config with the Google client id and secret. Exiting.')
            exit(1)
        logger.debug('Running with config {}', config.to_dict())

        registry = SessionRegistry()
        notifier = PushNotifier(registry, config.push_interval_seconds)
        storage = DriveStorage()
        controller = TorrentController(
            config=config,
            registry=registry,
            notifier=notifier,
            storage=storage,
            client_factory=partial(LibtorrentClient, enable_dht=config.is_dht_enabled),
        )
        identity = GoogleIdentity(config.google_client_id, config.google_client_secret, config.redirect_uri)
        sessions = SessionStore(config.session_max_age_seconds)

        api = TorrentDriveAPI(config, controller, notifier, sessions, identity, storage)

        async def _on_cleanup(app):
            # Clients live on the app's loop, so they go down before run_app closes it
            await controller.shutdown()
            storage.shutdown()

        api.app.on_cleanup.append(_on_cleanup)
        api.run()

        DB.close()

        logger.info('Graceful shutdown done.')
