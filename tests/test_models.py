import os

import pytest

from migrations import apply_migrations
from models import DB, MIGRATIONS, MODELS, Config


@pytest.fixture
def db(tmp_path):
    DB.init(os.path.join(str(tmp_path), 'db.sqlite3'))
    DB.connect()
    yield DB
    DB.close()


def test_fresh_db_records_all_migrations(db):
    apply_migrations(db, MODELS, MIGRATIONS)
    apply_migrations(db, MODELS, MIGRATIONS)

    names = [row[0] for row in db.execute_sql('SELECT name FROM migration').fetchall()]
    assert names == [name for name, _ in MIGRATIONS] == ['0001_initial']


def test_config_defaults_and_secrets(db):
    apply_migrations(db, MODELS, MIGRATIONS)
    config = Config.create(
        api_port=7002,
        is_fully_configured=True,
        google_client_id='client-id',
        google_client_secret='client-secret',
    )

    data = config.to_dict()
    assert 'google_client_secret' not in data
    assert data['drive_root_folder'] == 'My torrents'
    assert data['force_https'] is False
    assert config.peer_ports[-1] == 21413
    assert len(config.peer_ports) == 201


def test_host_config_creates_and_updates_state(tmp_path):
    pytest.importorskip('libtorrent')
    from host import DriveHost

    state_path = os.path.join(str(tmp_path), 'state')
    host = DriveHost(state_path)

    host.config(api_port=8000, push_interval_seconds=2.5)
    host.config(google_client_id='client-id', google_client_secret='client-secret', temp_root=str(tmp_path),
                metadata_timeout_seconds=15, session_max_age_seconds=600)

    DB.init(host.db_path)
    with DB:
        config = Config.get()
        assert config.api_port == 8000
        assert config.is_fully_configured
        assert config.temp_root == str(tmp_path)
        assert config.push_interval_seconds == 2.5
        assert config.metadata_timeout_seconds == 15
        assert config.session_max_age_seconds == 600
        assert Config.select().count() == 1
