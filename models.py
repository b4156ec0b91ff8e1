import tempfile

import peewee
from playhouse.shortcuts import model_to_dict, update_model_from_dict

from utils import get_ports_from_ranges, parse_port_pools_fmt

DB = peewee.SqliteDatabase(None)

DEFAULT_DRIVE_ROOT_FOLDER = 'My torrents'
DEFAULT_DRIVE_RETURN_FIELDS = 'id,name,webViewLink'
DEFAULT_PEER_PORT_POOLS_FMT = '21413-21613'
DEFAULT_REDIRECT_URI = 'http://localhost:7002/login-callback'

# Never returned from to_dict()
SECRET_FIELDS = ('google_client_secret',)


class Config(peewee.Model):
    api_port = peewee.IntegerField()
    is_fully_configured = peewee.BooleanField()
    google_client_id = peewee.TextField(null=True)
    google_client_secret = peewee.TextField(null=True)
    redirect_uri = peewee.TextField(default=DEFAULT_REDIRECT_URI)
    temp_root = peewee.TextField(default=tempfile.gettempdir)
    drive_root_folder = peewee.TextField(default=DEFAULT_DRIVE_ROOT_FOLDER)
    drive_return_fields = peewee.TextField(default=DEFAULT_DRIVE_RETURN_FIELDS)
    push_interval_seconds = peewee.FloatField(default=1)
    metadata_timeout_seconds = peewee.FloatField(default=60)
    session_max_age_seconds = peewee.IntegerField(default=3600)
    peer_port_pools_fmt = peewee.TextField(default=DEFAULT_PEER_PORT_POOLS_FMT)
    is_dht_enabled = peewee.BooleanField(default=True)
    force_https = peewee.BooleanField(default=False)

    @property
    def peer_ports(self):
        return get_ports_from_ranges(parse_port_pools_fmt(self.peer_port_pools_fmt))

    def to_dict(self):
        result = model_to_dict(self, recurse=False, exclude=(Config.id,))
        for field in SECRET_FIELDS:
            result.pop(field, None)
        return result

    def update_from_dict(self, data):
        update_model_from_dict(self, data)

    class Meta:
        database = DB


class Migration(peewee.Model):
    name = peewee.CharField(max_length=256)

    class Meta:
        database = DB


MODELS = [
    Config,
    Migration,
]


MIGRATIONS = [
    ('0001_initial', lambda migrator: None),
]
