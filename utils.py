import json
import logging
import os
import posixpath
import traceback
from datetime import datetime
from functools import wraps

from aiohttp import web
from pytz import utc

logger = logging.getLogger(__name__)

DEFAULT_PORT = 7002


def parse_port_pools_fmt(port_pools_fmt):
    def _parse_range(range_str):
        parts = range_str.split('-')
        if len(parts) != 2:
            raise ValueError('Invalid port range format {}'.format(range_str))
        return int(parts[0]), int(parts[1])

    return [_parse_range(range_str.strip()) for range_str in port_pools_fmt.split(',')]


def get_ports_from_ranges(port_ranges):
    ports = set()
    for port_range in port_ranges:
        ports.update(range(port_range[0], port_range[1] + 1))
    # Use reverse order so that calling .pop() returns the first available port
    return sorted(ports, reverse=True)


class JsonResponse(web.Response):
    def __init__(self, data, compact=True, **kwargs):
        kwargs.setdefault('content_type', 'application/json')
        indent = None if compact else 4
        super().__init__(text=json.dumps(data, indent=indent), **kwargs)


def timezone_now():
    return datetime.now(tz=utc)


def jsonify_exceptions(fn):
    @wraps(fn)
    async def inner(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except web.HTTPException:
            raise
        except Exception as exc:
            logger.exception('Unhandled exception in %s', fn.__name__)
            return JsonResponse({
                'detail': str(exc),
                'traceback': traceback.format_exc(),
            }, status=500)

    return inner


def clamp(value, lower, upper):
    return max(lower, min(value, upper))


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == 'true'


def get_storage_path(temp_root, user_id, info_hash):
    """Local scratch directory for a user's torrent. Same inputs, same directory."""
    return os.path.join(temp_root, str(user_id), info_hash.lower())


def strip_torrent_root(file_path, torrent_name, num_files):
    """Path of a file relative to the torrent, without the torrent's own top level directory."""
    file_path = file_path.replace(os.sep, '/')
    if num_files > 1:
        prefix = torrent_name + '/'
        if file_path.startswith(prefix):
            return file_path[len(prefix):]
    return file_path


def join_remote_path(*parts):
    return posixpath.join(*[part.strip('/') for part in parts if part])
