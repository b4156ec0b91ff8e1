import base64
import binascii
import hashlib
import logging
import re
import urllib.parse

import bencodepy

from clients import InvalidTorrentSourceException
from drive_logging import BraceAdapter

logger = BraceAdapter(logging.getLogger(__name__))

HEX_INFO_HASH_RE = re.compile(r'^[0-9a-fA-F]{40}$')
BASE32_INFO_HASH_RE = re.compile(r'^[a-zA-Z2-7]{32}$')
BTIH_PREFIX = 'urn:btih:'


class TorrentSource:
    """A torrent identifier parsed into its canonical fingerprint.

    Exactly one of magnet_uri/torrent_file is what the engine should be given: torrent_file when the
    user uploaded a .torrent, otherwise the magnet URI (built from the info hash if needed).
    """

    def __init__(self, info_hash, name=None, magnet_uri=None, torrent_file=None, trackers=None):
        self.info_hash = info_hash
        self.name = name
        self.trackers = trackers or []
        self.magnet_uri = magnet_uri or make_magnet_uri(info_hash, name, self.trackers)
        self.torrent_file = torrent_file

    def __repr__(self):
        return '<TorrentSource {} {}>'.format(self.info_hash, self.name)


def make_magnet_uri(info_hash, name=None, trackers=()):
    params = [('xt', BTIH_PREFIX + info_hash)]
    if name:
        params.append(('dn', name))
    params.extend(('tr', tracker) for tracker in trackers)
    return 'magnet:?' + urllib.parse.urlencode(params, safe=':/')


def normalize_info_hash(value):
    value = value.strip()
    if HEX_INFO_HASH_RE.match(value):
        return value.lower()
    if BASE32_INFO_HASH_RE.match(value):
        return binascii.hexlify(base64.b32decode(value.upper())).decode()
    raise InvalidTorrentSourceException('Invalid info hash {}.'.format(value))


def _parse_magnet_uri(uri):
    query = urllib.parse.urlsplit(uri).query
    params = urllib.parse.parse_qs(query)
    info_hash = None
    for exact_topic in params.get('xt', []):
        if exact_topic.lower().startswith(BTIH_PREFIX):
            info_hash = normalize_info_hash(exact_topic[len(BTIH_PREFIX):])
            break
    if not info_hash:
        raise InvalidTorrentSourceException('Magnet URI has no BitTorrent info hash.')
    return TorrentSource(
        info_hash=info_hash,
        name=params.get('dn', [None])[0],
        magnet_uri=uri,
        trackers=params.get('tr', []),
    )


def _decode_text(value):
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def _get_trackers(metainfo):
    trackers = []
    for tier in metainfo.get(b'announce-list', []):
        for tracker in tier:
            tracker = _decode_text(tracker)
            if tracker not in trackers:
                trackers.append(tracker)
    announce = metainfo.get(b'announce')
    if announce and _decode_text(announce) not in trackers:
        trackers.insert(0, _decode_text(announce))
    return trackers


def _parse_torrent_file(data):
    try:
        metainfo = bencodepy.decode(data)
    except Exception as exc:
        raise InvalidTorrentSourceException('Invalid torrent file: {}'.format(exc)) from exc
    if not isinstance(metainfo, dict) or not isinstance(metainfo.get(b'info'), dict):
        raise InvalidTorrentSourceException('Invalid torrent file: missing info dictionary.')

    info = metainfo[b'info']
    info_hash = hashlib.sha1(bencodepy.encode(info)).hexdigest()
    name = info.get(b'name.utf-8') or info.get(b'name')
    return TorrentSource(
        info_hash=info_hash,
        name=_decode_text(name) if name else None,
        torrent_file=data,
        trackers=_get_trackers(metainfo),
    )


def parse_torrent_source(source):
    """Parse an info hash, magnet URI or raw .torrent bytes. Raises InvalidTorrentSourceException."""
    if isinstance(source, (bytes, bytearray)):
        source = bytes(source)
        if source.startswith(b'd'):
            parsed = _parse_torrent_file(source)
            logger.debug('Parsed torrent file with info hash {}', parsed.info_hash)
            return parsed
        try:
            source = source.decode('utf-8')
        except UnicodeDecodeError as exc:
            raise InvalidTorrentSourceException() from exc

    if not isinstance(source, str) or not source.strip():
        raise InvalidTorrentSourceException()

    source = source.strip()
    if source.lower().startswith('magnet:'):
        parsed = _parse_magnet_uri(source)
    else:
        parsed = TorrentSource(info_hash=normalize_info_hash(source))
    logger.debug('Parsed info hash {}', parsed.info_hash)
    return parsed
