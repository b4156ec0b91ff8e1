"""Serializable snapshots of torrents, as sent to the browser.

Everything here only reads the torrent, so it can be called at any time, including while the engine
loop is updating counters. The result is a point-in-time snapshot, not a transaction.
"""
from utils import clamp


def get_file_infos(torrent):
    return [
        {
            'name': file.name,
            'path': file.path,
            'fileId': file.file_id,
            'length': file.length,
            'downloaded': file.downloaded,
            'progress': file.progress,
            'selected': file.selected,
            'done': file.done,
        }
        for file in list(torrent.files)
    ]


def get_selected_totals(torrent):
    """Returns (received, size) summed over the selected files."""
    files = [file for file in list(torrent.files) if file.selected]
    received = sum(file.downloaded for file in files)
    size = sum(file.length for file in files)
    return received, size


def get_progress(torrent):
    received, size = get_selected_totals(torrent)
    if size <= 0:
        # Nothing to download: only report done when there is something selected and all of it is done
        selected = [file for file in list(torrent.files) if file.selected]
        return 1.0 if selected and all(file.done for file in selected) else 0.0
    return clamp(received / size, 0.0, 1.0)


def get_time_remaining(torrent):
    """Milliseconds until the selected files are downloaded, None when it can't be estimated."""
    received, size = get_selected_totals(torrent)
    remaining = max(size - received, 0)
    if remaining == 0:
        return 0
    if not torrent.download_rate:
        return None
    return int(remaining * 1000 / torrent.download_rate)


def get_ratio(torrent):
    if not torrent.downloaded:
        return 0
    return torrent.uploaded / torrent.downloaded


def get_torrent_info(torrent):
    received, size = get_selected_totals(torrent)
    return {
        'infoHash': torrent.info_hash,
        'magnetURI': torrent.magnet_uri,
        'name': torrent.name,
        'files': get_file_infos(torrent),
        'received': received,
        'size': size,
        'progress': get_progress(torrent),
        'timeRemaining': get_time_remaining(torrent),
        'downloaded': torrent.downloaded,
        'downloadSpeed': torrent.download_rate,
        'uploaded': torrent.uploaded,
        'uploadSpeed': torrent.upload_rate,
        'ratio': get_ratio(torrent),
        'numPeers': torrent.num_peers,
        'ready': torrent.ready,
        'syncState': torrent.sync_state,
        'error': torrent.error,
        'driveUrl': torrent.drive_url,
        'dateAdded': torrent.date_added.isoformat(),
    }


def get_torrents_info(torrents):
    return [get_torrent_info(torrent) for torrent in torrents]
