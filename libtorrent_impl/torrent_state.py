from clients import FieldInfo, TorrentState
from libtorrent_impl.utils import LibtorrentClientException


def _ignore_trickle(rate):
    # Work around weird issue where libtorrent returns 1 byte/s for a long time
    return rate if rate > 1 else 0


class LibtorrentTorrentState(TorrentState):
    _FIELD_MAPPING = [
        FieldInfo('downloaded', 'all_time_download'),
        FieldInfo('uploaded', 'all_time_upload'),
        FieldInfo('download_rate', 'download_payload_rate', converter=_ignore_trickle),
        FieldInfo('upload_rate', 'upload_payload_rate', converter=_ignore_trickle),
        FieldInfo('num_peers', 'num_peers'),
    ]

    def __init__(self, client, info_hash, download_path):
        super().__init__(client, info_hash, download_path)
        # lt.torrent_handle, set once the session accepted the torrent
        self.handle = None

    def update_from_status(self, status, info_hash):
        if __debug__:
            if self.info_hash != info_hash:
                raise LibtorrentClientException('Updating wrong TorrentStatus')
        return self._sync_fields(status)
