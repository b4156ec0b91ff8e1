import libtorrent as lt

DHT_BOOTSTRAP_NODES = [
    'router.bittorrent.com:6881',
    'router.utorrent.com:6881',
    'dht.transmissionbt.com:6881',
    'dht.libtorrent.org:25401',
]

LOOP_INTERVAL = 0.2  # Interval in seconds between loop iterations (popping alerts)
SLOW_LOOP_THRESHOLD = 0.5  # Slower loops than this many seconds emits a warning
POST_UPDATES_INTERVAL = 1  # Ask the session for changed torrent statuses every second

ERROR_KEY_ALERT_PROCESSING = 'alert_processing_{}'

FILE_PRIORITY_SKIP = 0  # dont_download
FILE_PRIORITY_DEFAULT = 4  # default_priority

ALERT_MASK = (
    lt.alert_category.error |
    lt.alert_category.status |
    lt.alert_category.storage |
    lt.alert_category.tracker |
    lt.alert_category.file_progress |
    lt.alert_category.performance_warning
)


def get_session_settings(peer_port, enable_dht):
    port = peer_port or 0
    return {
        'listen_interfaces': '0.0.0.0:{0},[::]:{0}'.format(port),
        'alert_mask': int(ALERT_MASK),
        'enable_dht': enable_dht,
        'dht_bootstrap_nodes': ','.join(DHT_BOOTSTRAP_NODES),
        'enable_upnp': False,
        'enable_natpmp': False,
    }
