class LibtorrentClientException(Exception):
    pass


def format_alert_message(alert):
    try:
        return alert.message()
    except RuntimeError:
        return alert.what()


def get_metadata(handle):
    """Returns (name, [(path inside the torrent, size)]) for a handle that has metadata."""
    torrent_info = handle.torrent_file()
    file_storage = torrent_info.files()
    entries = [
        (file_storage.file_path(index), file_storage.file_size(index))
        for index in range(file_storage.num_files())
    ]
    return torrent_info.name(), entries
