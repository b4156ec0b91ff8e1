import os
import uuid


class FileState:
    def __init__(self, index, path, length, local_path, file_id=None):
        # Position of the file inside the torrent metadata, used for engine-level priorities
        self.index = index
        # Path relative to the torrent, without the torrent's own top level directory
        self.path = path
        self.name = path.rsplit('/', 1)[-1]
        self.length = length
        # Where the engine writes the file on local scratch storage
        self.local_path = local_path
        self.file_id = file_id or str(uuid.uuid4())
        self.downloaded = 0
        self.done = False
        self.selected = True

    @property
    def progress(self):
        if self.length <= 0:
            return 1.0 if self.done else 0.0
        return min(self.downloaded / self.length, 1.0)

    def update_downloaded(self, downloaded):
        """Returns True if this update made the file transition to done."""
        self.downloaded = min(downloaded, self.length)
        if not self.done and self.downloaded >= self.length:
            self.done = True
            return True
        return False

    def mark_done(self):
        self.downloaded = self.length
        if self.done:
            return False
        self.done = True
        return True

    def exists_locally(self):
        return os.path.isfile(self.local_path)

    def __repr__(self):
        return '<FileState {} {}/{} selected={} done={}>'.format(
            self.path, self.downloaded, self.length, self.selected, self.done)


def selected_files(files):
    return [f for f in files if f.selected]


def is_complete(files):
    return all(f.done for f in selected_files(files))


def has_selection(files):
    return any(f.selected for f in files)


def apply_selection(files, selection):
    """Persist the selection on the files and return the ones that changed.

    Only indices present in both the file list and the selection are touched.
    """
    changed = []
    for file, selected in zip(files, selection):
        if file.selected != selected:
            file.selected = selected
            changed.append(file)
    return changed
