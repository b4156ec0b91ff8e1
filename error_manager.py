from utils import timezone_now


class Severity:
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'


class ErrorInfo:
    def __init__(self, severity, key, message, traceback, reported_at):
        self.severity = severity
        self.key = key
        self.message = message
        self.traceback = traceback
        self.reported_at = reported_at

    def to_dict(self):
        return {
            'severity': self.severity,
            'key': self.key,
            'message': self.message,
            'traceback': self.traceback,
            'reported_at': self.reported_at.isoformat(),
        }


class ErrorManager:
    """Health of a single user's torrent client, keyed by the task or torrent that reported the problem."""

    GREEN = 'green'  # All is good in the world
    YELLOW = 'yellow'  # Some warnings that need to be looked at
    RED = 'red'  # Something very bad happened

    def __init__(self):
        self._current_errors = {}

    @property
    def status(self):
        statuses = {error.severity for error in self._current_errors.values()}
        if Severity.ERROR in statuses:
            return self.RED
        elif Severity.WARNING in statuses:
            return self.YELLOW
        return self.GREEN

    def add_error(self, severity, key, message, traceback=None):
        self._current_errors[key] = ErrorInfo(
            severity=severity,
            key=key,
            message=message,
            traceback=traceback,
            reported_at=timezone_now(),
        )

    def clear_error(self, key, convert_errors_to_warnings=True):
        error = self._current_errors.get(key)
        if error is None:
            return
        if convert_errors_to_warnings and error.severity == Severity.ERROR:
            self._current_errors[key] = ErrorInfo(
                severity=Severity.WARNING,
                key=key,
                message='Error resolved to warning: {}'.format(error.message),
                traceback=error.traceback,
                reported_at=error.reported_at,
            )
        elif not convert_errors_to_warnings:
            del self._current_errors[key]

    def clear_prefix(self, prefix):
        for key in [key for key in self._current_errors if key.startswith(prefix)]:
            del self._current_errors[key]

    def to_dict(self):
        return {key: error.to_dict() for key, error in self._current_errors.items()}
