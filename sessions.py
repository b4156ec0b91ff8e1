import datetime
import logging
import secrets

from clients import TorrentDriveException
from drive_logging import BraceAdapter
from utils import timezone_now

logger = BraceAdapter(logging.getLogger(__name__))

COOKIE_NAME = 'torrentdrive_session'
LOGIN_STATE_MAX_AGE = 600


class NotLoggedInException(TorrentDriveException):
    def __init__(self, message=None, *args, **kwargs):
        message = message or 'Not logged in.'
        super().__init__(message, *args, **kwargs)


class Session:
    def __init__(self, session_id, user, credentials, expires_at):
        self.session_id = session_id
        self.user = user
        # Renewable credential handle used for every storage call made on the user's behalf
        self.credentials = credentials
        # Link to the user's root folder in cloud storage
        self.drive_url = None
        self.expires_at = expires_at


class SessionStore:
    """In-memory login sessions with a rolling expiry. Lost on restart, like everything else."""

    def __init__(self, max_age_seconds):
        self._max_age = datetime.timedelta(seconds=max_age_seconds)
        self._sessions = {}
        # Map of OAuth state: expiry, to match login callbacks with login redirects
        self._login_states = {}

    @property
    def max_age_seconds(self):
        return int(self._max_age.total_seconds())

    def create(self, user, credentials):
        self._purge_expired()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            user=user,
            credentials=credentials,
            expires_at=timezone_now() + self._max_age,
        )
        self._sessions[session.session_id] = session
        logger.debug('Created session for user {}', user.id)
        return session

    def get(self, session_id):
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        now = timezone_now()
        if session.expires_at < now:
            del self._sessions[session_id]
            return None
        session.expires_at = now + self._max_age
        return session

    def require(self, session_id):
        session = self.get(session_id)
        if session is None:
            raise NotLoggedInException()
        return session

    def delete(self, session_id):
        self._sessions.pop(session_id, None)

    def create_login_state(self):
        self._purge_expired()
        state = secrets.token_urlsafe(16)
        self._login_states[state] = timezone_now() + datetime.timedelta(seconds=LOGIN_STATE_MAX_AGE)
        return state

    def consume_login_state(self, state):
        expires_at = self._login_states.pop(state, None) if state else None
        return expires_at is not None and expires_at >= timezone_now()

    def _purge_expired(self):
        now = timezone_now()
        for session_id in [key for key, session in self._sessions.items() if session.expires_at < now]:
            del self._sessions[session_id]
        for state in [key for key, expires_at in self._login_states.items() if expires_at < now]:
            del self._login_states[state]
