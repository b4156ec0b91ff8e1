import datetime

import pytest

from identity import IdentityException, User
from sessions import NotLoggedInException, SessionStore


def test_session_lifecycle():
    store = SessionStore(max_age_seconds=60)
    session = store.create(User('123', 'Ada Lovelace'), 'credentials')

    assert store.get(session.session_id) is session
    assert store.require(session.session_id) is session

    store.delete(session.session_id)
    assert store.get(session.session_id) is None
    with pytest.raises(NotLoggedInException):
        store.require(session.session_id)
    with pytest.raises(NotLoggedInException):
        store.require(None)


def test_expired_session_is_dropped():
    store = SessionStore(max_age_seconds=60)
    session = store.create(User('123', 'Ada Lovelace'), 'credentials')
    session.expires_at -= datetime.timedelta(seconds=120)

    assert store.get(session.session_id) is None


def test_login_state_is_single_use():
    store = SessionStore(max_age_seconds=60)
    state = store.create_login_state()

    assert store.consume_login_state(state)
    assert not store.consume_login_state(state)
    assert not store.consume_login_state('forged')
    assert not store.consume_login_state(None)


def test_user_from_person():
    user = User.from_person({
        'metadata': {'sources': [{'type': 'PROFILE', 'id': '10442'}]},
        'names': [{'displayName': 'Ada Lovelace', 'givenName': 'Ada'}],
        'photos': [{'url': 'https://example.com/ada.png'}],
    })

    assert user.to_dict() == {
        'id': '10442',
        'displayName': 'Ada Lovelace',
        'givenName': 'Ada',
        'photoUrl': 'https://example.com/ada.png',
    }


def test_user_without_id_is_rejected():
    with pytest.raises(IdentityException):
        User.from_person({'names': [{'displayName': 'Nobody'}]})
