import logging
import urllib.parse

import aiohttp
from google.oauth2.credentials import Credentials

from clients import TorrentDriveException
from drive_logging import BraceAdapter

logger = BraceAdapter(logging.getLogger(__name__))

AUTH_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
TOKEN_URL = 'https://oauth2.googleapis.com/token'
PEOPLE_URL = 'https://people.googleapis.com/v1/people/me'
SCOPES = [
    'https://www.googleapis.com/auth/drive',
    'profile',
]
REQUEST_TIMEOUT = 30


class IdentityException(TorrentDriveException):
    pass


class User:
    def __init__(self, id, display_name, given_name=None, photo_url=None):
        self.id = id
        self.display_name = display_name
        self.given_name = given_name
        self.photo_url = photo_url

    def to_dict(self):
        return {
            'id': self.id,
            'displayName': self.display_name,
            'givenName': self.given_name,
            'photoUrl': self.photo_url,
        }

    @classmethod
    def from_person(cls, person):
        """Build from a People API people/me resource (names, photos, metadata)."""
        sources = person.get('metadata', {}).get('sources', [])
        if not sources or not sources[0].get('id'):
            raise IdentityException('Profile has no stable id.')
        names = person.get('names') or [{}]
        photos = person.get('photos') or [{}]
        return cls(
            id=sources[0]['id'],
            display_name=names[0].get('displayName'),
            given_name=names[0].get('givenName'),
            photo_url=photos[0].get('url'),
        )


class GoogleIdentity:
    """Authorization-code OAuth flow against Google, producing a User and renewable credentials."""

    def __init__(self, client_id, client_secret, redirect_uri):
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri

    def get_authorization_url(self, state):
        return AUTH_URL + '?' + urllib.parse.urlencode({
            'client_id': self._client_id,
            'redirect_uri': self._redirect_uri,
            'response_type': 'code',
            'scope': ' '.join(SCOPES),
            'access_type': 'offline',
            'prompt': 'consent',
            'state': state,
        })

    async def exchange_code(self, code):
        data = {
            'code': code,
            'client_id': self._client_id,
            'client_secret': self._client_secret,
            'redirect_uri': self._redirect_uri,
            'grant_type': 'authorization_code',
        }
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(TOKEN_URL, data=data) as response:
                tokens = await response.json(content_type=None)
                if response.status != 200:
                    raise IdentityException('OAuth2 failed: {}'.format(
                        tokens.get('error_description') or tokens.get('error') or response.status))
        logger.info('Obtained tokens with scopes {}', tokens.get('scope'))
        return tokens

    def build_credentials(self, tokens):
        return Credentials(
            token=tokens['access_token'],
            refresh_token=tokens.get('refresh_token'),
            token_uri=TOKEN_URL,
            client_id=self._client_id,
            client_secret=self._client_secret,
            scopes=SCOPES,
        )

    async def get_user(self, tokens):
        params = {'personFields': 'names,photos,metadata'}
        headers = {'Authorization': 'Bearer {}'.format(tokens['access_token'])}
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(PEOPLE_URL, params=params, headers=headers) as response:
                person = await response.json(content_type=None)
                if response.status != 200:
                    raise IdentityException('Failed to get user details: {}'.format(
                        person.get('error', {}).get('message') or response.status))
        user = User.from_person(person)
        logger.info('Obtained user {}', user.id)
        return user
