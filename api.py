import asyncio
import base64
import logging
import os
import tempfile
import urllib.parse
import zipfile
from functools import wraps

from aiohttp import WSMsgType, hdrs, web

from clients import (ClientNotFoundException, InvalidTorrentSourceException, TorrentAlreadyAddedException,
                     TorrentEngineException, TorrentNotFoundException)
from drive_logging import BraceAdapter
from identity import IdentityException
from notifier import WebSocketChannel
from progress import get_file_infos
from sessions import COOKIE_NAME, NotLoggedInException
from utils import JsonResponse, jsonify_exceptions, parse_bool

logger = BraceAdapter(logging.getLogger(__name__))

DOWNLOAD_CHUNK_SIZE = 256 * 1024
WS_HEARTBEAT_SECONDS = 30


def login_required(fn):
    @wraps(fn)
    async def inner(self, request):
        try:
            session = self.sessions.require(request.cookies.get(COOKIE_NAME))
        except NotLoggedInException as exc:
            return JsonResponse({'detail': str(exc)}, status=401)
        return await fn(self, request, session)

    return inner


def _content_disposition(filename):
    return "attachment; filename*=UTF-8''{}".format(urllib.parse.quote(filename))


def _build_zip(zip_path, files):
    with zipfile.ZipFile(zip_path, 'w', zipfile.ZIP_DEFLATED, allowZip64=True) as archive:
        for file in files:
            if os.path.isfile(file.local_path):
                archive.write(file.local_path, file.path)


@web.middleware
async def force_https_middleware(request, handler):
    if request.headers.get('X-Forwarded-Proto', request.scheme) == 'http':
        raise web.HTTPMovedPermanently(request.url.with_scheme('https'))
    return await handler(request)


class TorrentDriveAPI:
    def __init__(self, config, controller, notifier, sessions, identity, storage):
        self.config = config
        self.controller = controller
        self.notifier = notifier
        self.sessions = sessions
        self.identity = identity
        self.storage = storage
        # Open push channels, closed on shutdown
        self._websockets = set()

        middlewares = [force_https_middleware] if config.force_https else []
        self.app = web.Application(
            client_max_size=16 * 1024 * 1024,  # 16MB max request size, enough for .torrent files
            middlewares=middlewares,
        )
        self.app.add_routes([
            web.get('/', self.index),
            web.get('/ping', self.ping),
            web.get('/login', self.login),
            web.get('/login-callback', self.login_callback),
            web.get('/logout', self.logout),
            web.get('/me', self.me),
            web.get('/debug', self.debug),
            web.post('/add-torrent', self.add_torrent),
            web.post('/update-torrent', self.update_torrent),
            web.post('/delete-torrent', self.delete_torrent),
            web.get('/get-torrents', self.get_torrents),
            web.get('/download/{info_hash}', self.download_torrent),
            web.get('/download/{info_hash}/{file_id}', self.download_file),
            web.get('/socket', self.socket),
        ])
        self.app.on_shutdown.append(self._close_websockets)

    def get_session(self, request):
        return self.sessions.get(request.cookies.get(COOKIE_NAME))

    async def _read_data(self, request):
        if request.content_type == 'application/json':
            data = await request.json()
            if not isinstance(data, dict):
                raise InvalidTorrentSourceException('Request body must be a JSON object.')
            return data
        return await request.post()

    def _get_required(self, data, key):
        value = data.get(key)
        if not value:
            raise InvalidTorrentSourceException('Missing required field {}.'.format(key))
        return value

    def _get_selection(self, data):
        if hasattr(data, 'getall'):
            values = data.getall('selectedFiles[]', None) or data.getall('selectedFiles', None)
        else:
            values = data.get('selectedFiles')
        if values is None:
            raise InvalidTorrentSourceException('Missing required field selectedFiles.')
        if not isinstance(values, (list, tuple)):
            values = [values]
        return [parse_bool(value) for value in values]

    async def _read_torrent_source(self, request):
        data = await self._read_data(request)
        torrent = data.get('torrent')
        if isinstance(torrent, web.FileField):
            return torrent.file.read()
        if torrent:
            # JSON clients send the .torrent base64 encoded
            try:
                return base64.b64decode(torrent, validate=True)
            except ValueError as exc:
                raise InvalidTorrentSourceException('Invalid base64 torrent file.') from exc
        if data.get('magnet'):
            return data['magnet']
        raise InvalidTorrentSourceException('Invalid request, expected a torrent file or a magnet link.')

    @jsonify_exceptions
    async def index(self, request):
        if self.get_session(request):
            raise web.HTTPFound('/me')
        raise web.HTTPFound('/login')

    @jsonify_exceptions
    async def ping(self, request):
        return JsonResponse({'success': True})

    @jsonify_exceptions
    async def login(self, request):
        if self.get_session(request):
            raise web.HTTPFound('/me')
        state = self.sessions.create_login_state()
        raise web.HTTPFound(self.identity.get_authorization_url(state))

    @jsonify_exceptions
    async def login_callback(self, request):
        if 'error' in request.query:
            logger.error('Login error: {}', request.query['error'])
            return JsonResponse({'detail': 'Login error: {}'.format(request.query['error'])}, status=401)
        if not self.sessions.consume_login_state(request.query.get('state')):
            return JsonResponse({'detail': 'Invalid or expired login state.'}, status=400)
        if 'code' not in request.query:
            return JsonResponse({'detail': 'Missing authorization code.'}, status=400)

        try:
            tokens = await self.identity.exchange_code(request.query['code'])
            user = await self.identity.get_user(tokens)
        except IdentityException as exc:
            logger.error('Login failed: {}', exc)
            return JsonResponse({'detail': str(exc)}, status=401)

        credentials = self.identity.build_credentials(tokens)
        try:
            folder = await self.storage.create_folder_if_not_exists(
                self.config.drive_root_folder, self.config.drive_return_fields, credentials)
        except Exception as exc:
            logger.exception('Failed to create Drive folder {}', self.config.drive_root_folder)
            return JsonResponse({'detail': 'Failed to create Drive folder: {}'.format(exc)}, status=502)

        session = self.sessions.create(user, credentials)
        session.drive_url = folder.get('webViewLink')
        response = web.HTTPFound('/me')
        response.set_cookie(
            COOKIE_NAME,
            session.session_id,
            max_age=self.sessions.max_age_seconds,
            httponly=True,
            secure=self.config.force_https,
            samesite='Lax',
        )
        raise response

    @jsonify_exceptions
    async def logout(self, request):
        self.sessions.delete(request.cookies.get(COOKIE_NAME))
        response = web.HTTPFound('/')
        response.del_cookie(COOKIE_NAME)
        raise response

    @jsonify_exceptions
    @login_required
    async def me(self, request, session):
        data = session.user.to_dict()
        data['driveUrl'] = session.drive_url
        return JsonResponse(data)

    @jsonify_exceptions
    @login_required
    async def debug(self, request, session):
        client = self.controller.registry.get_client(session.user.id)
        if not client:
            return JsonResponse({'detail': 'Client not found for user.'}, status=404)
        return JsonResponse(client.get_debug_dict(), compact=False)

    @jsonify_exceptions
    @login_required
    async def add_torrent(self, request, session):
        try:
            source = await self._read_torrent_source(request)
            torrent = await self.controller.add_torrent(source, session.user.id, session.credentials)
            await torrent.wait_ready(self.config.metadata_timeout_seconds)
        except InvalidTorrentSourceException as exc:
            return JsonResponse({'detail': str(exc)}, status=400)
        except TorrentAlreadyAddedException as exc:
            return JsonResponse({'detail': str(exc)}, status=409)
        except TorrentEngineException as exc:
            return JsonResponse({'detail': str(exc)}, status=500)
        except asyncio.TimeoutError:
            return JsonResponse({'detail': 'Timed out waiting for torrent metadata.'}, status=504)

        logger.info('Added torrent {} with files {}', torrent.name, ', '.join(f.name for f in torrent.files))
        return JsonResponse({
            'infoHash': torrent.info_hash,
            'files': get_file_infos(torrent),
        })

    @jsonify_exceptions
    @login_required
    async def update_torrent(self, request, session):
        try:
            data = await self._read_data(request)
            info_hash = self._get_required(data, 'infoHash')
            selection = self._get_selection(data)
            await self.controller.update_selection(info_hash, session.user.id, selection)
        except InvalidTorrentSourceException as exc:
            return JsonResponse({'detail': str(exc)}, status=400)
        except (ClientNotFoundException, TorrentNotFoundException) as exc:
            return JsonResponse({'detail': str(exc)}, status=404)
        return web.Response()

    @jsonify_exceptions
    @login_required
    async def delete_torrent(self, request, session):
        try:
            data = await self._read_data(request)
            info_hash = self._get_required(data, 'infoHash')
            await self.controller.delete_torrent(info_hash, session.user.id)
        except InvalidTorrentSourceException as exc:
            return JsonResponse({'detail': str(exc)}, status=400)
        except (ClientNotFoundException, TorrentNotFoundException) as exc:
            return JsonResponse({'detail': str(exc)}, status=404)
        return web.Response()

    @jsonify_exceptions
    @login_required
    async def get_torrents(self, request, session):
        return JsonResponse(self.controller.list_torrents(session.user.id))

    @jsonify_exceptions
    @login_required
    async def download_torrent(self, request, session):
        try:
            torrent = self.controller.get_torrent(request.match_info['info_hash'], session.user.id)
        except (ClientNotFoundException, TorrentNotFoundException) as exc:
            return JsonResponse({'detail': str(exc)}, status=404)

        fd, zip_path = tempfile.mkstemp(suffix='.zip', dir=self.config.temp_root)
        os.close(fd)
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _build_zip, zip_path, torrent.selected_files)

            response = web.StreamResponse(headers={
                hdrs.CONTENT_TYPE: 'application/zip',
                hdrs.CONTENT_DISPOSITION: _content_disposition('{}.zip'.format(torrent.name)),
            })
            response.content_length = os.path.getsize(zip_path)
            await response.prepare(request)
            with open(zip_path, 'rb') as f:
                while True:
                    chunk = f.read(DOWNLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    await response.write(chunk)
            await response.write_eof()
            return response
        finally:
            os.remove(zip_path)

    @jsonify_exceptions
    @login_required
    async def download_file(self, request, session):
        try:
            torrent = self.controller.get_torrent(request.match_info['info_hash'], session.user.id)
        except (ClientNotFoundException, TorrentNotFoundException) as exc:
            return JsonResponse({'detail': str(exc)}, status=404)

        file = torrent.find_file(request.match_info['file_id'])
        if file is None or not file.exists_locally():
            return JsonResponse({'detail': 'File not found.'}, status=404)
        return web.FileResponse(file.local_path, headers={
            hdrs.CONTENT_DISPOSITION: _content_disposition(file.name),
        })

    @login_required
    async def socket(self, request, session):
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SECONDS)
        await ws.prepare(request)
        self._websockets.add(ws)
        push_task = asyncio.ensure_future(self.notifier.serve(session.user.id, WebSocketChannel(ws)))
        try:
            async for message in ws:
                if message.type == WSMsgType.ERROR:
                    logger.warning('Push channel for user {} closed with {}', session.user.id, ws.exception())
        finally:
            push_task.cancel()
            self._websockets.discard(ws)
        return ws

    async def _close_websockets(self, app):
        for ws in list(self._websockets):
            await ws.close(code=1001, message=b'Server shutdown')

    def run(self):
        web.run_app(self.app, port=self.config.api_port)
