# SPDX-License-Identifier: GPL-2.0-or-later

"""REST client for the launcher, game and backend APIs."""

import dataclasses
import logging
from urllib.parse import urljoin

import aiohttp

from matchrelay import tokens
from matchrelay.errors import CredentialError, HttpError

SERVERS_PATH = 'v2/launcher/servers'
ACCOUNT_PATH = 'v2/launcher/account'
EXCHANGE_PATH = 'account/api/oauth/exchange'
TOKEN_PATH = 'account/api/oauth/token'
VERSION_CHECK_PATH = 'fortnite/api/v2/versioncheck/Windows'
TICKET_PATH = 'fortnite/api/game/v2/matchmakingservice/ticket/player/{}'
SESSION_PATH = 'fortnite/api/matchmaking/session/{}'
SERVER_INFO_PATH = 'api/v1/server-info'

DEFAULT_EXCHANGE_EXPIRY = 300


@dataclasses.dataclass
class ExchangeCredential:
    """Single-use code that the launched client trades for an access token."""

    code: str
    expires_in: int = DEFAULT_EXCHANGE_EXPIRY
    client_id: str = None
    consumed: bool = False

    def __repr__(self):
        return '<ExchangeCredential {}...>'.format(self.code[:5])


@dataclasses.dataclass
class GameAuth:
    access_token: str
    account_id: str
    display_name: str = None


class ApiClient:
    """Performs the HTTP calls of an attempt.

    A single aiohttp session is created lazily and reused; tests inject their
    own client (e.g. the one from the aiohttp_client fixture) instead.
    """

    def __init__(self, config, token_store, http_client=None):
        self.config = config
        self.tokens = token_store
        self.urls = config['urls']
        self._http_client = http_client
        self._session = None

    @property
    def http(self):
        if self._http_client is not None:
            return self._http_client
        if self._session is None or self._session.closed:
            http_config = self.config['http']
            connector = None
            if not http_config['verify_ssl']:
                connector = aiohttp.TCPConnector(ssl=False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(
                    total=http_config['timeout_secs']))
        return self._session

    async def close(self):
        # The lifecycle of injected clients is handled externally.
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def url(self, api, path):
        return urljoin(self.urls[api], path)

    async def _request(self, method, url, *, expect=None, raw=False,
                       **kwargs):
        async with self.http.request(method, url, **kwargs) as resp:
            ok = (resp.status == expect if expect is not None
                  else 200 <= resp.status < 300)
            if not ok:
                raise HttpError(resp.status, url, await resp.text())
            if raw:
                return await resp.read()
            return await resp.json(content_type=None)

    #
    # Launcher (account) API
    #

    async def verify_token(self):
        """Return whether the bearer token is accepted by the launcher API."""
        if not self.tokens.token:
            return False
        try:
            await self._request(
                'GET', self.url('account_api', ACCOUNT_PATH),
                headers=self.tokens.headers(tokens.ACCOUNT_API))
        except (HttpError, aiohttp.ClientError) as e:
            logging.warning('bearer token verification failed: %s', e)
            return False
        return True

    async def list_sessions(self):
        data = await self._request(
            'GET', self.url('account_api', SERVERS_PATH),
            headers=self.tokens.headers(tokens.ACCOUNT_API))
        if not isinstance(data, list):
            return []
        return data

    #
    # Game API
    #

    async def get_exchange_code(self):
        if not self.tokens.token:
            raise CredentialError('no bearer token available')
        logging.info('requesting exchange code')
        data = await self._request(
            'GET', self.url('game_api', EXCHANGE_PATH),
            headers=self.tokens.headers(tokens.ACCOUNT_API))
        if not isinstance(data, dict) or not data.get('code'):
            raise CredentialError('exchange code missing from response')
        credential = ExchangeCredential(
            code=data['code'],
            expires_in=data.get('expiresInSeconds') or DEFAULT_EXCHANGE_EXPIRY,
            client_id=data.get('creatingClientId'))
        logging.info('exchange code obtained: %s..., expires in %ss',
                     credential.code[:5], credential.expires_in)
        return credential

    async def authenticate_game(self, credential):
        """Authenticate the launched client with a fresh exchange credential.

        Runs the client-credentials grant and the version check the game does
        on startup, then trades the exchange code for an access token. The
        credential is consumed by the attempt, whatever its outcome.
        """
        if credential.consumed:
            raise CredentialError('exchange code already used')

        logging.info('requesting client credentials token')
        client_token = await self._request(
            'POST', self.url('game_api', TOKEN_PATH),
            headers=self.tokens.basic_headers(),
            data={'grant_type': 'client_credentials', 'token_type': 'eg1'})
        if not isinstance(client_token, dict) or \
                not client_token.get('access_token'):
            raise CredentialError('client credentials token missing')

        logging.info('checking game version')
        version_headers = self.tokens.headers(tokens.GAME_API)
        version_headers['Authorization'] = 'bearer {}'.format(
            client_token['access_token'])
        await self._request(
            'GET', self.url('game_api', VERSION_CHECK_PATH),
            headers=version_headers,
            params={'version': self.config['game']['version']})

        logging.info('exchanging code for an access token')
        headers = self.tokens.basic_headers()
        if self.config['auth']['device_id']:
            headers['X-Epic-Device-ID'] = self.config['auth']['device_id']
        credential.consumed = True
        data = await self._request(
            'POST', self.url('game_api', TOKEN_PATH),
            headers=headers,
            data={'grant_type': 'exchange_code',
                  'exchange_code': credential.code,
                  'token_type': 'eg1'})
        if not isinstance(data, dict) or not data.get('access_token'):
            raise CredentialError('access token missing from response')

        auth = GameAuth(access_token=data['access_token'],
                        account_id=data.get('account_id'),
                        display_name=data.get('display_name'))
        self.tokens.set_access_token(auth.access_token)
        logging.info('authenticated in-game as %s', auth.display_name)
        return auth

    async def request_ticket(self, auth, region, playlist):
        matchmaking = self.config['matchmaking']
        bucket_id = matchmaking['bucket_id'].format(region=region,
                                                    playlist=playlist)
        params = {
            'partyPlayerIds': auth.account_id,
            'bucketId': bucket_id,
            'player.platform': 'Windows',
            'player.subregions': region,
            'player.option.crossplayOptOut': 'false',
            'party.WIN': 'true',
            'input.KBM': 'true',
            'player.input': 'KBM',
            'player.playerGroups': auth.account_id,
        }
        params.update(matchmaking['ticket_options'])
        headers = self.tokens.headers(tokens.GAME_API)
        headers['Authorization'] = 'bearer {}'.format(auth.access_token)
        url = self.url('game_api', TICKET_PATH.format(auth.account_id))
        logging.debug('ticket request %s %s', url, params)
        return await self._request('GET', url, headers=headers, params=params)

    async def get_session(self, session_id, kind):
        url = self.url('game_api', SESSION_PATH.format(session_id))
        return await self._request('GET', url,
                                   headers=self.tokens.headers(kind))

    #
    # Backend and downloads
    #

    async def post_server_info(self, info):
        url = self.url('backend', SERVER_INFO_PATH)
        logging.info('posting server info to %s: %s', url, info)
        await self._request('POST', url, json=info, expect=200, raw=True)

    async def download(self, url):
        return await self._request('GET', url, raw=True)
