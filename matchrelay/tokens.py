# SPDX-License-Identifier: GPL-2.0-or-later

"""Credentials shared by every network-facing component.

Two header sets exist: the launcher "account API" one, authorized with the
bearer token, and the in-game "game API" one, authorized with the access token
obtained through the exchange-code grant. Headers are built even when the
matching token is missing; the remote answering 401 is what tells callers the
credential is absent or expired.
"""

import random
import string
from urllib.parse import urlsplit

ACCOUNT_API = 'account'
GAME_API = 'game'

CORRELATION_PREFIX = 'FN-'
CORRELATION_LENGTH = 20
CORRELATION_CHARS = string.ascii_letters + string.digits

_random = random.SystemRandom()


def correlation_id():
    return CORRELATION_PREFIX + ''.join(
        _random.choice(CORRELATION_CHARS) for _ in range(CORRELATION_LENGTH))


class TokenStore:
    def __init__(self, config):
        self.headers_config = config['headers']
        self.basic = config['auth']['client_basic']
        self.host = urlsplit(config['urls']['game_api']).netloc
        self.token = None
        self.access_token = None

    def set_token(self, token):
        self.token = token

    def set_access_token(self, token):
        self.access_token = token

    def headers(self, kind):
        if kind == ACCOUNT_API:
            return self._account_headers()
        elif kind == GAME_API:
            return self._game_headers()
        raise ValueError('unknown header kind: {}'.format(kind))

    def basic_headers(self):
        """Headers of the OAuth token endpoint (client credentials)."""
        headers = self._game_headers()
        headers['Authorization'] = 'basic {}'.format(self.basic)
        return headers

    def _account_headers(self):
        origin = self.headers_config['origin']
        return {
            'Authorization': 'Bearer {}'.format(self.token or ''),
            'Issuer': self.headers_config['issuer'],
            'User-Agent': self.headers_config['launcher_user_agent'],
            'Origin': origin,
            'Referer': origin + '/',
            'Accept': 'application/json, text/plain, */*',
        }

    def _game_headers(self):
        headers = {
            'Accept': '*/*',
            'X-Epic-Correlation-ID': correlation_id(),
            'User-Agent': self.headers_config['game_user_agent'],
            'Authorization': 'bearer {}'.format(self.access_token or ''),
            'Accept-Encoding': 'gzip, deflate',
        }
        if self.host:
            headers['Host'] = self.host
        return headers
