# SPDX-License-Identifier: GPL-2.0-or-later

"""Matchmaking protocol client.

One attempt goes through these phases:

    IDLE -> TICKET_REQUESTED -> SOCKET_CONNECTING -> CONNECTING -> WAITING
         -> QUEUED -> SESSION_ASSIGNMENT | PLAY -> RESOLVED -> CLOSED

CLOSED is reached from any phase through close() or an unrecoverable error.
The socket only receives: after the signed handshake, the service pushes
StatusUpdate and Play messages until a game session is assigned. The assigned
session is then looked up and handed off to the backend exactly once.
"""

import asyncio
import dataclasses
import enum
import logging
import os

import aiohttp

from matchrelay import tokens
from matchrelay.errors import (
    HttpError,
    MatchmakingClosedError,
    MatchmakingConnectError,
    MatchmakingError,
    MatchmakingResolutionError,
)
from matchrelay.monitoring import (
    matchrelay_backend_posts,
    matchrelay_protocol_anomalies,
)

from . import framing

CLIENT_ID_LENGTH = 16


class Phase(enum.Enum):
    IDLE = 'Idle'
    TICKET_REQUESTED = 'TicketRequested'
    SOCKET_CONNECTING = 'SocketConnecting'
    CONNECTING = 'Connecting'
    WAITING = 'Waiting'
    QUEUED = 'Queued'
    SESSION_ASSIGNMENT = 'SessionAssignment'
    PLAY = 'Play'
    RESOLVED = 'Resolved'
    CLOSED = 'Closed'


@dataclasses.dataclass
class MatchmakingTicket:
    ticket_type: str
    payload: str
    signature: str
    service_url: str

    @classmethod
    def from_json(cls, data):
        try:
            return cls(ticket_type=data['ticketType'],
                       payload=data['payload'],
                       signature=data['signature'],
                       service_url=data['serviceUrl'])
        except (KeyError, TypeError):
            raise MatchmakingError(
                'invalid matchmaking ticket: {!r}'.format(data)) from None

    def authorization(self, client_id):
        return 'Epic-Signed {} {} {} {}'.format(
            self.ticket_type, self.payload, self.signature, client_id)


@dataclasses.dataclass
class ServerInfo:
    session_id: str
    match_id: str
    server_address: str
    server_port: int
    region: str
    playlist_name: str

    def as_json(self):
        return {
            'sessionId': self.session_id,
            'matchId': self.match_id,
            'serverAddress': self.server_address,
            'serverPort': self.server_port,
            'region': self.region,
            'playlistName': self.playlist_name,
        }


@dataclasses.dataclass
class MatchmakingSession:
    """State of a single matchmaking attempt."""

    attempt: int
    phase: Phase = Phase.IDLE
    ticket: MatchmakingTicket = None
    ticket_id: str = None
    match_id: str = None
    session_id: str = None
    resolving: bool = False
    posted: bool = False
    result: ServerInfo = None
    error: Exception = None


def ws_client_id():
    return os.urandom(CLIENT_ID_LENGTH).hex().upper()[:CLIENT_ID_LENGTH]


class MatchmakingClient:
    def __init__(self, config, api, supervisor):
        self.api = api
        self.supervisor = supervisor
        self.region = config['region']
        cfg = config['matchmaking']
        self.playlist = cfg['playlist']
        self.connect_attempts = cfg['connect_attempts']
        self.connect_backoff = cfg['connect_backoff_secs']
        self.connect_timeout = cfg['connect_timeout_secs']
        self.user_agent = config['headers']['game_user_agent']
        self.ws = None
        self.session = None
        self.attempts = 0

    @property
    def phase(self):
        return self.session.phase if self.session is not None else Phase.IDLE

    def _set_phase(self, session, phase):
        if session.phase is not phase:
            logging.debug('matchmaking attempt %s: %s -> %s', session.attempt,
                          session.phase.value, phase.value)
        session.phase = phase

    async def request_ticket(self, auth):
        if self.session is not None:
            await self.close()
        self.attempts += 1
        session = self.session = MatchmakingSession(attempt=self.attempts)
        self._set_phase(session, Phase.TICKET_REQUESTED)

        logging.info('requesting matchmaking ticket for account %s',
                     auth.account_id)
        data = await self.api.request_ticket(auth, self.region, self.playlist)
        session.ticket = MatchmakingTicket.from_json(data)
        logging.info('matchmaking ticket obtained: %s, service at %s',
                     session.ticket.ticket_type, session.ticket.service_url)
        return session.ticket

    async def connect(self):
        session = self.session
        if session is None or session.ticket is None:
            raise MatchmakingConnectError('no matchmaking ticket available')
        ticket = session.ticket
        self._set_phase(session, Phase.SOCKET_CONNECTING)

        for i in range(self.connect_attempts):
            client_id = ws_client_id()
            headers = {
                'Authorization': ticket.authorization(client_id),
                'User-Agent': self.user_agent,
                'Accept-Version': '*',
            }
            logging.info('connecting to matchmaking socket %s (%d/%d)',
                         ticket.service_url, i + 1, self.connect_attempts)
            try:
                self.ws = await asyncio.wait_for(
                    self.api.http.ws_connect(ticket.service_url,
                                             headers=headers),
                    timeout=self.connect_timeout)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                if session is not self.session:
                    raise MatchmakingClosedError(
                        'matchmaking closed while connecting') from e
                if i < self.connect_attempts - 1:
                    logging.warning(
                        'matchmaking socket error: %r. Retrying in %ss...',
                        e, self.connect_backoff)
                    await asyncio.sleep(self.connect_backoff)
                    if session is not self.session:
                        raise MatchmakingClosedError(
                            'matchmaking closed while connecting') from e
                else:
                    logging.error('max connection attempts reached')
                    await self.close()
                    raise MatchmakingConnectError(
                        'cannot connect to {}: {!r}'.format(
                            ticket.service_url, e)) from e
            else:
                logging.info('matchmaking socket connection established')
                return self.ws

    async def run(self, auth, timeout=None):
        """Run a whole attempt and return the handed off ServerInfo."""
        await self.request_ticket(auth)
        session = self.session
        try:
            await self.connect()
            await asyncio.wait_for(self._read(session), timeout=timeout)
        except asyncio.TimeoutError:
            raise MatchmakingError(
                'no session assigned after {}s'.format(timeout)) from None
        finally:
            await self.close()

        if session.result is not None:
            return session.result
        if session.error is not None:
            raise session.error
        raise MatchmakingClosedError(
            'matchmaking socket closed before a session was assigned')

    async def _read(self, session):
        ws = self.ws
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                await self.handle_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                await self.handle_frame(msg.data.decode(errors='replace'))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logging.error('matchmaking socket error: %s', ws.exception())
                break
            if session is not self.session or session.phase is Phase.CLOSED:
                break
        logging.info('matchmaking socket closed: code %s', ws.close_code)

    async def handle_frame(self, raw):
        logging.debug('matchmaking raw frame: %s', raw)
        messages, anomalies = framing.split_frame(raw)
        for fragment in anomalies:
            matchrelay_protocol_anomalies.inc()
            logging.error('failed to parse matchmaking fragment: %s', fragment)
        if not messages:
            logging.error('no message in matchmaking frame: %s', raw)
        for message in messages:
            await self.handle_message(message)

    async def handle_message(self, message):
        session = self.session
        if session is None:
            logging.debug('no matchmaking attempt, dropping %s', message)
            return
        logging.info('matchmaking message: %s', message)
        name = message.get('name')
        payload = message.get('payload')
        if not isinstance(payload, dict):
            payload = {}

        if name == 'StatusUpdate':
            await self._status_update(session, payload)
        elif name == 'Play':
            if session.resolving:
                logging.debug('session already resolved, ignoring Play')
                return
            session.match_id = payload.get('matchId')
            session.session_id = payload.get('sessionId') or session.match_id
            logging.info('ready to play, session %s, join delay %ss',
                         session.session_id, payload.get('joinDelaySec'))
            self._set_phase(session, Phase.PLAY)
            await self.resolve()
        else:
            logging.info('unknown matchmaking message type: %s', name)

    async def _status_update(self, session, payload):
        state = payload.get('state')
        if state == 'Connecting':
            self._set_phase(session, Phase.CONNECTING)
        elif state == 'Waiting':
            logging.info('matchmaking waiting (connected players: %s/%s)',
                         payload.get('connectedPlayers'),
                         payload.get('totalPlayers'))
            self._set_phase(session, Phase.WAITING)
        elif state == 'Queued':
            if session.ticket_id is None and payload.get('ticketId'):
                session.ticket_id = payload['ticketId']
                logging.info('matchmaking ticket id: %s', session.ticket_id)
            logging.info('matchmaking queued (position: %s)',
                         payload.get('queuedPlayers'))
            self._set_phase(session, Phase.QUEUED)
        elif state == 'SessionAssignment':
            if session.resolving:
                logging.debug('session already resolved, ignoring assignment')
                return
            if not payload.get('matchId'):
                logging.warning('session assignment without match id')
                return
            session.match_id = payload['matchId']
            session.session_id = payload.get('sessionId') or session.match_id
            logging.info('match found! match %s, session %s',
                         session.match_id, session.session_id)
            self._set_phase(session, Phase.SESSION_ASSIGNMENT)
            await self.resolve()
        else:
            logging.info('matchmaking state: %s', state)

    async def resolve(self):
        """Look up the assigned session and hand it off to the backend."""
        session = self.session
        if session is None or session.resolving or session.posted:
            return
        if not session.session_id:
            logging.error('no session id available, cannot resolve')
            return
        session.resolving = True

        try:
            data = await self.get_session_info(session.session_id)
            info = self._server_info(session, data)
            await self.api.post_server_info(info.as_json())
        except (HttpError, MatchmakingError, aiohttp.ClientError,
                asyncio.TimeoutError) as e:
            logging.error('failed to resolve session %s: %s',
                          session.session_id, e)
            session.error = MatchmakingResolutionError(str(e))
            await self.close()
            return

        session.posted = True
        session.result = info
        matchrelay_backend_posts.inc()
        logging.info('successfully posted server info to backend')
        self._set_phase(session, Phase.RESOLVED)

        await self.close()
        await self.supervisor.kill()

    async def get_session_info(self, session_id):
        logging.info('getting session info for session %s', session_id)
        try:
            return await self.api.get_session(session_id, tokens.ACCOUNT_API)
        except HttpError as e:
            if not e.unauthorized:
                raise
        logging.info('authentication failed (401), retrying with the game '
                     'access token')
        return await self.api.get_session(session_id, tokens.GAME_API)

    def _server_info(self, session, data):
        if not isinstance(data, dict) or not data.get('serverAddress'):
            raise MatchmakingResolutionError(
                'no server address for session {}'.format(session.session_id))
        logging.info('game server: %s:%s', data['serverAddress'],
                     data.get('serverPort'))
        attributes = data.get('attributes') or {}
        if attributes:
            logging.info('session key: %s, playlist: %s',
                         attributes.get('SESSIONKEY_s', 'N/A'),
                         attributes.get('PLAYLISTNAME_s', 'N/A'))
        return ServerInfo(session_id=session.session_id,
                          match_id=session.match_id or session.session_id,
                          server_address=data['serverAddress'],
                          server_port=data.get('serverPort'),
                          region=self.region,
                          playlist_name=self.playlist)

    async def close(self):
        """Close the socket and forget the current attempt."""
        ws, self.ws = self.ws, None
        if ws is not None and not ws.closed:
            logging.info('closing matchmaking socket')
            await ws.close()
        session, self.session = self.session, None
        if session is not None:
            self._set_phase(session, Phase.CLOSED)
