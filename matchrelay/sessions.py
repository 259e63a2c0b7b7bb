# SPDX-License-Identifier: GPL-2.0-or-later

"""Session discovery: polls the session list and claims eligible matches."""

import asyncio
import dataclasses
import logging
import time

import aiohttp

from matchrelay.errors import HttpError
from matchrelay.monitoring import (
    matchrelay_poll_errors,
    matchrelay_processed_sessions,
    matchrelay_sessions_detected,
)


@dataclasses.dataclass(frozen=True)
class Session:
    session_id: str
    region: str = None
    playlist_name: str = None
    started: bool = False
    players: int = 0
    max_players: int = 0

    @classmethod
    def from_json(cls, data):
        return cls(session_id=data.get('sessionId'),
                   region=data.get('region'),
                   playlist_name=data.get('playlistName'),
                   started=data.get('started'),
                   players=data.get('players'),
                   max_players=data.get('maxPlayers'))

    def __str__(self):
        return '{} ({}) {}/{}'.format(self.session_id, self.playlist_name,
                                      self.players, self.max_players)


def select_session(sessions, region, processed):
    """Return the session to claim among `sessions`, or None.

    Sessions that have not started win over started sessions nobody joined
    yet, whatever their order in the list.
    """
    candidates = [s for s in sessions
                  if s.region == region and s.session_id
                  and s.session_id not in processed]
    for session in candidates:
        if session.started is False:
            return session
    for session in candidates:
        if session.started is True and session.players == 0:
            return session
    return None


class ThrottledLog:
    """Emits at most one message per `window` seconds."""

    def __init__(self, window, level=logging.DEBUG, clock=time.monotonic):
        self.window = window
        self.level = level
        self.clock = clock
        self.last = None

    def __call__(self, msg, *args):
        now = self.clock()
        if self.last is not None and now - self.last < self.window:
            return False
        self.last = now
        logging.log(self.level, msg, *args)
        return True


class SessionPoller:
    def __init__(self, config, api):
        self.api = api
        self.region = config['region']
        self.interval = config['poll']['interval_secs']
        self.clear_interval = config['poll']['clear_processed_secs']
        self.log_waiting = ThrottledLog(config['poll']['log_throttle_secs'])
        self.processed = set()
        self.last_session_id = None
        self.running = False
        self.callback = None
        self._task = None
        self._resume_task = None
        self._clear_task = None
        self._delivery = None

    async def poll(self):
        """Fetch the session list once and return the session to claim."""
        try:
            data = await self.api.list_sessions()
        except (HttpError, aiohttp.ClientError, asyncio.TimeoutError,
                ValueError) as e:
            # ValueError: a 200 answer whose body is not JSON.
            matchrelay_poll_errors.inc()
            logging.error('failed to check sessions: %s', e)
            return None

        sessions = []
        for item in data:
            if not isinstance(item, dict):
                logging.debug('ignoring malformed session entry: %r', item)
                continue
            sessions.append(Session.from_json(item))

        if not sessions:
            self.log_waiting('no active sessions found')
            return None

        session = select_session(sessions, self.region, self.processed)
        if session is None:
            self.log_waiting('waiting for eligible %s match...', self.region)
            return None

        state = 'initializing' if session.started else 'not started'
        logging.info('found eligible match: %s, %s', session, state)
        return session

    @property
    def monitoring(self):
        return self.running and self._task is not None \
            and not self._task.done()

    def start_monitoring(self, on_eligible):
        if self.monitoring:
            logging.warning('session monitoring is already active')
            return
        self.callback = on_eligible
        self.running = True
        logging.info('starting session monitoring in %s', self.region)
        self._task = asyncio.ensure_future(self._monitor())

    def stop_monitoring(self):
        self._cancel_resume()
        if not self.running:
            return
        self.running = False
        # Monitoring is stopped from the monitor task itself when a session
        # is claimed; it must keep running to deliver it.
        if self._task is not None and self._task is not asyncio_current_task():
            self._task.cancel()
        self._task = None
        logging.info('session monitoring stopped')

    def resume(self):
        if self.monitoring:
            logging.info('session monitoring is already active')
            return
        if self.callback is None:
            logging.warning('cannot resume monitoring: no callback registered')
            return
        logging.info('resuming session monitoring')
        self.start_monitoring(self.callback)

    def resume_after_delay(self, delay):
        if self.callback is None:
            logging.warning('cannot resume monitoring: no callback registered')
            return
        self.stop_monitoring()
        logging.info('will resume session monitoring in %ss', delay)

        async def resume_later():
            await asyncio.sleep(delay)
            self._resume_task = None
            self.resume()

        self._resume_task = asyncio.ensure_future(resume_later())

    def clear_processed(self):
        count = len(self.processed)
        self.processed.clear()
        matchrelay_processed_sessions.set(0)
        logging.info('cleared %d processed session ids from history', count)

    def start_periodic_clear(self):
        async def clear_loop():
            while True:
                await asyncio.sleep(self.clear_interval)
                self.clear_processed()

        if self._clear_task is None:
            self._clear_task = asyncio.ensure_future(clear_loop())

    def stop(self):
        """Stop monitoring for good, including a session being handled."""
        self.stop_monitoring()
        if self._delivery is not None and \
                self._delivery is not asyncio_current_task():
            self._delivery.cancel()
        if self._clear_task is not None:
            self._clear_task.cancel()
            self._clear_task = None

    def _cancel_resume(self):
        if self._resume_task is not None:
            if self._resume_task is not asyncio_current_task():
                self._resume_task.cancel()
            self._resume_task = None

    async def _monitor(self):
        loop = asyncio.get_event_loop()
        next_tick = loop.time()
        while self.running:
            # Ticks that elapsed during a slow poll are skipped.
            now = loop.time()
            if next_tick < now:
                missed = (now - next_tick) // self.interval + 1
                next_tick += missed * self.interval
            await asyncio.sleep(max(0, next_tick - now))
            next_tick += self.interval
            if not self.running:
                return

            try:
                session = await self.poll()
            except Exception:
                matchrelay_poll_errors.inc()
                logging.exception('error in session monitoring')
                continue
            if session is None or not self.running:
                continue
            if session.session_id in self.processed:
                continue
            await self._claim(session)
            return

    async def _claim(self, session):
        logging.info('match detected: %s', session.session_id)
        self.processed.add(session.session_id)
        matchrelay_processed_sessions.set(len(self.processed))
        self.last_session_id = session.session_id
        matchrelay_sessions_detected.inc()
        self.stop_monitoring()
        self._delivery = asyncio_current_task()
        try:
            await self.callback(session)
        except Exception:
            logging.exception('error while handling session %s',
                              session.session_id)
        finally:
            self._delivery = None


def asyncio_current_task():
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
