# SPDX-License-Identifier: GPL-2.0-or-later

"""Sequences a whole match acquisition attempt.

    prepare -> exchange -> launch -> settle -> authenticate -> matchmaking

A failure at any stage kills the game, closes the matchmaking socket and
resumes session polling after a cooldown. Success resumes polling after a
short delay, so that the slot just vacated is not matched again at once.
"""

import asyncio
import dataclasses
import logging
import os.path
import time

from matchrelay.api import ApiClient
from matchrelay.errors import FatalStartupError
from matchrelay.launcher import files
from matchrelay.launcher.supervisor import ProcessSupervisor
from matchrelay.matchmaking.client import MatchmakingClient
from matchrelay.monitoring import (
    matchrelay_attempt_failures,
    matchrelay_attempt_summary,
    matchrelay_attempts,
)
from matchrelay.sessions import SessionPoller
from matchrelay.tokens import TokenStore


@dataclasses.dataclass
class Context:
    """Components of a run. Exactly one of each exists per run."""

    config: dict
    tokens: TokenStore
    api: ApiClient
    poller: SessionPoller
    supervisor: ProcessSupervisor
    matchmaking: MatchmakingClient

    @classmethod
    def create(cls, config, http_client=None):
        token_store = TokenStore(config)
        api = ApiClient(config, token_store, http_client=http_client)
        supervisor = ProcessSupervisor(config)
        return cls(config=config,
                   tokens=token_store,
                   api=api,
                   poller=SessionPoller(config, api),
                   supervisor=supervisor,
                   matchmaking=MatchmakingClient(config, api, supervisor))


class StageError(Exception):
    def __init__(self, stage, error):
        self.stage = stage
        self.error = error
        super().__init__(stage, error)


class MatchOrchestrator:
    def __init__(self, context):
        self.ctx = context
        cfg = context.config['orchestrator']
        self.settle = cfg['settle_secs']
        self.cooldown = cfg['cooldown_secs']
        self.success_delay = cfg['success_delay_secs']
        self.attempt_timeout = \
            context.config['matchmaking']['attempt_timeout_secs']
        self.last_result = None
        context.supervisor.on_watchdog = self.on_watchdog

    async def stage(self, name, coro):
        logging.debug('stage %s', name)
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise StageError(name, e) from e

    async def handle_new_session(self, session):
        logging.info('processing new match: %s', session)
        matchrelay_attempts.inc()
        start = time.monotonic()
        ctx = self.ctx
        ctx.poller.stop_monitoring()

        try:
            await self.stage('prepare',
                             files.prepare_game_files(ctx.config, ctx.api))
            credential = await self.stage('exchange',
                                          ctx.api.get_exchange_code())
            await self.stage('launch',
                             ctx.supervisor.launch(credential.code))

            logging.info('waiting %ss for the game process to initialize',
                         self.settle)
            await asyncio.sleep(self.settle)

            auth = await self.stage('authenticate',
                                    ctx.api.authenticate_game(credential))
            logging.info('starting matchmaking as %s', auth.display_name)
            self.last_result = await self.stage(
                'matchmaking',
                ctx.matchmaking.run(auth, timeout=self.attempt_timeout))
        except StageError as e:
            matchrelay_attempt_failures.labels(stage=e.stage).inc()
            logging.error('failed to handle match %s at stage %s: %s',
                          session.session_id, e.stage, e.error)
            await self.compensate()
            ctx.poller.resume_after_delay(self.cooldown)
        else:
            logging.info('match %s handed off: %s', session.session_id,
                         self.last_result)
            ctx.poller.resume_after_delay(self.success_delay)
        finally:
            matchrelay_attempt_summary.observe(
                max(time.monotonic() - start, 0))

    async def compensate(self):
        """Kill the game and close the matchmaking socket, each step on its
        own so that one failing step does not skip the other."""
        try:
            await self.ctx.supervisor.kill()
        except Exception:
            logging.exception('failed to clean up game process')
        try:
            await self.ctx.matchmaking.close()
        except Exception:
            logging.exception('failed to close matchmaking connection')

    async def on_watchdog(self):
        await self.ctx.matchmaking.close()

    async def startup(self):
        ctx = self.ctx
        helper = ctx.config['supervisor']['helper_path']
        if not helper or not os.path.exists(helper):
            raise FatalStartupError(
                'process manager not found at {}'.format(helper))

        await ctx.supervisor.kill_strays()

        token = load_bearer_token(ctx.config)
        if not token:
            raise FatalStartupError('no bearer token configured')
        ctx.tokens.set_token(token)
        if not await ctx.api.verify_token():
            raise FatalStartupError('bearer token was rejected')
        logging.info('bearer token verified: %s...', token[:15])

        ctx.poller.clear_processed()
        ctx.poller.start_monitoring(self.handle_new_session)
        ctx.poller.start_periodic_clear()
        logging.info('monitoring for available matches')

    async def shutdown(self):
        logging.info('shutting down')
        self.ctx.poller.stop()
        await self.compensate()
        await self.ctx.api.close()


def load_bearer_token(config):
    auth = config['auth']
    if auth['bearer_token']:
        return auth['bearer_token']
    if auth['token_file']:
        path = os.path.expanduser(auth['token_file'])
        try:
            with open(path) as f:
                return f.read().strip()
        except OSError as e:
            logging.error('cannot read token file %s: %s', path, e)
    return None


async def run(config, stop_event):
    """Run until `stop_event` is set. Raise FatalStartupError on startup."""
    orchestrator = MatchOrchestrator(Context.create(config))
    try:
        await orchestrator.startup()
        logging.info('system running, press Ctrl+C to exit')
        await stop_event.wait()
    finally:
        await orchestrator.shutdown()
