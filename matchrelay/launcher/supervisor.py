# SPDX-License-Identifier: GPL-2.0-or-later

"""Lifecycle of the game client.

The client is not started directly: an external process manager ("helper")
reads a JSON options file, starts the game and reports its pid. The helper
does not guarantee when, or whether, it reports that pid relative to the game
being ready, so three sources race to provide it:

  * a "RESULT:<json>" line on the helper stdout, holding "clientPid";
  * a "PID:<n>" pattern in the helper output, once the helper exited;
  * the OS process table, queried by executable name.

The first one to answer wins. A watchdog terminates everything after a fixed
budget, whatever the matchmaking progress.
"""

import asyncio
import json
import logging
import os
import os.path
import re

import psutil

from matchrelay.errors import LaunchError
from matchrelay.monitoring import matchrelay_watchdog_expired

from . import tools

RESULT_RE = re.compile(r'RESULT:(.*)')
PID_RE = re.compile(r'PID:\s*(\d+)')


class ProcessSupervisor:
    def __init__(self, config, on_watchdog=None, sleep=asyncio.sleep):
        self.game = config['game']
        cfg = config['supervisor']
        self.helper_path = cfg['helper_path']
        self.options_path = cfg['options_path'] or os.path.join(
            os.path.dirname(self.helper_path or '.'), 'launch_options.json')
        self.launch_timeout = cfg['launch_timeout_secs']
        self.settle = cfg['settle_secs']
        self.probe_interval = cfg['probe_interval_secs']
        self.watchdog_grace = cfg['watchdog_grace_secs']
        self.watchdog_budget = cfg['watchdog_budget_secs']
        self.on_watchdog = on_watchdog
        self.sleep = sleep

        self.pid = None
        self.helper = None
        self.watchdog = None
        self.attempt = 0
        self._tasks = []
        self._cell = None

    @property
    def executable(self):
        return self.game['executable']

    def launch_arguments(self, exchange_code):
        return list(self.game['arguments']) + [
            '-AUTH_PASSWORD={}'.format(exchange_code),
            '-AUTH_TYPE=exchangecode',
        ]

    def write_options(self, exchange_code):
        options = {
            'GamePath': self.game['folder'],
            'Arguments': self.launch_arguments(exchange_code),
            'AutoTerminate': self.watchdog_budget,
        }
        with open(self.options_path, 'w') as f:
            json.dump(options, f, indent=2)

    async def launch(self, exchange_code):
        """Start the game through the helper and return the client pid."""
        if self.pid is not None or self.helper is not None:
            logging.info('killing previous game instance before relaunch')
            await self.kill()

        if not self.helper_path:
            raise LaunchError('no process manager configured')

        self.attempt += 1
        attempt = self.attempt
        loop = asyncio.get_event_loop()
        started = loop.time()
        cell = self._cell = tools.ResultCell()

        logging.info('launching %s', self.executable)
        self.write_options(exchange_code)
        try:
            self.helper = await tools.create_process(
                [self.helper_path, self.options_path])
        except OSError as e:
            self._remove_options()
            raise LaunchError('cannot start process manager {}: {}'.format(
                self.helper_path, e)) from e

        self.watchdog = asyncio.ensure_future(self._watchdog(attempt))
        self._tasks = [
            asyncio.ensure_future(self._read_stdout(self.helper, cell,
                                                    started)),
            asyncio.ensure_future(self._read_stderr(self.helper)),
        ]
        probe = asyncio.ensure_future(self._probe(cell))

        try:
            pid = await cell.wait(coro_timeout=self.launch_timeout)
        except asyncio.TimeoutError:
            raise LaunchError('timed out waiting for process manager to '
                              'report the client pid') from None
        finally:
            probe.cancel()

        if attempt != self.attempt:
            raise LaunchError('launch superseded while waiting for the pid')
        self.pid = pid
        logging.info('launched %s with pid %s (from %s)', self.executable,
                     pid, cell.source)
        return pid

    async def _read_stdout(self, proc, cell, started):
        output = []
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            line = line.decode(errors='replace').strip()
            if not line:
                continue
            output.append(line)
            logging.debug('process manager: %s', line)
            match = RESULT_RE.search(line)
            if match:
                self._parse_result(match.group(1), cell)

        code = await proc.wait()
        logging.info('process manager exited with code %s', code)
        self._remove_options()
        if proc is self.helper:
            self.helper = None

        if cell.done:
            return
        match = PID_RE.search('\n'.join(output))
        if match:
            cell.set(int(match.group(1)), source='exit output')
        elif code != 0 and (asyncio.get_event_loop().time() - started
                            > self.settle):
            cell.fail(LaunchError(
                'process manager exited with code {} without returning '
                'process ID'.format(code)), source='exit')

    def _parse_result(self, raw, cell):
        try:
            info = json.loads(raw.strip())
        except ValueError:
            logging.error('failed to parse process manager result: %s', raw)
            return
        if isinstance(info, dict) and info.get('clientPid'):
            cell.set(int(info['clientPid']), source='result line')

    async def _read_stderr(self, proc):
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            line = line.decode(errors='replace').strip()
            if line:
                logging.warning('process manager error: %s', line)

    async def _probe(self, cell):
        await self.sleep(self.settle)
        while not cell.done:
            try:
                pid = tools.find_pid_by_name(self.executable)
            except psutil.Error as e:
                logging.error('failed to query the process table: %s', e)
                pid = None
            if pid is not None:
                cell.set(pid, source='process table')
                return
            await self.sleep(self.probe_interval)

    async def _watchdog(self, attempt):
        await self.sleep(self.watchdog_grace)
        if attempt != self.attempt:
            return
        logging.warning('auto-terminate timeout reached (%ss)',
                        self.watchdog_grace)
        matchrelay_watchdog_expired.inc()
        if self.on_watchdog is not None:
            try:
                await self.on_watchdog()
            except Exception:
                logging.exception('watchdog cleanup failed')
        self._terminate(force=False)

        await self.sleep(max(0, self.watchdog_budget - self.watchdog_grace))
        if attempt != self.attempt:
            return
        logging.warning('auto-terminate budget exhausted (%ss), killing',
                        self.watchdog_budget)
        self.watchdog = None
        await self.kill()

    def _terminate(self, force):
        if self.pid is not None:
            logging.info('terminating game process (pid %s)', self.pid)
            try:
                if not tools.terminate_pid(self.pid, force=force):
                    logging.info('process %s already terminated', self.pid)
            except psutil.Error as e:
                logging.error('failed to kill game process %s: %s',
                              self.pid, e)
        if self.helper is not None and self.helper.returncode is None:
            logging.info('terminating process manager')
            try:
                if force:
                    self.helper.kill()
                else:
                    self.helper.terminate()
            except ProcessLookupError:
                pass

    async def kill(self):
        """Terminate the tracked processes and forget about them."""
        self._terminate(force=True)
        helper = self.helper
        self.pid = None
        self.helper = None
        if helper is not None:
            try:
                await asyncio.wait_for(helper.wait(), timeout=5)
            except asyncio.TimeoutError:
                logging.warning('process manager did not exit after kill')
        self._remove_options()
        if self.watchdog is not None:
            if self.watchdog is not asyncio.current_task():
                self.watchdog.cancel()
            self.watchdog = None
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if self._cell is not None:
            self._cell.fail(LaunchError('launch cancelled'), source='kill')
            self._cell = None
        # Stale watchdogs and pid sources of this launch must not act anymore.
        self.attempt += 1

    async def is_running(self):
        if self.pid is None:
            pid = tools.find_pid_by_name(self.executable)
            if pid is None:
                return False
            logging.info('found running %s with pid %s', self.executable, pid)
            self.pid = pid
            return True
        return tools.process_alive(self.pid, self.executable)

    async def kill_strays(self):
        """Kill game processes left over by a previous run."""
        for pid in tools.find_pids_by_name(self.executable):
            logging.info('killing stray game process (pid %s)', pid)
            try:
                tools.terminate_pid(pid, force=True)
            except psutil.Error as e:
                logging.error('failed to kill stray process %s: %s', pid, e)

    def _remove_options(self):
        try:
            os.remove(self.options_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning('failed to delete options file: %s', e)
