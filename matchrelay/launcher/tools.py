# SPDX-License-Identifier: GPL-2.0-or-later

import asyncio
import logging
import subprocess

import psutil


def add_coro_timeout(coro):
    async def coro_(*args, coro_timeout=None, **kwargs):
        return (await asyncio.wait_for(coro(*args, **kwargs),
                                       timeout=coro_timeout))
    return coro_


class ResultCell:
    """Single-assignment result shared by competing producers.

    The first producer to call set() or fail() decides the outcome; later
    calls are ignored and return False.
    """

    def __init__(self):
        self._future = asyncio.get_event_loop().create_future()
        self.source = None

    @property
    def done(self):
        return self._future.done()

    def set(self, value, source=None):
        if self._future.done():
            logging.debug('ignoring late result %r from %s', value, source)
            return False
        self.source = source
        self._future.set_result(value)
        return True

    def fail(self, exc, source=None):
        if self._future.done():
            return False
        self.source = source
        self._future.set_exception(exc)
        # Nobody may ever wait on it, e.g. when the launch failed early.
        self._future.exception()
        return True

    @add_coro_timeout
    async def wait(self):
        return await asyncio.shield(self._future)


async def create_process(cmdline, **kwargs):
    return (await asyncio.create_subprocess_exec(*cmdline,
            stdin=subprocess.DEVNULL, stdout=subprocess.PIPE,
            stderr=subprocess.PIPE, **kwargs))


def find_pids_by_name(name):
    """Return the pids of the live processes called `name`."""
    return [proc.info['pid']
            for proc in psutil.process_iter(['pid', 'name', 'status'])
            if proc.info['name'] == name
            and proc.info['status'] != psutil.STATUS_ZOMBIE]


def find_pid_by_name(name):
    pids = find_pids_by_name(name)
    return pids[0] if pids else None


def process_alive(pid, name=None):
    try:
        proc = psutil.Process(pid)
        if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
            return False
        return name is None or proc.name() == name
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def terminate_pid(pid, force=False):
    """Terminate `pid`. Return False if there was no such process."""
    try:
        proc = psutil.Process(pid)
        if force:
            proc.kill()
        else:
            proc.terminate()
    except psutil.NoSuchProcess:
        return False
    return True
