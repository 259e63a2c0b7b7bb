import asyncio
import gc
import json
import os
import secrets
import shutil
import stat
import sys
from unittest.mock import AsyncMock, Mock, call

import psutil
import pytest

from matchrelay.errors import LaunchError
from matchrelay.launcher import tools
from matchrelay.launcher.supervisor import ProcessSupervisor


# The process manager is replaced by a python script. It records the options
# it was given, usually starts the "game" (a renamed copy of sleep, so that it
# can be found by name) and then behaves as told by its body.

HELPER = '''\
#!{python}
import json, subprocess, sys, time
with open(sys.argv[1]) as f:
    options = json.load(f)
with open({record!r}, 'w') as f:
    json.dump(options, f)
'''

START_GAME = '''\
game = subprocess.Popen([{game!r}, '30'], stdout=subprocess.DEVNULL,
                        stderr=subprocess.DEVNULL)
'''

REPORT_RESULT = '''\
print('starting game', flush=True)
print('RESULT:' + json.dumps({'clientPid': game.pid}), flush=True)
time.sleep(30)
'''

REPORT_PID_ON_EXIT = '''\
print('Game started, PID: %d' % game.pid, flush=True)
'''

SILENT = '''\
time.sleep(30)
'''

CRASH = '''\
print('cannot start game', flush=True)
sys.exit(3)
'''


@pytest.fixture
def game(tmp_path):
    name = 'mrgame' + secrets.token_hex(3)
    path = tmp_path / name
    shutil.copy(shutil.which('sleep'), path)
    yield path
    for pid in tools.find_pids_by_name(name):
        tools.terminate_pid(pid, force=True)


@pytest.fixture
def make_supervisor(config, tmp_path, game):
    def make(body, start_game=True, **options):
        record = tmp_path / 'received_options.json'
        helper = tmp_path / 'helper'
        script = HELPER.format(python=sys.executable, record=str(record))
        if start_game:
            script += START_GAME.format(game=str(game))
        helper.write_text(script + body)
        helper.chmod(helper.stat().st_mode | stat.S_IEXEC)
        config['game']['executable'] = game.name
        config['supervisor'].update({
            'launch_timeout_secs': 5,
            'settle_secs': 10,
            'probe_interval_secs': 0.05,
        })
        config['supervisor'].update(options)
        supervisor = ProcessSupervisor(config)
        supervisor.record = record
        return supervisor
    return make


async def wait_dead(pid, timeout=3):
    for _ in range(int(timeout / 0.05)):
        if not tools.process_alive(pid):
            return True
        await asyncio.sleep(0.05)
    return False


##############
# ResultCell #
##############


async def test_result_cell_first_writer_wins():
    cell = tools.ResultCell()
    assert cell.set(1, source='a')
    assert not cell.set(2, source='b')
    assert not cell.fail(LaunchError('late'), source='c')
    assert await cell.wait(coro_timeout=1) == 1
    assert cell.source == 'a'


async def test_result_cell_failure():
    cell = tools.ResultCell()
    assert cell.fail(LaunchError('launch cancelled'), source='kill')
    with pytest.raises(LaunchError):
        await cell.wait(coro_timeout=1)


async def test_result_cell_failure_without_waiter(caplog):
    cell = tools.ResultCell()
    cell.fail(LaunchError('launch cancelled'))
    del cell
    gc.collect()
    assert 'never retrieved' not in caplog.text


async def test_result_cell_timeout():
    cell = tools.ResultCell()
    with pytest.raises(asyncio.TimeoutError):
        await cell.wait(coro_timeout=0.05)
    # Waiting again after a timeout still works.
    cell.set(3)
    assert await cell.wait(coro_timeout=1) == 3


##########
# launch #
##########


async def test_launch_from_result_line(make_supervisor, game):
    supervisor = make_supervisor(REPORT_RESULT)
    pid = await supervisor.launch('exchange-code-1234')
    try:
        assert supervisor.pid == pid
        assert psutil.Process(pid).name() == game.name
        assert await supervisor.is_running()

        with open(supervisor.record) as f:
            options = json.load(f)
        assert options['GamePath'] == supervisor.game['folder']
        assert options['Arguments'][-2:] == [
            '-AUTH_PASSWORD=exchange-code-1234', '-AUTH_TYPE=exchangecode']
        assert options['AutoTerminate'] == 60
    finally:
        await supervisor.kill()


async def test_launch_from_exit_output(make_supervisor):
    supervisor = make_supervisor(REPORT_PID_ON_EXIT)
    pid = await supervisor.launch('code')
    try:
        assert tools.process_alive(pid)
        # The helper is gone and has cleaned up its options file.
        assert supervisor.helper is None
        assert not os.path.exists(supervisor.options_path)
    finally:
        await supervisor.kill()


async def test_launch_from_process_table(make_supervisor):
    supervisor = make_supervisor(SILENT, settle_secs=0.1)
    pid = await supervisor.launch('code')
    try:
        assert tools.process_alive(pid, supervisor.executable)
    finally:
        await supervisor.kill()


async def test_helper_crash(make_supervisor):
    supervisor = make_supervisor(CRASH, start_game=False, settle_secs=0)
    with pytest.raises(LaunchError):
        await supervisor.launch('code')
    await supervisor.kill()


async def test_launch_timeout(make_supervisor):
    supervisor = make_supervisor(SILENT, launch_timeout_secs=0.3)
    with pytest.raises(LaunchError):
        await supervisor.launch('code')
    await supervisor.kill()
    assert supervisor.helper is None


async def test_missing_helper(config, tmp_path):
    config['supervisor']['helper_path'] = str(tmp_path / 'nope')
    supervisor = ProcessSupervisor(config)
    with pytest.raises(LaunchError):
        await supervisor.launch('code')
    assert not os.path.exists(supervisor.options_path)


async def test_relaunch_kills_previous_instance(make_supervisor):
    supervisor = make_supervisor(REPORT_RESULT)
    first = await supervisor.launch('code1')
    second = await supervisor.launch('code2')
    try:
        assert first != second
        assert await wait_dead(first)
        assert tools.process_alive(second)
    finally:
        await supervisor.kill()


########
# kill #
########


async def test_kill_is_idempotent(make_supervisor):
    supervisor = make_supervisor(REPORT_RESULT)
    pid = await supervisor.launch('code')
    await supervisor.kill()
    await supervisor.kill()
    assert supervisor.pid is None
    assert supervisor.helper is None
    assert supervisor.watchdog is None
    assert await wait_dead(pid)
    assert not await supervisor.is_running()
    assert not os.path.exists(supervisor.options_path)


async def test_kill_strays(make_supervisor):
    supervisor = make_supervisor(REPORT_RESULT)
    pid = await supervisor.launch('code')
    # Forget about the instance, as a restarted program would.
    supervisor.pid = None
    await supervisor.kill_strays()
    assert await wait_dead(pid)
    await supervisor.kill()


############
# watchdog #
############


class FakeClock:
    """Sleeps that return at once, advancing a fake time instead."""

    def __init__(self):
        self.now = 0
        self.sleeps = []
        self.on_sleep = None

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay
        if self.on_sleep is not None:
            self.on_sleep(self.now)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def terminate_pid(mocker):
    return mocker.patch('matchrelay.launcher.tools.terminate_pid',
                        return_value=True)


@pytest.fixture
def tracked(config, clock, terminate_pid):
    """A supervisor tracking a game and a helper, on the fake clock."""
    supervisor = ProcessSupervisor(config, on_watchdog=AsyncMock(),
                                   sleep=clock.sleep)
    supervisor.pid = 4242
    supervisor.helper = Mock(returncode=None)
    supervisor.helper.wait = AsyncMock(return_value=-9)
    return supervisor


async def test_watchdog_bound(tracked, clock, terminate_pid):
    helper = tracked.helper
    await tracked._watchdog(tracked.attempt)

    assert clock.sleeps == [30, 30]
    assert clock.now == 60
    tracked.on_watchdog.assert_awaited_once_with()
    assert terminate_pid.call_args_list == [call(4242, force=False),
                                            call(4242, force=True)]
    helper.terminate.assert_called_once_with()
    helper.kill.assert_called_once_with()
    assert tracked.pid is None
    assert tracked.helper is None
    assert tracked.watchdog is None


async def test_watchdog_grace_only(tracked, clock, terminate_pid):
    # Killed by someone else between the two deadlines.
    def kill_at_budget(now):
        if now == 60:
            tracked.attempt += 1

    clock.on_sleep = kill_at_budget
    await tracked._watchdog(tracked.attempt)
    tracked.on_watchdog.assert_awaited_once_with()
    terminate_pid.assert_called_once_with(4242, force=False)
    tracked.helper.kill.assert_not_called()
    assert tracked.pid == 4242


async def test_stale_watchdog_does_nothing(tracked, clock, terminate_pid):
    def kill_during_grace(now):
        tracked.attempt += 1

    clock.on_sleep = kill_during_grace
    await tracked._watchdog(tracked.attempt)
    assert clock.sleeps == [30]
    tracked.on_watchdog.assert_not_awaited()
    terminate_pid.assert_not_called()
    tracked.helper.terminate.assert_not_called()


async def test_watchdog_cleanup_errors_are_contained(tracked, terminate_pid):
    tracked.on_watchdog.side_effect = RuntimeError('boom')
    await tracked._watchdog(tracked.attempt)
    assert terminate_pid.call_count == 2
    assert tracked.pid is None


async def test_watchdog_terminates_real_processes(make_supervisor):
    supervisor = make_supervisor(REPORT_RESULT, watchdog_grace_secs=0.1,
                                 watchdog_budget_secs=0.2)
    supervisor.on_watchdog = AsyncMock()
    pid = await supervisor.launch('code')
    for _ in range(100):
        if supervisor.pid is None and supervisor.helper is None:
            break
        await asyncio.sleep(0.05)
    supervisor.on_watchdog.assert_awaited_once_with()
    assert supervisor.watchdog is None
    assert await wait_dead(pid)


async def test_watchdog_cancelled_by_kill(make_supervisor):
    supervisor = make_supervisor(REPORT_RESULT, watchdog_grace_secs=0.1,
                                 watchdog_budget_secs=0.2)
    supervisor.on_watchdog = AsyncMock()
    await supervisor.launch('code')
    await supervisor.kill()
    await asyncio.sleep(0.4)
    supervisor.on_watchdog.assert_not_awaited()
