import asyncio
import os
import random
import signal
import sys
import time
from unittest.mock import ANY

import pytest

from phonepi import log, process
from phonepi.exception import RelayBaseException


@pytest.fixture
async def app():
    options = {
        'debug': True,
        'thread_pool_workers': 3,
        'log_format': 'json',
        'log_level': 'info',
        'health_check_interval': 0.05,
    }
    async with process.Application('test', options) as app:
        yield app


@pytest.fixture
def state(tmp_path):
    return process.StateFiles(tmp_path / 'state')


@pytest.fixture
async def sleeper():
    proc = await asyncio.create_subprocess_exec(sys.executable, '-c', 'import time; time.sleep(30)')
    yield proc
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


def test_relay_exc_render():
    exc = RelayBaseException('disconnect', port=11041, role='follower')
    exc_dup = eval(repr(exc))
    assert exc.context == exc_dup.context


@pytest.mark.asyncio
async def test_process_run(sleeper):
    task = asyncio.create_task(process.run_process(sleeper))
    await asyncio.sleep(0.1)
    assert not task.done()
    task.cancel()
    assert await task == -signal.SIGTERM


@pytest.mark.asyncio
async def test_process_exit():
    proc = await asyncio.create_subprocess_exec(sys.executable, '-c', 'exit(0xf)')
    assert await process.run_process(proc) == 0xf


@pytest.mark.slow
@pytest.mark.asyncio
async def test_process_kill():
    code = 'import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)'
    proc = await asyncio.create_subprocess_exec(sys.executable, '-c', code)
    await asyncio.sleep(0.5)
    task = asyncio.create_task(process.run_process(proc, terminate_timeout=0.3))
    await asyncio.sleep(0.1)
    task.cancel()
    assert await task == -signal.SIGKILL


def test_state_files(state):
    assert state.read() == (None, None)
    state.write(1234, 11041)
    assert state.pid_file.read_text() == '1234'
    assert state.read() == (1234, 11041)
    state.port_file.write_text('not a port')
    assert state.read() == (1234, None)
    state.clear()
    state.clear()
    assert state.read() == (None, None)


def test_state_files_expanduser(monkeypatch, tmp_path):
    monkeypatch.setenv('HOME', str(tmp_path))
    state = process.StateFiles('~/.phonepi-mcp')
    assert state.directory == tmp_path / '.phonepi-mcp'


def test_process_alive():
    assert process.is_process_alive(os.getpid())


@pytest.mark.asyncio
async def test_port_listening():
    port = random.randrange(20000, 40000)
    assert not await process.is_port_listening(port, host='127.0.0.1')
    server = await asyncio.start_server(lambda reader, writer: writer.close(), '127.0.0.1', port)
    async with server:
        assert await process.is_port_listening(port, host='127.0.0.1')


@pytest.mark.asyncio
async def test_stop_server_not_running(state):
    assert not await process.stop_server(state)
    state.write(2**22 + 1, 11041)
    assert not await process.stop_server(state)
    assert state.read() == (None, None)


@pytest.mark.asyncio
async def test_stop_server(state, sleeper):
    state.write(sleeper.pid, 11041)
    assert await process.stop_server(state, interval=0.1)
    assert await sleeper.wait() == -signal.SIGTERM
    assert state.read() == (None, None)


@pytest.mark.slow
@pytest.mark.asyncio
async def test_stop_server_kill(state):
    code = 'import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(30)'
    proc = await asyncio.create_subprocess_exec(sys.executable, '-c', code)
    await asyncio.sleep(0.5)
    state.write(proc.pid, 11041)
    assert await process.stop_server(state, attempts=2, interval=0.1)
    assert await proc.wait() == -signal.SIGKILL


@pytest.mark.asyncio
async def test_loop_debug(app):
    assert asyncio.get_running_loop().get_debug()


@pytest.mark.slow
@pytest.mark.asyncio
async def test_loop_default_executor(app):
    loop = asyncio.get_running_loop()
    start = loop.time()
    await asyncio.gather(*(asyncio.to_thread(time.sleep, 0.5) for _ in range(7)))
    assert loop.time() - start == pytest.approx(1.5, rel=0.1)


@pytest.mark.asyncio
async def test_loop_exc_handler(mocker, app):
    logger = mocker.patch('structlog.stdlib.BoundLogger.error')
    loop = asyncio.get_running_loop()
    loop.call_exception_handler({'message': 'fail'})
    await asyncio.sleep(0.02)
    logger.assert_called_once_with('fail')
    logger.reset_mock()
    future = asyncio.get_running_loop().create_future()
    loop.call_exception_handler({'message': 'fail', 'future': future})
    await asyncio.sleep(0.02)
    logger.assert_called_once_with('fail', done=False)
    logger.reset_mock()
    async def error():
        raise ValueError
    asyncio.create_task(error(), name='raises-error')
    await asyncio.sleep(0.02)
    logger.assert_called_once_with(
        'Task exception was never retrieved',
        exc_info=ANY,
        done=True,
        task_name='raises-error',
    )


@pytest.mark.asyncio
async def test_report_health(mocker, app):
    info = mocker.patch('structlog.stdlib.BoundLogger.info')
    task = app.report_health(lambda: {'role': 'listener', 'connected': False})
    await asyncio.sleep(0.12)
    task.cancel()
    info.assert_called_with(
        'Health check',
        thread_count=ANY,
        task_count=ANY,
        role='listener',
        connected=False,
    )
    assert info.call_count >= 2


@pytest.mark.asyncio
async def test_spin():
    calls = []
    async def append(value):
        calls.append(value)
    task = asyncio.create_task(process.spin(append, 1, interval=0.02))
    await asyncio.sleep(0.07)
    task.cancel()
    assert len(calls) >= 3
    assert set(calls) == {1}


def test_null_logger():
    log.configure()
    log.get_null_logger().sync_bl.info('dropped')
