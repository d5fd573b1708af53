import asyncio
import contextlib
import random
import sys

import orjson as json
import pytest

from phonepi import log, process
from phonepi.tools.peeremulator import VirtualPeer

pytestmark = pytest.mark.slow


@contextlib.asynccontextmanager
async def phonepi_cli(port: int, *args, **kwargs):
    subprocess = await asyncio.create_subprocess_exec(
        sys.executable,
        '-m',
        'phonepi',
        '--port',
        str(port),
        '--log-level',
        'debug',
        '--handshake-timeout',
        '1',
        *args,
        **kwargs,
    )
    task = asyncio.create_task(
        process.run_process(subprocess, terminate_timeout=3),
        name='phonepi',
    )
    yield task, subprocess
    if subprocess.returncode is None:
        task.cancel()
        await task


async def call(port: int, tool: str, params=None) -> tuple[int, bytes]:
    args = ['call', '--params', json.dumps(params or {}).decode(), tool]
    async with phonepi_cli(port, *args, stdout=asyncio.subprocess.PIPE) as (task, subprocess):
        stdout, _ = await subprocess.communicate()
        return await task, stdout


@pytest.fixture(autouse=True)
def logger():
    log.configure()


@pytest.fixture
def port():
    return random.randrange(20000, 40000)


@pytest.fixture
async def server(port):
    async with phonepi_cli(port, 'server', '--no-stdio') as (task, _):
        for _ in range(50):
            if await process.is_port_listening(port):
                break
            await asyncio.sleep(0.1)
        yield task


@pytest.fixture
async def peer(server, port):
    peer = VirtualPeer({'get_battery_level': {'level': 87}, 'get_contacts': []})
    task = asyncio.create_task(peer.serve(f'ws://localhost:{port}'))
    await asyncio.sleep(0.3)
    yield peer
    task.cancel()


@pytest.mark.asyncio
async def test_call(peer, port):
    code, stdout = await call(port, 'get_battery_level', {'verbose': True})
    assert code == 0
    assert json.loads(stdout) == {'level': 87}
    code, stdout = await call(port, 'get_contacts')
    assert code == 0
    assert json.loads(stdout) == []
    assert peer.calls == [('get_battery_level', {'verbose': True}), ('get_contacts', {})]


@pytest.mark.asyncio
async def test_call_error_payload(peer, port):
    code, stdout = await call(port, 'make_call', {'to': '555'})
    assert code == 0
    result = json.loads(stdout)
    assert result['status'] == 'error'
    assert result['error'] == 'Unknown tool: make_call'


@pytest.mark.asyncio
async def test_call_no_peer(server, port):
    code, stdout = await call(port, 'get_battery_level')
    assert code == 1
    assert stdout == b''


@pytest.mark.asyncio
async def test_server_info(server, port):
    code, stdout = await call(port, 'get_server_info')
    assert code == 0
    info = json.loads(stdout)
    assert info['role'] == 'listener'
    assert not info['connected']
    assert info['followers'] == 1


@pytest.mark.asyncio
async def test_follower_server(peer, server, port):
    async with phonepi_cli(port, 'server', '--no-stdio') as (follower, _):
        await asyncio.sleep(1)
        assert not follower.done()
        code, stdout = await call(port, 'get_server_info')
        assert json.loads(stdout)['followers'] == 2
    server.cancel()
    await server
    await asyncio.sleep(0.5)
    assert not await process.is_port_listening(port)
