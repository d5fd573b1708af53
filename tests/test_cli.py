import random

import orjson as json
import pytest
from click.testing import CliRunner

import phonepi
from phonepi.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def options(tmp_path):
    port = random.randrange(20000, 40000)
    return ['--port', str(port), '--state-dir', str(tmp_path / 'state')]


def test_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for header in ['Relay Options', 'Role Arbitration Options', 'MCP Host Options']:
        assert header in result.output
    for command in ['server', 'start', 'stop', 'status', 'restart', 'call', 'emulate-peer']:
        assert command in result.output


def test_version(runner):
    result = runner.invoke(cli, ['--version'])
    assert result.output.strip() == phonepi.__version__


def test_bad_option(runner):
    result = runner.invoke(cli, ['--call-timeout', '0', 'status'])
    assert result.exit_code == 2
    assert 'should be a positive number' in result.output


def test_status(runner, options):
    result = runner.invoke(cli, [*options, 'status'])
    assert result.exit_code == 0
    report = json.loads(result.stdout)
    assert report == {
        'running': False,
        'pid': None,
        'port': int(options[1]),
        'listening': False,
    }


def test_stop(runner, options):
    result = runner.invoke(cli, [*options, 'stop'])
    assert result.exit_code == 0
    assert 'No server is running' in result.output


def test_call_bad_params(runner, options):
    result = runner.invoke(cli, [*options, 'call', '--params', '[1, 2]', 'get_battery_level'])
    assert result.exit_code == 2
    assert 'parameters must be a JSON object' in result.output


def test_call_unreachable(runner, options):
    args = [*options, '--handshake-timeout', '0.5', 'call', 'get_battery_level']
    result = runner.invoke(cli, args)
    assert result.exit_code == 1


@pytest.fixture
def spawn(mocker):
    mocker.patch('phonepi.process.is_port_listening', mocker.AsyncMock(return_value=True))
    return mocker.patch(
        'asyncio.create_subprocess_exec',
        mocker.AsyncMock(return_value=mocker.Mock(pid=4321)),
    )


def test_start_forwards_options(runner, options, spawn, tmp_path):
    args = [
        *options,
        '--host',
        '127.0.0.1',
        '--call-timeout',
        '10',
        '--heartbeat-interval',
        '5',
        '--max-frame-size',
        '1024',
        '--rebind-cooldown-max',
        '30',
        '--debug',
        'start',
    ]
    result = runner.invoke(cli, args)
    assert result.exit_code == 0
    assert 'PID 4321' in result.output
    spawn.assert_awaited_once()
    command = list(spawn.await_args.args)
    assert command[1:5] == ['-m', 'phonepi', '--port', options[1]]
    assert command[-2:] == ['server', '--no-stdio']
    forwarded = dict(zip(command[5:-3:2], command[6:-2:2]))
    assert forwarded['--host'] == '127.0.0.1'
    assert forwarded['--call-timeout'] == '10.0'
    assert forwarded['--heartbeat-interval'] == '5.0'
    assert forwarded['--heartbeat-timeout'] == '45.0'
    assert forwarded['--max-frame-size'] == '1024'
    assert forwarded['--rebind-cooldown-max'] == '30.0'
    assert forwarded['--state-dir'] == str((tmp_path / 'state').resolve())
    assert forwarded['--catalog'].endswith('catalog.yaml')
    assert command[-3] == '--debug'


def test_restart_forwards_options(runner, options, spawn, tmp_path):
    catalog = tmp_path / 'catalog.yaml'
    catalog.write_text('vibrate: {description: Vibrate}\n')
    args = [*options, '--catalog', str(catalog), '--handshake-timeout', '2', 'restart']
    result = runner.invoke(cli, args)
    assert result.exit_code == 0
    command = list(spawn.await_args.args)
    assert command[command.index('--catalog') + 1] == str(catalog.resolve())
    assert command[command.index('--handshake-timeout') + 1] == '2.0'
    assert '--debug' not in command
    assert command[-1] == '--no-stdio'


def test_server_bad_catalog(runner, options, tmp_path):
    catalog = tmp_path / 'catalog.yaml'
    catalog.write_text(':\n')
    result = runner.invoke(cli, [*options, '--catalog', str(catalog), 'server'])
    assert result.exit_code == 2
    assert 'Unable to parse YAML' in result.output
