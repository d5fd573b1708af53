"""Command-line interface and configuration."""

import asyncio
import collections
import functools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, NamedTuple, Optional, TypeVar, Union

import click
import orjson as json
import uvloop
import yaml

import phonepi

from . import log, process
from .tools import client, peeremulator

__all__ = [
    'load_yaml',
    'cli',
]


class OptionGroupCommand(click.Command):
    @staticmethod
    def format_group(
        ctx: click.Context,
        formatter: click.HelpFormatter,
        header: str,
        params: list[click.Parameter],
    ) -> None:
        with formatter.section(header):
            options = []
            for param in params:
                record = param.get_help_record(ctx)
                if record is not None:  # pragma: no cover; does not occur currently
                    options.append(record)
            formatter.write_dl(options, col_max=30)

    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        grouped_params: dict['OptionGroup', list[click.Parameter]]
        grouped_params = collections.defaultdict(list)
        other_params: list[click.Parameter] = []
        for param in self.get_params(ctx):
            group = getattr(param, 'group', None)
            params = grouped_params[group] if group else other_params
            params.append(param)
        for group in sorted(grouped_params, key=lambda group: group.key):
            params = grouped_params[group]
            header = group.header or f'{group.key.title()} Options'
            self.format_group(ctx, formatter, header, params)
        self.format_group(ctx, formatter, 'Other Options', other_params)


class OptionGroupMultiCommand(OptionGroupCommand, click.Group):
    def format_options(
        self,
        ctx: click.Context,
        formatter: click.HelpFormatter,
    ) -> None:
        super().format_options(ctx, formatter)
        self.format_commands(ctx, formatter)


@dataclass
class OptionStore:
    options: dict[str, Any] = field(default_factory=dict)


class OptionGroup(NamedTuple):
    key: str
    header: Optional[str] = None


class Option(click.Option):
    def __init__(
        self,
        *args: Any,
        group: Optional[OptionGroup] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.group = group

    def process_value(self, ctx: click.Context, value: Any) -> Any:
        ctx.ensure_object(OptionStore)
        return super().process_value(ctx, value)


FC = TypeVar('FC', Callable[..., Any], click.Command)
ParameterCallback = Callable[[click.Context, click.Parameter, Any], Any]


class OptionGroupFactory:
    def __init__(self) -> None:
        self.current: Optional[OptionGroup] = None

    def group(self, *args: Any, **kwargs: Any) -> Callable[[FC], FC]:
        self.current = OptionGroup(*args, **kwargs)
        return lambda func: func

    def option(self, *args: Any, **kwargs: Any) -> Callable[[FC], FC]:
        return click.option(*args, **kwargs, group=self.current)


@functools.lru_cache(maxsize=64)
def make_converter(convert: Callable[[Any], Any]) -> ParameterCallback:
    """Make a :mod:`click` callback that applies a conversion to each option value.

    Works with options provided multiple times (where ``multiple=True``).

    Arguments:
        convert: A unary conversion callable. The argument/return types are arbitrary
            and need not be the same.

    Returns:
        A :mod:`click`-compatible callback.
    """

    def callback(_ctx: click.Context, _param: click.Parameter, value: Any, /) -> Any:
        try:
            if isinstance(value, (tuple, list)):
                return tuple(convert(element) for element in value)
            return convert(value)
        except Exception as exc:
            raise click.BadParameter(str(exc)) from exc

    return callback


def make_multipart_parser(
    *converters: Callable[[str], Any],
    delimeter: str = ':',
    match_exact: bool = True,
) -> ParameterCallback:
    """Make a :mod:`click` callback that parses a tuple-like multipart option.

    Examples:
        >>> make_multipart_parser()
        Traceback (most recent call last):
          ...
        ValueError: not enough converters
        >>> convert = make_multipart_parser(str, json.loads)
        >>> convert(None, None, 'get_battery_level')
        Traceback (most recent call last):
          ...
        click.exceptions.BadParameter: not enough or too many parts provided
        >>> convert(None, None, 'get_battery_level:{"level": 87}')
        ('get_battery_level', {'level': 87})
    """
    if not converters:
        raise ValueError('not enough converters')

    def convert(element: str) -> Iterator[Any]:
        components = element.split(delimeter, maxsplit=len(converters) - 1)
        if match_exact and len(components) != len(converters):
            raise click.BadParameter('not enough or too many parts provided')
        for i, (converter, component) in enumerate(zip(converters, components)):
            try:
                yield converter(component)
            except Exception as exc:
                raise click.BadParameter(f'failed to parse part {i+1}: {exc}') from exc

    return make_converter(lambda value: tuple(convert(value)))


def check_positive(value: float) -> float:
    """Check whether the provided value is strictly positive.

    Examples:
        >>> check_positive(0.01)
        0.01
        >>> check_positive(0)
        Traceback (most recent call last):
          ...
        ValueError: '0' should be a positive number
        >>> check_positive(-0.01)
        Traceback (most recent call last):
          ...
        ValueError: '-0.01' should be a positive number
    """
    if value <= 0:
        raise ValueError(f"'{value}' should be a positive number")
    return value


def parse_params(value: str) -> dict[str, Any]:
    """Parse command parameters, which must form a JSON object.

    Examples:
        >>> parse_params('{"to": "555-0100"}')
        {'to': '555-0100'}
        >>> parse_params('[1, 2]')
        Traceback (most recent call last):
          ...
        ValueError: parameters must be a JSON object
    """
    params = json.loads(value)
    if not isinstance(params, dict):
        raise ValueError('parameters must be a JSON object')
    return params


def load_yaml(path: Union[str, Path]) -> Any:
    """Read and parse a YAML file.

    Arguments:
        path: A path to a valid regular text file.

    Examples:
        >>> import tempfile
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print('x: {y: 1}', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        {'x': {'y': 1}}
        >>> with tempfile.NamedTemporaryFile(mode='w') as tmp:
        ...     print(':', file=tmp)
        ...     _ = tmp.seek(0)
        ...     load_yaml(tmp.name)
        Traceback (most recent call last):
          ...
        ValueError: Unable to parse YAML (...): line 1, column 1
    """
    try:
        with Path(path).open() as stream:
            return yaml.load(stream, Loader=yaml.SafeLoader)
    except yaml.YAMLError as exc:
        message = f'Unable to parse YAML ({path})'
        mark = getattr(exc, 'problem_mark', None)
        if mark:  # pragma: no cover
            # The PyYAML docs recommend this pattern:
            # https://pyyaml.org/wiki/PyYAMLDocumentation
            message += f': line {mark.line + 1}, column {mark.column + 1}'
        raise ValueError(message) from exc


def get_state(ctx: click.Context) -> process.StateFiles:
    return process.StateFiles(ctx.obj.options['state_dir'])


FORWARDED_OPTIONS = [
    'host',
    'call_timeout',
    'heartbeat_interval',
    'heartbeat_timeout',
    'max_frame_size',
    'handshake_timeout',
    'reconnect_delay',
    'rebind_cooldown',
    'rebind_cooldown_max',
    'catalog',
    'log_level',
    'log_format',
    'thread_pool_workers',
    'health_check_interval',
    'state_dir',
]


def get_forwarded_options(ctx: click.Context) -> list[str]:
    """Options a spawned server should inherit from this invocation.

    Paths are made absolute, since the server may run from another directory.
    """
    options, args = ctx.obj.options, []
    for name in FORWARDED_OPTIONS:
        value = options[name]
        if isinstance(value, Path):
            value = value.expanduser().resolve()
        args.extend([f"--{name.replace('_', '-')}", str(value)])
    if options['debug']:
        args.append('--debug')
    return args


optgroup = OptionGroupFactory()
click.option: Callable[[FC], FC] = functools.partial(  # type: ignore[misc]
    click.option,
    cls=Option,
)


@click.group(
    context_settings=dict(
        auto_envvar_prefix='PHONEPI',
        max_content_width=100,
        show_default=True,
    ),
    cls=OptionGroupMultiCommand,
)
@optgroup.group('relay')
@optgroup.option(
    '--port',
    type=click.IntRange(1, 65535),
    default=11041,
    help='Rendezvous port the listener binds to and followers connect to.',
)
@optgroup.option(
    '--host',
    default='0.0.0.0',
    help='Interface the listener binds to.',
)
@optgroup.option(
    '--call-timeout',
    callback=make_converter(check_positive),
    type=float,
    default=30,
    help='Seconds to wait for the phone to respond to a command.',
)
@optgroup.option(
    '--heartbeat-interval',
    callback=make_converter(check_positive),
    type=float,
    default=15,
    help='Seconds between liveness probes.',
)
@optgroup.option(
    '--heartbeat-timeout',
    callback=make_converter(check_positive),
    type=float,
    default=45,
    help='Seconds without a liveness acknowledgment before a connection is closed.',
)
@optgroup.option(
    '--max-frame-size',
    callback=make_converter(check_positive),
    type=int,
    default=100 * 2**20,
    help='Largest message (in bytes) accepted from the phone or another relay.',
)
@optgroup.group('arbiter', header='Role Arbitration Options')
@optgroup.option(
    '--handshake-timeout',
    callback=make_converter(check_positive),
    type=float,
    default=10,
    help='Seconds a follower waits to connect to the listener.',
)
@optgroup.option(
    '--reconnect-delay',
    callback=make_converter(check_positive),
    type=float,
    default=5,
    help='Seconds a follower waits before reconnecting to the listener.',
)
@optgroup.option(
    '--rebind-cooldown',
    callback=make_converter(check_positive),
    type=float,
    default=5,
    help='Seconds a follower waits before trying to become the listener.',
)
@optgroup.option(
    '--rebind-cooldown-max',
    callback=make_converter(check_positive),
    type=float,
    default=60,
    help='Upper bound on the cooldown as failed attempts back off.',
)
@optgroup.group('host', header='MCP Host Options')
@optgroup.option(
    '--catalog',
    type=click.Path(dir_okay=False, exists=True, path_type=Path),
    default=(Path(__file__).parent / 'catalog.yaml'),
    show_default=True,
    help='Tool catalog file.',
)
@optgroup.group('log')
@optgroup.option(
    '--log-level',
    type=click.Choice(log.LEVELS, case_sensitive=False),
    default='info',
    help='Minimum severity of log records displayed.',
)
@optgroup.option(
    '--log-format',
    type=click.Choice(['json', 'pretty'], case_sensitive=False),
    default='json',
    help='Format of records printed to standard error.',
)
@optgroup.group('process')
@optgroup.option(
    '--thread-pool-workers',
    callback=make_converter(check_positive),
    type=int,
    default=1,
    help='Number of threads to spawn for executing blocking code.',
)
@optgroup.option(
    '--health-check-interval',
    callback=make_converter(check_positive),
    type=float,
    default=60,
    help='Seconds between health checks.',
)
@optgroup.option(
    '--state-dir',
    type=click.Path(file_okay=False, path_type=Path),
    default=Path('~/.phonepi-mcp'),
    help='Directory holding the background server PID and port files.',
)
@click.option('--debug/--no-debug', help='Enable the event loop debugger.')
@click.version_option(version=phonepi.__version__, message='%(version)s')
@click.pass_context
def cli(ctx: click.Context, **options: Any) -> None:
    """WebSocket relay between an MCP host and a phone.

    The relay advertises the phone's commands as MCP tools over stdio and forwards each
    tool call to the phone app connected on the rendezvous port. When several relays run
    on one machine, the first one to bind the port becomes the listener and the others
    relay their calls through it.
    """
    ctx.obj.options.update(options)


@cli.command()
@click.option(
    '--stdio/--no-stdio',
    default=True,
    help='Serve an MCP host over standard input and output.',
)
@click.pass_context
def server(ctx: click.Context, **options: Any) -> None:
    """Run the relay in the foreground."""
    ctx.obj.options.update(options)
    try:
        ctx.obj.options['catalog_data'] = load_yaml(ctx.obj.options['catalog'])
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint='--catalog') from exc
    uvloop.run(phonepi.main(ctx))


@cli.command()
@click.option(
    '--background/--foreground',
    default=True,
    help='Detach the server from this terminal.',
)
@click.pass_context
def start(ctx: click.Context, **options: Any) -> None:
    """Start a relay server, stopping any server that is already running.

    A background server only relays calls (it has no MCP host). A foreground server
    serves the MCP host attached to this process's standard input and output.
    """
    ctx.obj.options.update(options)
    uvloop.run(start_server(ctx))


async def start_server(ctx: click.Context) -> None:
    options, state = ctx.obj.options, get_state(ctx)
    if await process.stop_server(state):
        await asyncio.sleep(1)
    server_process = await process.spawn_server(
        options['port'],
        *get_forwarded_options(ctx),
        state=state,
        background=options['background'],
    )
    if options['background']:
        click.echo(f'Server started in the background (PID {server_process.pid})')
        return
    try:
        await process.run_process(server_process)
    finally:
        state.clear()


@cli.command()
@click.pass_context
def stop(ctx: click.Context) -> None:
    """Stop the background relay server."""
    if uvloop.run(process.stop_server(get_state(ctx))):
        click.echo('Server stopped')
    else:
        click.echo('No server is running')


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Report whether a relay server is running."""
    state = get_state(ctx)
    pid, port = state.read()
    port = port or ctx.obj.options['port']
    alive = pid is not None and process.is_process_alive(pid)
    listening = uvloop.run(process.is_port_listening(port))
    report = {
        'running': alive,
        'pid': pid if alive else None,
        'port': port,
        'listening': listening,
    }
    click.echo(json.dumps(report, option=json.OPT_INDENT_2).decode())
    if not alive and pid is not None:
        state.clear()


@cli.command()
@click.pass_context
def restart(ctx: click.Context) -> None:
    """Restart the background relay server."""
    ctx.obj.options['background'] = True
    uvloop.run(start_server(ctx))


@cli.command(name='call')
@click.option(
    '--params',
    callback=make_converter(parse_params),
    default='{}',
    help='Command parameters (a JSON object).',
)
@click.option(
    '--timeout',
    callback=make_converter(check_positive),
    type=float,
    default=30,
    help='Seconds to wait for a response.',
)
@click.argument('tool')
@click.pass_context
def call_cli(ctx: click.Context, **options: Any) -> None:
    """Invoke a phone command through the running relay and print the result."""
    ctx.obj.options.update(options)
    if not uvloop.run(client.main(ctx)):
        ctx.exit(1)


@cli.command()
@click.option(
    '--response',
    callback=make_multipart_parser(str, json.loads),
    metavar='TOOL:JSON',
    multiple=True,
    help='Canned response payload for a command.',
)
@click.option(
    '--responses',
    type=click.Path(dir_okay=False, exists=True),
    callback=make_converter(lambda path: load_yaml(path) if path else {}),
    help='YAML file mapping command names to response payloads.',
)
@click.pass_context
def emulate_peer(ctx: click.Context, **options: Any) -> None:
    """Emulate the phone app.

    The emulator connects to the relay's rendezvous port like the phone app does,
    answers pings, and answers each command with a canned payload. Unknown commands are
    answered with an error payload. Payloads can be set from the command line, like in
    the following example:

    \b
        $ python -m phonepi emulate-peer --response 'get_battery_level:{"level":87}'

    The emulator reconnects whenever its connection closes.
    """
    ctx.obj.options.update(options)
    uvloop.run(peeremulator.main(ctx))
