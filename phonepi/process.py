"""Process and resource management.

This module provides the :class:`Application` harness shared by every entry point (it
configures the event loop and logging) and the helpers the command line uses to manage
a background relay server: PID/port state files, port probing, and spawning or stopping
the server process.
"""

import abc
import asyncio
import contextlib
import functools
import os
import signal
import sys
import threading
import types
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, NoReturn, Optional, Protocol

from . import log

# isort: unique-list
__all__ = [
    'Application',
    'AsyncProcessType',
    'StateFiles',
    'is_port_listening',
    'run_process',
    'spawn_server',
    'spin',
    'stop_server',
]


class AsyncProcessType(Protocol):
    """Abstract base type for subprocesses.

    This interface contains a subset of :class:`asyncio.subprocess.Process` and follows
    similar semantics.
    """

    @abc.abstractmethod
    async def wait(self, /) -> Optional[int]:
        """Wait for the child process to terminate.

        Returns:
            The exit code (:attr:`AsyncProcessType.returncode`).
        """
        raise NotImplementedError

    @abc.abstractmethod
    def terminate(self, /) -> None:
        """Stop the child process (``SIGTERM`` on POSIX systems)."""
        raise NotImplementedError

    @abc.abstractmethod
    def kill(self, /) -> None:
        """Forcefully kill the child process (``SIGKILL`` on POSIX systems)."""
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def pid(self, /) -> Optional[int]:
        """The process identifier (PID)."""
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def returncode(self, /) -> Optional[int]:
        """The return (exit) code of a terminated process.

        This attribute is ``None`` for processes that have not yet exited.
        """
        raise NotImplementedError


async def run_process(
    process: AsyncProcessType,
    *,
    terminate_timeout: float = 2,
) -> Optional[int]:
    """
    Wait for a subprocess to exit.

    If the task running this function is cancelled in the parent process while the child
    process has not yet exited, this function will attempt to terminate the child. If
    the child is not well-behaved and does not terminate by a timeout, this function
    kills the child, guaranteeing no orphan process left behind.

    Parameters:
        process: The subprocess.
        terminate_timeout: Maximum duration (in seconds) to wait for termination.

    Returns:
        The process exit code.
    """
    logger = log.get_logger().bind(
        process=getattr(process, 'name', '(anonymous)'),
        pid=process.pid,
    )
    await logger.info('Process started')
    try:
        await process.wait()
        await logger.info('Process exited normally', exit_code=process.returncode)
    except asyncio.CancelledError:
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), terminate_timeout)
            await logger.info('Terminated process', exit_code=process.returncode)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            await logger.error('Killed process')
    return process.returncode


async def spin(
    func: Callable[..., Awaitable[Any]],
    /,
    *args: Any,
    interval: float = 1,
    **kwargs: Any,
) -> NoReturn:
    """Periodically execute an async callback.

    Parameters:
        func: Async callback.
        args: Positonal arguments to the callback.
        interval: Duration (in seconds) between calls. The callback is allows to run for
            longer than the interval. The callback should implement any timeout logic
            if cancellation is desired.
        kwargs: Keyword arguments to the callback.
    """
    while True:
        await asyncio.gather(asyncio.sleep(interval), func(*args, **kwargs))


@dataclass
class StateFiles:
    """The PID and port of the background server, persisted across invocations.

    Parameters:
        directory: The directory holding the state files. Created on first write.

    Examples:
        >>> import tempfile
        >>> with tempfile.TemporaryDirectory() as tmp:
        ...     state = StateFiles(Path(tmp) / 'state')
        ...     state.write(1234, 11041)
        ...     print(state.read())
        ...     state.clear()
        ...     print(state.read())
        (1234, 11041)
        (None, None)
    """

    directory: Path

    def __post_init__(self, /) -> None:
        self.directory = Path(self.directory).expanduser()

    @property
    def pid_file(self, /) -> Path:
        return self.directory / 'server.pid'

    @property
    def port_file(self, /) -> Path:
        return self.directory / 'server.port'

    @staticmethod
    def _read_int(path: Path, /) -> Optional[int]:
        try:
            return int(path.read_text().strip())
        except (OSError, ValueError):
            return None

    def read(self, /) -> tuple[Optional[int], Optional[int]]:
        """Read the recorded PID and port. Missing or corrupt entries read as ``None``."""
        return self._read_int(self.pid_file), self._read_int(self.port_file)

    def write(self, pid: int, port: int, /) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(pid))
        self.port_file.write_text(str(port))

    def clear(self, /) -> None:
        for path in (self.pid_file, self.port_file):
            path.unlink(missing_ok=True)


def is_process_alive(pid: int, /) -> bool:
    """Check whether a process exists by sending it the null signal."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


async def is_port_listening(
    port: int,
    /,
    *,
    host: str = 'localhost',
    timeout: float = 1,
) -> bool:
    """Check whether a TCP port accepts connections.

    Parameters:
        port: The port number.
        host: The host to connect to.
        timeout: Maximum duration (in seconds) of the connection attempt.
    """
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def spawn_server(
    port: int,
    /,
    *args: str,
    state: StateFiles,
    background: bool = True,
    startup_delay: float = 1,
) -> asyncio.subprocess.Process:
    """Spawn a relay server process.

    A background server is detached into its own session with its standard streams
    closed, so it cannot serve an MCP host over stdio. A foreground server inherits this
    process's standard streams.

    Parameters:
        port: The rendezvous port.
        args: Extra command-line options for the server.
        state: Where to record the server's PID and port.
        background: Whether to detach the server.
        startup_delay: Duration (in seconds) to wait before checking that the server is
            listening.

    Returns:
        The server process.
    """
    logger = log.get_logger().bind(port=port, background=background)
    command = [sys.executable, '-m', 'phonepi', '--port', str(port), *args, 'server']
    command.append('--no-stdio' if background else '--stdio')
    if background:
        server = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
    else:
        server = await asyncio.create_subprocess_exec(*command)
    state.write(server.pid, port)
    await logger.info('Server spawned', pid=server.pid)
    await asyncio.sleep(startup_delay)
    if await is_port_listening(port):
        await logger.info('Server is listening', pid=server.pid)
    else:
        await logger.warn('Server is not listening yet', pid=server.pid)
    return server


async def stop_server(
    state: StateFiles,
    /,
    *,
    attempts: int = 3,
    interval: float = 1,
) -> bool:
    """Stop the recorded server process, if any, and clear its state files.

    The server is first asked to exit with ``SIGTERM``. If it is still alive after the
    given number of attempts, it is killed.

    Returns:
        Whether a live server was stopped.
    """
    pid, port = state.read()
    logger = log.get_logger().bind(pid=pid, port=port)
    if pid is None or not is_process_alive(pid):
        state.clear()
        await logger.info('No server is running')
        return False
    for _ in range(attempts):
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGTERM)
        await asyncio.sleep(interval)
        if not is_process_alive(pid):
            break
    else:
        with contextlib.suppress(ProcessLookupError):
            os.kill(pid, signal.SIGKILL)
        await logger.warn('Killed server')
    state.clear()
    await logger.info('Server stopped')
    return True


@dataclass
class Application:
    """An application opens and closes resources created from command-line options.

    Generally, you create one :class:`Application` per ``asyncio.run`` main function,
    like so::

        >>> async def main(**options):
        ...     async with Application('my-app', options) as app:
        ...         ...

    It configures the :mod:`asyncio` loop and logging framework, and unwinds the
    resources pushed onto its stack on exit.

    Parameters:
        name: The name of the application (preferably kebab case and unique across all
            applications).
        options: A map of option names to their values.
        stack: The stack that the app's resources are pushed on.
        logger: A logger instance (may not be bound).
    """

    name: str
    options: Mapping[str, Any]
    stack: contextlib.AsyncExitStack = field(default_factory=contextlib.AsyncExitStack)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)

    async def __aenter__(self, /) -> 'Application':
        self.configure_loop()
        await self.stack.__aenter__()
        log.configure(fmt=self.options['log_format'], level=self.options['log_level'])
        self.logger = self.logger.bind(app=self.name)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[types.TracebackType],
        /,
    ) -> Optional[bool]:
        hide_exc = await self.stack.__aexit__(exc_type, exc, traceback)
        if exc_type and issubclass(exc_type, asyncio.CancelledError):
            await self.logger.info('Application is exiting')
            return True
        return hide_exc

    @functools.cached_property
    def executor(self, /) -> ThreadPoolExecutor:
        """A thread pool executor for running synchronous tasks."""
        # pylint: disable=consider-using-with
        # Closed by ``asyncio.AbstractEventLoop.shutdown_default_executor``
        return ThreadPoolExecutor(
            max_workers=self.options['thread_pool_workers'],
            thread_name_prefix='aioworker',
        )

    def _handle_exc(
        self,
        loop: asyncio.AbstractEventLoop,
        ctx: dict[str, Any],
        /,
    ) -> None:
        context = {}
        if exception := ctx.get('exception'):
            context['exc_info'] = exception
        if future := ctx.get('future'):
            context['done'] = future.done()
            if isinstance(future, asyncio.Task):
                context['task_name'] = future.get_name()
        loop.create_task(
            asyncio.to_thread(self.logger.sync_bl.error, ctx['message'], **context),
        )

    def configure_loop(self, /) -> None:
        """Configure the current :mod:`asyncio` loop and environment.

        * Sets the debug flag, default executor, and exception handler, which logs
          exceptions produced by event loop callbacks.
        * Set the current task and thread names.
        * If this method is called in the main thread, set signal handlers for
          ``SIGINT`` and ``SIGTERM`` that cancel the current task.

        Note:
            This method assumes the current task is the main task run by
            :func:`asyncio.run`.
        """
        loop = asyncio.get_running_loop()
        loop.set_debug(self.options['debug'])
        loop.set_default_executor(self.executor)
        loop.set_exception_handler(self._handle_exc)
        current_thread = threading.current_thread()
        current_thread.name = f'{self.name}-service'
        current_task = asyncio.current_task()
        if not current_task:
            return
        current_task.set_name('main')
        if current_thread is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(
                    signum,
                    current_task.cancel,
                    f'received signal {signum}: {signal.strsignal(signum)}',
                )

    async def _health_cb(self, /, status: Callable[[], Mapping[str, Any]]) -> None:
        await self.logger.info(
            'Health check',
            thread_count=threading.active_count(),
            task_count=len(asyncio.all_tasks()),
            **status(),
        )

    def report_health(
        self,
        /,
        status: Callable[[], Mapping[str, Any]] = dict,
    ) -> asyncio.Task[NoReturn]:
        """Schedule a task to periodically log the health of this process.

        Parameters:
            status: Produces extra fields for each health event.
        """
        return asyncio.create_task(
            spin(self._health_cb, status, interval=self.options['health_check_interval']),
            name='report-health',
        )
