"""Structured logging for the relay.

Every log statement produces an event (a mapping) that passes through a chain of
:mod:`structlog` processors. The last processor renders the event as a JSON line or as
console output.

Events go to standard error only. With ``server --stdio``, standard output belongs to
the MCP host protocol.

Components bind their own fields (``component``, ``epoch``, ``session_role``) so the
events of one session can be picked out of a shared stream. The ``call`` command and
other short-lived links use :func:`get_null_logger` instead.
"""

import functools
import logging
import sys
from typing import IO, Any, Callable, Literal, MutableMapping, NoReturn, Optional, Union

import orjson as json
import structlog
import structlog.contextvars
import structlog.processors
from structlog.stdlib import AsyncBoundLogger as AsyncLogger

from . import remote
from .exception import RelayBaseException

__all__ = [
    'AsyncLogger',
    'LEVELS',
    'configure',
    'get_level_num',
    'get_logger',
    'get_null_logger',
]


Event = MutableMapping[str, Any]
ProcessorReturnType = Union[Event, str, bytes]
Processor = Callable[[Any, str, Event], ProcessorReturnType]
LEVELS: list[str] = ['debug', 'info', 'warn', 'error', 'critical']
"""Log severity levels, in ascending order of severity.

These levels correspond to those used by the built-in :mod:`logging` library:

============ ================================= =========================================
Level        Description                       Example
============ ================================= =========================================
``debug``    Frequent, low-level tracing.      A frame is received from the peer.
``info``     Normal operation (default level). A peer connects.
``warn``     Unusual or anomalous events.      A response arrives for an unknown ID.
``error``    Failure mode.                     A follower handshake times out.
``critical`` Cannot continue running.          The rendezvous port cannot be bound.
============ ================================= =========================================
"""


def drop(_logger: AsyncLogger, _method: str, _event: Event, /) -> NoReturn:
    """A simple :mod:`structlog` processor to drop all events."""
    raise structlog.DropEvent


get_logger = remote.get_logger
"""Get an unbound async-compatible logger.

Parameters:
    factory_args: Positional arguments passed to the logger factory.
    context: Contextual variables added to every event produced by this logger.
"""


def get_null_logger() -> AsyncLogger:
    """Get an async-compatible logger that drops all events unconditionally.

    Useful for objects that emit unimportant or noisy log events, such as the
    short-lived links opened by the ``call`` command.
    """
    return get_logger(processors=[drop])


@functools.lru_cache(maxsize=16)
def get_level_num(level_name: str, /, *, default: int = logging.DEBUG) -> int:
    """Translate a :mod:`logging` level name into its numeric value.

    Parameters:
        level_name: A case-insensitive name, such as ``'DEBUG'``.
        default: The numeric level to return if the name is invalid.

    Example:
        >>> get_level_num('INFO')
        20
        >>> assert get_level_num('DNE') == logging.DEBUG == 10
    """
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else default


def _filter_by_level(level: str, /) -> Processor:
    """Build a :mod:`structlog` processor to filter events by log level (severity)."""
    min_level = get_level_num(level)

    def processor(
        _logger: AsyncLogger,
        method: str,
        event: ProcessorReturnType,
        /,
    ) -> ProcessorReturnType:
        if get_level_num(method) < min_level:
            raise structlog.DropEvent
        return event

    return processor


def _add_exc_context(_logger: AsyncLogger, _method: str, event: Event, /) -> Event:
    """A processor to add the context of a :class:`RelayBaseException` to the event.

    When the keys of the exception context clash with those of the event, the event's
    entries take priority.
    """
    exception = event.get('exc_info')
    if isinstance(exception, RelayBaseException):
        event = exception.context | event
    return event


def configure(
    *,
    fmt: Literal['json', 'pretty'] = 'json',
    level: str = 'INFO',
    stream: Optional[IO[Any]] = None,
) -> None:
    """Configure :mod:`structlog` with the desired log format and filtering.

    Parameters:
        fmt: The format of events written to standard error.
        level: The minimum log level (inclusive) that should be processed. Severities
            are compared using :func:`phonepi.log.get_level_num`.
        stream: A text stream to write events to. Defaults to standard error.

    ``'json'`` writes one object per line with at least ``event``, ``level`` and
    ``timestamp`` keys, for example:

    .. code-block:: json

        {"event":"Session attached","epoch":1,"level":"info","timestamp":"..."}

    ``'pretty'`` is meant for a terminal. It colors levels and prints tracebacks in
    full, but cannot be parsed back.
    """
    logging.captureWarnings(True)
    stream = stream or sys.stderr
    renderers: list[Processor] = []
    logger_factory: Callable[..., Any]
    if fmt == 'pretty':
        renderers.append(structlog.processors.ExceptionPrettyPrinter(file=stream))
        renderers.append(structlog.dev.ConsoleRenderer(pad_event=40))
        logger_factory = structlog.PrintLoggerFactory(file=stream)
    else:
        renderers.append(structlog.processors.JSONRenderer(serializer=json.dumps))
        logger_factory = structlog.BytesLoggerFactory(file=stream.buffer)

    structlog.configure(
        cache_logger_on_first_use=True,
        wrapper_class=AsyncLogger,
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _filter_by_level(level),
            _add_exc_context,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt='iso'),
            *renderers,
        ],
        logger_factory=logger_factory,
    )
