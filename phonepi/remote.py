"""Remote calls between the relay and its peer.

Much like :mod:`asyncio`'s transports and protocols, this module is divided into
low-level and high-level APIs:

* The low-level API, :class:`Frame` and :class:`Session`, deals with encoding discrete
  JSON frames and managing the underlying WebSocket connection.
* The high-level API, :class:`RequestTracker`, :class:`Handler` and :class:`Router`,
  implements request/response semantics on top of a session. Most consumers should use
  :class:`phonepi.service.relay.Relay`, which ties these together.

Every frame is a UTF-8 JSON object with a ``type`` key:

.. code-block:: json

    {"type": "ping"}
    {"type": "pong"}
    {"type": "request", "requestId": "req-1", "tool": "get_battery_level", "params": {}}
    {"type": "response", "requestId": "req-1", "data": {"level": 87}}
    {"type": "error", "error": "Invalid JSON format", "originalMessage": "{"}

Requests flow in both directions. The relay issues requests to the peer and matches the
peer's responses by ``requestId``. The peer (or a follower relay) may also issue
requests to the relay, which always answers with exactly one response frame, even when
the request cannot be processed.
"""

import asyncio
import enum
import functools
import inspect
import itertools
import time
import types
import typing
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

import orjson as json
import structlog
from websockets.asyncio.connection import Connection
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from .exception import RelayBaseException

__all__ = [
    'ErrorKind',
    'Frame',
    'Handler',
    'HeartbeatMonitor',
    'MalformedFrameError',
    'MessageType',
    'PendingCall',
    'RemoteCallError',
    'RequestTracker',
    'Router',
    'Session',
    'SessionRole',
    'decode',
    'encode',
    'error_payload',
    'route',
]


class ErrorKind(str, enum.Enum):
    """Reasons a call can fail or a session can end.

    Attributes:
        NO_PEER: A call was attempted with no active session.
        PEER_DISCONNECTED: The session closed while the call was pending.
        TIMEOUT_EXCEEDED: No response arrived before the call's deadline.
        HEARTBEAT_TIMEOUT: The heartbeat monitor force-closed the session.
        MALFORMED_FRAME: A frame could not be parsed or validated.
        BIND_CONFLICT: The rendezvous port is owned by another process.
        HANDSHAKE_TIMEOUT: A follower could not connect to the listener.
        REMOTE_ERROR: The command itself failed on the responding side.
    """

    NO_PEER = 'no-peer'
    PEER_DISCONNECTED = 'peer-disconnected'
    TIMEOUT_EXCEEDED = 'timeout-exceeded'
    HEARTBEAT_TIMEOUT = 'heartbeat-timeout'
    MALFORMED_FRAME = 'malformed-frame'
    BIND_CONFLICT = 'bind-conflict'
    HANDSHAKE_TIMEOUT = 'handshake-timeout'
    REMOTE_ERROR = 'remote-error'


class RemoteCallError(RelayBaseException):
    """Error produced by issuing or executing a remote call.

    Parameters:
        message: A human-readable description of the exception.
        kind: The failure kind, also stored in the context under ``kind``.
        context: Machine-readable data.
    """

    def __init__(
        self,
        message: str,
        /,
        *,
        kind: Union[ErrorKind, str] = ErrorKind.REMOTE_ERROR,
        **context: Any,
    ) -> None:
        super().__init__(message, kind=ErrorKind(kind).value, **context)

    @property
    def kind(self, /) -> ErrorKind:
        return ErrorKind(self.context['kind'])


class MalformedFrameError(RemoteCallError):
    """A frame that could not be parsed or is missing required fields.

    Parameters:
        message: A human-readable description of the problem.
        request_id: The correlation ID, if one could be salvaged from the frame.
        frame_type: The declared frame type, if any.
    """

    def __init__(
        self,
        message: str,
        /,
        *,
        request_id: Optional[str] = None,
        frame_type: Optional[str] = None,
        **context: Any,
    ) -> None:
        context.pop('kind', None)
        super().__init__(
            message,
            kind=ErrorKind.MALFORMED_FRAME,
            request_id=request_id,
            frame_type=frame_type,
            **context,
        )

    @property
    def request_id(self, /) -> Optional[str]:
        return self.context.get('request_id')


class MessageType(str, enum.Enum):
    """The frame type.

    Attributes:
        PING: A liveness probe. Must be answered with :attr:`PONG`.
        PONG: A liveness acknowledgment.
        REQUEST: A command invocation. Requires exactly one response.
        RESPONSE: The outcome of a request, matched by its request ID.
        ERROR: A diagnostic sent in place of a response when a frame was unparseable.
    """

    PING = 'ping'
    PONG = 'pong'
    REQUEST = 'request'
    RESPONSE = 'response'
    ERROR = 'error'


def get_logger(*factory_args: Any, **context: Any) -> structlog.stdlib.AsyncBoundLogger:
    """Get an unbound async-compatible logger."""
    logger = structlog.get_logger(
        *factory_args,
        **context,
        wrapper_class=structlog.stdlib.AsyncBoundLogger,
    )
    return typing.cast(structlog.stdlib.AsyncBoundLogger, logger)


@dataclass(frozen=True)
class Frame:
    """One parsed unit of the wire protocol.

    Use the constructors (:meth:`ping`, :meth:`request`, ...) instead of building frames
    directly. Only the fields relevant to the frame's type are serialized.
    """

    type: MessageType
    request_id: Optional[str] = None
    tool: Optional[str] = None
    params: Mapping[str, Any] = field(default_factory=dict)
    data: Any = None
    error: Optional[str] = None
    original: Optional[str] = None

    @classmethod
    def ping(cls, /) -> 'Frame':
        return cls(MessageType.PING)

    @classmethod
    def pong(cls, /) -> 'Frame':
        return cls(MessageType.PONG)

    @classmethod
    def request(
        cls,
        request_id: str,
        tool: str,
        params: Optional[Mapping[str, Any]] = None,
        /,
    ) -> 'Frame':
        return cls(MessageType.REQUEST, request_id, tool, dict(params or {}))

    @classmethod
    def response(cls, request_id: str, data: Any, /) -> 'Frame':
        return cls(MessageType.RESPONSE, request_id, data=data)

    @classmethod
    def failure(cls, error: str, /, original: Optional[str] = None) -> 'Frame':
        return cls(MessageType.ERROR, error=error, original=original)

    def to_json(self, /) -> dict[str, Any]:
        """Render this frame as a JSON-serializable object.

        Examples:
            >>> Frame.request('req-1', 'ping').to_json()
            {'type': 'request', 'requestId': 'req-1', 'tool': 'ping', 'params': {}}
            >>> Frame.response('req-1', None).to_json()
            {'type': 'response', 'requestId': 'req-1', 'data': None}
            >>> Frame.pong().to_json()
            {'type': 'pong'}
        """
        obj: dict[str, Any] = {'type': self.type.value}
        if self.type is MessageType.REQUEST:
            obj.update(requestId=self.request_id, tool=self.tool, params=dict(self.params))
        elif self.type is MessageType.RESPONSE:
            obj.update(requestId=self.request_id, data=self.data)
        elif self.type is MessageType.ERROR:
            obj['error'] = self.error
            if self.original is not None:
                obj['originalMessage'] = self.original
        return obj


def encode(frame: Frame, /) -> str:
    """Encode a frame as a JSON text message.

    Raises:
        TypeError: If the frame contains values that are not JSON-serializable.
    """
    return json.dumps(frame.to_json()).decode()


def decode(message: Union[str, bytes], /) -> Frame:
    """Parse and validate a text or binary message.

    Raises:
        MalformedFrameError: If the message is not a JSON object, has an unknown type,
            or lacks the fields its type requires. The error carries the request ID if
            one could be salvaged.

    Examples:
        >>> decode('{"type": "response", "requestId": "req-1", "data": {"level": 87}}')
        Frame(type=<MessageType.RESPONSE: 'response'>, request_id='req-1', tool=None, \
params={}, data={'level': 87}, error=None, original=None)
        >>> decode('{"type": "request", "requestId": "req-2"}')
        Traceback (most recent call last):
          ...
        phonepi.remote.MalformedFrameError: Missing tool name in request
    """
    try:
        obj = json.loads(message)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError('Invalid JSON format') from exc
    if not isinstance(obj, dict):
        raise MalformedFrameError('frame must be a JSON object')
    request_id = obj.get('requestId')
    if not isinstance(request_id, str) or not request_id:
        request_id = None
    frame_type = obj.get('type')
    try:
        message_type = MessageType(frame_type)
    except ValueError as exc:
        raise MalformedFrameError(
            'unknown frame type',
            request_id=request_id,
            frame_type=str(frame_type),
        ) from exc
    context: dict[str, Any] = {'request_id': request_id, 'frame_type': message_type.value}
    if message_type is MessageType.REQUEST:
        if request_id is None:
            raise MalformedFrameError('request is missing requestId', **context)
        tool, params = obj.get('tool'), obj.get('params') or {}
        if not isinstance(tool, str) or not tool:
            raise MalformedFrameError('Missing tool name in request', **context)
        if not isinstance(params, dict):
            raise MalformedFrameError('request params must be an object', **context)
        return Frame.request(request_id, tool, params)
    if message_type is MessageType.RESPONSE:
        if request_id is None:
            raise MalformedFrameError('response is missing requestId', **context)
        if 'data' not in obj:
            raise MalformedFrameError('response is missing data', **context)
        return Frame.response(request_id, obj['data'])
    if message_type is MessageType.ERROR:
        return Frame.failure(str(obj.get('error', '')), original=obj.get('originalMessage'))
    return Frame(message_type)


def error_payload(exc: BaseException, /) -> dict[str, Any]:
    """Build the ``data`` of a response that reports a failure.

    Relay failures include their :class:`ErrorKind` so a follower can re-raise them.
    """
    payload: dict[str, Any] = {
        'status': 'error',
        'error': str(exc),
        'timestamp': int(time.time() * 1000),
    }
    if isinstance(exc, RemoteCallError):
        payload['kind'] = exc.kind.value
    return payload


@dataclass
class PendingCall:
    """One in-flight request awaiting its response.

    Parameters:
        request_id: The correlation ID sent with the request.
        tool: The command name.
        epoch: The epoch of the session the request was sent on.
        created: Loop time when the call was registered.
        deadline: Loop time when the call times out.
        future: Completed exactly once with the response payload or an exception.
        timer: The deadline timer. Cancelled when the call settles.
    """

    request_id: str
    tool: str
    epoch: int
    created: float
    deadline: float
    future: asyncio.Future[Any] = field(repr=False)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


@dataclass
class RequestTracker:
    """Correlate outbound requests with their asynchronous responses.

    Every request is associated with a unique request ID of the form ``<prefix>-<n>``,
    where ``n`` increases monotonically for the lifetime of the tracker. IDs are never
    reused, so a response arriving after its call settled can never be mistaken for the
    response to a newer call.

    A pending call settles exactly once. Whichever comes first (the matching response,
    the deadline, or the end of its session) wins, and every later attempt is a no-op.

    Parameters:
        prefix: The request ID prefix.
        calls: In-flight calls by request ID.
    """

    prefix: str = 'req'
    calls: dict[str, PendingCall] = field(default_factory=dict)
    counter: Iterator[int] = field(
        default_factory=lambda: itertools.count(1),
        init=False,
        repr=False,
    )

    @property
    def pending(self, /) -> int:
        """The number of in-flight calls."""
        return len(self.calls)

    def generate_uid(self, /) -> str:
        return f'{self.prefix}-{next(self.counter)}'

    def new_request(self, tool: str, /, *, epoch: int, timeout: float) -> PendingCall:
        """Register a new pending call and arm its deadline timer."""
        loop = asyncio.get_running_loop()
        now = loop.time()
        call = PendingCall(
            self.generate_uid(),
            tool,
            epoch,
            now,
            now + timeout,
            loop.create_future(),
        )
        call.timer = loop.call_later(timeout, self._expire, call.request_id, timeout)
        self.calls[call.request_id] = call
        return call

    def _expire(self, request_id: str, timeout: float, /) -> None:
        error = RemoteCallError(
            f'Request timed out after {timeout:g} seconds',
            kind=ErrorKind.TIMEOUT_EXCEEDED,
            request_id=request_id,
            timeout=timeout,
        )
        self.settle(request_id, error)

    def _remove(self, request_id: str, /) -> Optional[PendingCall]:
        call = self.calls.pop(request_id, None)
        if call and call.timer:
            call.timer.cancel()
        return call

    def settle(self, request_id: str, result: Any, /) -> bool:
        """Resolve or reject a pending call.

        Parameters:
            request_id: The correlation ID.
            result: The response payload, or an exception to reject the call with.

        Returns:
            Whether a pending call matched. Unknown, expired, or already settled IDs
            return false and have no effect.
        """
        call = self._remove(request_id)
        if not call:
            return False
        if not call.future.done():
            if isinstance(result, BaseException):
                call.future.set_exception(result)
            else:
                call.future.set_result(result)
        return True

    def fail_all(
        self,
        message: str,
        /,
        *,
        kind: ErrorKind = ErrorKind.PEER_DISCONNECTED,
        epoch: Optional[int] = None,
        **context: Any,
    ) -> int:
        """Reject every pending call (optionally only those of one session epoch).

        Returns:
            The number of calls rejected.
        """
        request_ids = [
            request_id
            for request_id, call in self.calls.items()
            if epoch is None or call.epoch == epoch
        ]
        for request_id in request_ids:
            error = RemoteCallError(message, kind=kind, request_id=request_id, **context)
            self.settle(request_id, error)
        return len(request_ids)

    async def call(
        self,
        send: Callable[[Frame], Awaitable[bool]],
        tool: str,
        /,
        params: Optional[Mapping[str, Any]] = None,
        *,
        epoch: int,
        timeout: float = 30,
    ) -> Any:
        """Send a request and wait for its response.

        Parameters:
            send: Sends a frame over the session, returning false if it could not.
            tool: The command name.
            params: The command arguments.
            epoch: The epoch of the session ``send`` belongs to.
            timeout: Maximum duration (in seconds) to wait for a response.

        Raises:
            RemoteCallError: If the call timed out (``timeout-exceeded``) or the session
                ended before the response arrived (``peer-disconnected``).
        """
        call = self.new_request(tool, epoch=epoch, timeout=timeout)
        try:
            if not await send(Frame.request(call.request_id, tool, params)):
                self.settle(
                    call.request_id,
                    RemoteCallError(
                        'Phone connection is not open',
                        kind=ErrorKind.PEER_DISCONNECTED,
                        request_id=call.request_id,
                    ),
                )
            return await call.future
        finally:
            self._remove(call.request_id)


Method = Callable[..., Any]


class RemoteMethod(Protocol):
    __remote__: str

    def __call__(self, /, *args: Any, **kwargs: Any) -> Any:
        ...  # pragma: no cover


@typing.overload
def route(method_or_name: str, /) -> Callable[[Method], RemoteMethod]:
    ...  # pragma: no cover


@typing.overload
def route(method_or_name: Method, /) -> RemoteMethod:
    ...  # pragma: no cover


def route(
    method_or_name: Union[str, Method],
    /,
) -> Union[RemoteMethod, Callable[[Method], RemoteMethod]]:
    """Decorator for marking a bound method as a command the peer may invoke.

    Parameters:
        method_or_name: Either the method to be registered or the name it should be
            registered under. If the former, registered name defaults to the method
            name.

    Returns:
        Either an identity decorator (if the method name was provided) or the method
        provided.
    """
    if isinstance(method_or_name, str):

        def decorator(method: Callable[..., Any]) -> RemoteMethod:
            remote_method = typing.cast(RemoteMethod, method)
            remote_method.__remote__ = typing.cast(str, method_or_name)
            return remote_method

        return decorator
    remote_method = typing.cast(RemoteMethod, method_or_name)
    remote_method.__remote__ = method_or_name.__name__
    return remote_method


class Handler:
    """An object whose bound methods are exposed as commands to remote callers.

    Define a handler by subclassing :class:`Handler` and applying the :func:`route`
    decorator. Request parameters are passed as keyword arguments:

    >>> class CustomHandler(Handler):
    ...     @route
    ...     async def method1(self, arg: int) -> int:
    ...         ...
    ...     @route('non-python-identifier')
    ...     def method2(self):
    ...         ...
    """

    @functools.cached_property
    def _method_table(self) -> dict[str, types.MethodType]:
        """A mapping of method names to (possibly coroutine) bound methods."""
        # Need to use the class to avoid calling `getattr(...)` on this property.
        # Accessing bound methods directly can lead to infinite recursion.
        funcs = inspect.getmembers(self.__class__, inspect.isfunction)
        funcs = [(attr, func) for attr, func in funcs if hasattr(func, '__remote__')]
        return {func.__remote__: getattr(self, attr) for attr, func in funcs}

    def __contains__(self, method: str, /) -> bool:
        return method in self._method_table

    async def dispatch(
        self,
        method: str,
        /,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: float = 30,
    ) -> Any:
        """Dispatch a command.

        If the method is synchronous (possibly blocking), the default executor performs
        the call.

        Parameters:
            method: The command name.
            params: Keyword arguments for the command.
            timeout: Maximum duration (in seconds) the command may run for.

        Returns:
            The command's result, which must be JSON-serializable.

        Raises:
            RemoteCallError: The command does not exist, timed out, or raised an
                exception.
        """
        func = self._method_table.get(method)
        if not func:
            raise RemoteCallError('no such command exists', method=method)
        kwargs = dict(params or {})
        try:
            if inspect.iscoroutinefunction(func):
                call = func(**kwargs)
            else:
                call = asyncio.to_thread(func, **kwargs)
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as exc:
            raise RemoteCallError(
                'command timed out',
                kind=ErrorKind.TIMEOUT_EXCEEDED,
                method=method,
                timeout=timeout,
            ) from exc
        except RemoteCallError:
            raise
        except Exception as exc:
            raise RemoteCallError('command produced an error', method=method) from exc


class SessionRole(str, enum.Enum):
    """How a session's connection was established.

    Attributes:
        LISTENER_ACCEPTED: A peer connected to this process's rendezvous port.
        FOLLOWER_OUTBOUND: This process connected to the listener as a follower.
        FOLLOWER_ACCEPTED: A follower connected to this process's rendezvous port.
            These links never count as the peer session.
        PEER_OUTBOUND: This process is a (virtual) peer connected to a relay.
    """

    LISTENER_ACCEPTED = 'listener-accepted'
    FOLLOWER_OUTBOUND = 'follower-outbound'
    FOLLOWER_ACCEPTED = 'follower-accepted'
    PEER_OUTBOUND = 'peer-outbound'


CloseCallback = Callable[['Session', ErrorKind, str], None]


@dataclass
class HeartbeatMonitor:
    """Probe a session periodically and expire it once acknowledgments stop.

    The monitor is purely time-driven: every ``interval`` seconds it either sends a
    probe or, if nothing acknowledged liveness for more than ``timeout`` seconds,
    expires the session exactly once and stops.

    Parameters:
        probe: Sends a ``ping`` frame.
        expire: Force-closes the session.
        interval: Duration (in seconds) between ticks.
        timeout: Maximum duration (in seconds) without an acknowledgment.
    """

    probe: Callable[[], Awaitable[Any]]
    expire: Callable[[], Any]
    interval: float = 15
    timeout: float = 45
    last_ack: float = field(default=0, init=False)
    expired: bool = field(default=False, init=False)
    task: Optional[asyncio.Task[None]] = field(default=None, init=False, repr=False)

    @property
    def elapsed(self, /) -> float:
        """Duration (in seconds) since liveness was last acknowledged."""
        return asyncio.get_running_loop().time() - self.last_ack

    def start(self, /) -> None:
        self.touch()
        self.task = asyncio.create_task(self._beat_forever(), name='heartbeat')

    def stop(self, /) -> None:
        if self.task:
            self.task.cancel()

    def touch(self, /) -> None:
        """Acknowledge liveness."""
        self.last_ack = asyncio.get_running_loop().time()

    async def tick(self, /) -> bool:
        """Probe or expire the session. Returns whether the monitor should continue."""
        if self.expired:
            return False
        if self.elapsed > self.timeout:
            self.expired = True
            self.expire()
            return False
        await self.probe()
        return True

    async def _beat_forever(self, /) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not await self.tick():
                return


@dataclass(eq=False)
class Session:
    """The wrapper around one WebSocket connection.

    A session closes exactly once, for exactly one reason. Closing is synchronous: the
    close callbacks (which fail dependent calls) run before :meth:`close` returns, while
    the WebSocket closing handshake completes in the background.

    Parameters:
        connection: The WebSocket connection.
        role: How the connection was established.
        epoch: An identifier unique among the sessions of this process.
        heartbeat: The session's liveness monitor, if it has one.
        close_callbacks: Called synchronously with the session, the close reason, and a
            message when the session closes.
        close_reason: Why the session closed, or ``None`` while it is open.
        logger: A logger instance.
    """

    connection: Connection
    role: SessionRole
    epoch: int
    heartbeat: Optional[HeartbeatMonitor] = None
    close_callbacks: list[CloseCallback] = field(default_factory=list)
    close_reason: Optional[ErrorKind] = None
    opened: float = field(default_factory=time.time)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set, repr=False)
    logger: structlog.stdlib.AsyncBoundLogger = field(default_factory=get_logger)

    @property
    def closed(self, /) -> bool:
        return self.close_reason is not None

    @property
    def forwards(self, /) -> bool:
        """Whether requests received on this session may be forwarded to the peer."""
        return self.role is SessionRole.FOLLOWER_ACCEPTED

    def spawn(self, coro: Awaitable[Any], /, *, name: Optional[str] = None) -> None:
        """Run a coroutine in the background for as long as the loop runs."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def touch(self, /) -> None:
        if self.heartbeat:
            self.heartbeat.touch()

    def start_heartbeat(self, /, *, interval: float, timeout: float) -> None:
        self.heartbeat = HeartbeatMonitor(
            probe=functools.partial(self.send, Frame.ping()),
            expire=functools.partial(
                self.close,
                ErrorKind.HEARTBEAT_TIMEOUT,
                'no pong received',
            ),
            interval=interval,
            timeout=timeout,
        )
        self.heartbeat.start()

    async def send(self, frame: Frame, /) -> bool:
        """Write a frame immediately.

        Returns:
            Whether the frame was handed to the transport. A transport failure closes the
            session instead of raising.
        """
        if self.closed:
            return False
        try:
            await self.connection.send(encode(frame))
        except (ConnectionClosed, OSError) as exc:
            await self.logger.info('Failed to send frame', exc_info=exc)
            self.close(ErrorKind.PEER_DISCONNECTED, 'connection lost while sending')
            return False
        return True

    def close(self, reason: ErrorKind, message: str = '', /) -> bool:
        """Close this session.

        Returns:
            Whether this call closed the session (false if it was already closed).
        """
        if self.closed:
            return False
        self.close_reason = reason
        if self.heartbeat:
            self.heartbeat.stop()
        for callback in self.close_callbacks:
            callback(self, reason, message)
        code = 1000 if reason is ErrorKind.PEER_DISCONNECTED else 1001
        self.spawn(self.connection.close(code, reason.value), name='ws-close')
        return True

    async def serve(self, router: 'Router', /) -> None:
        """Route received frames until the connection closes."""
        try:
            async for message in self.connection:
                await router.route(self, message)
        except ConnectionClosedError as exc:
            await self.logger.info(
                'Connection closed abnormally',
                code=exc.rcvd.code if exc.rcvd else None,
            )
        finally:
            self.close(ErrorKind.PEER_DISCONNECTED, 'connection closed')


Forward = Callable[[str, Mapping[str, Any]], Awaitable[Any]]


@dataclass
class Router:
    """Classify inbound frames and dispatch them.

    Dispatch table:

    ============ ==============================================================
    Type         Action
    ============ ==============================================================
    ``ping``     Acknowledge liveness and answer with ``pong``.
    ``pong``     Acknowledge liveness.
    ``response`` Settle the matching pending call in the :class:`RequestTracker`.
    ``request``  Execute with the :class:`Handler` (or forward) and respond.
    ``error``    Log.
    ============ ==============================================================

    Malformed frames are never fatal. A malformed request whose ID is recoverable is
    answered with an error response; unparseable JSON is answered with an ``error``
    frame; everything else is dropped.

    Parameters:
        tracker: Pending calls this process issued.
        handler: Commands this process answers itself.
        forward: Issues a request to the peer. Used for requests received on follower
            links that the handler cannot answer.
        timeout: Maximum duration (in seconds) a handler command may run for.
        logger: A logger instance.
    """

    tracker: RequestTracker
    handler: Handler = field(default_factory=Handler)
    forward: Optional[Forward] = None
    timeout: float = 30
    logger: structlog.stdlib.AsyncBoundLogger = field(default_factory=get_logger)

    async def route(self, session: Session, message: Union[str, bytes], /) -> None:
        try:
            frame = decode(message)
        except MalformedFrameError as exc:
            await self._reject(session, message, exc)
            return
        logger = self.logger.bind(epoch=session.epoch)
        await logger.debug(
            'Received frame',
            frame_type=frame.type.value,
            request_id=frame.request_id,
        )
        if frame.type is MessageType.PING:
            session.touch()
            await session.send(Frame.pong())
        elif frame.type is MessageType.PONG:
            session.touch()
        elif frame.type is MessageType.RESPONSE:
            if not self.tracker.settle(typing.cast(str, frame.request_id), frame.data):
                await logger.warn('No pending request found', request_id=frame.request_id)
        elif frame.type is MessageType.REQUEST:
            session.spawn(self.respond(session, frame), name='respond')
        else:
            await logger.warn('Peer reported an error', error=frame.error)

    async def _reject(
        self,
        session: Session,
        message: Union[str, bytes],
        exc: MalformedFrameError,
        /,
    ) -> None:
        await self.logger.warn('Dropped malformed frame', epoch=session.epoch, exc_info=exc)
        if exc.request_id and exc.context.get('frame_type') == MessageType.REQUEST.value:
            await session.send(Frame.response(exc.request_id, error_payload(exc)))
        elif exc.context.get('frame_type') is None:
            text = message.decode(errors='replace') if isinstance(message, bytes) else message
            await session.send(Frame.failure(str(exc), original=text[:100]))

    async def respond(self, session: Session, frame: Frame, /) -> None:
        """Execute a request and send exactly one response."""
        tool, request_id = typing.cast(str, frame.tool), typing.cast(str, frame.request_id)
        logger = self.logger.bind(epoch=session.epoch, tool=tool, request_id=request_id)
        try:
            if session.forwards and self.forward and tool not in self.handler:
                await logger.debug('Forwarding request to peer')
                data = await self.forward(tool, frame.params)
            else:
                data = await self.handler.dispatch(tool, frame.params, timeout=self.timeout)
        except Exception as exc:  # pylint: disable=broad-except
            await logger.error('Unable to process request', exc_info=exc)
            data = error_payload(exc)
        try:
            await session.send(Frame.response(request_id, data))
        except TypeError as exc:
            await logger.error('Result is not JSON-serializable', exc_info=exc)
            await session.send(Frame.response(request_id, error_payload(exc)))
