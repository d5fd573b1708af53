"""Relay service: session management and role arbitration.

Exactly one process per machine owns the rendezvous port (the *listener*). The phone
(the *peer*) connects to the listener. Every other relay process on the machine becomes
a *follower*: it connects to the listener as a client and issues its calls over that
link, which the listener forwards to the peer.

Peers connect on any path. Followers connect on :data:`FOLLOWER_PATH`, so a follower
link never displaces the peer session.
"""

import asyncio
import enum
import errno
import itertools
import random
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from websockets.asyncio.client import connect
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import InvalidHandshake, InvalidURI

import phonepi

from .. import log, remote
from ..remote import ErrorKind, RemoteCallError, SessionRole

# isort: unique-list
__all__ = ['FOLLOWER_PATH', 'MAX_FRAME_SIZE', 'Relay', 'Role', 'RoleArbiter']

FOLLOWER_PATH = '/relay'
MAX_FRAME_SIZE = 100 * 2**20


class Role(str, enum.Enum):
    """The process's position in role arbitration.

    Attributes:
        UNSET: Arbitration has not started.
        ASPIRING_LISTENER: Attempting to bind the rendezvous port.
        LISTENER: Owns the rendezvous port and accepts the peer.
        FOLLOWER: Relays calls through the listener.
    """

    UNSET = 'unset'
    ASPIRING_LISTENER = 'aspiring-listener'
    LISTENER = 'listener'
    FOLLOWER = 'follower'


TRANSITIONS: Mapping[Role, frozenset[Role]] = {
    Role.UNSET: frozenset({Role.ASPIRING_LISTENER}),
    Role.ASPIRING_LISTENER: frozenset({Role.LISTENER, Role.FOLLOWER}),
    Role.FOLLOWER: frozenset({Role.ASPIRING_LISTENER}),
    Role.LISTENER: frozenset(),
}


@dataclass
class Relay(remote.Handler):
    """Own the single active peer session and issue calls over it.

    At most one session is active at a time. Attaching a new connection displaces the
    previous session, whose pending calls fail with ``peer-disconnected`` before
    :meth:`attach` returns.

    The peer (and followers) may invoke the commands routed on this class, which are
    answered locally. Other requests received on follower links are forwarded to the
    peer.

    Parameters:
        call_timeout: Maximum duration (in seconds) to wait for a peer's response.
        heartbeat_interval: Duration (in seconds) between liveness probes.
        heartbeat_timeout: Maximum duration (in seconds) without a liveness
            acknowledgment before the session is closed.
        role: The role this process currently holds.
        session: The active session, if any.
        links: Follower links accepted by this process.
        tracker: Calls issued by this process.
    """

    call_timeout: float = 30
    heartbeat_interval: float = 15
    heartbeat_timeout: float = 45
    role: Role = Role.UNSET
    session: Optional[remote.Session] = None
    links: set[remote.Session] = field(default_factory=set)
    tracker: remote.RequestTracker = field(default_factory=remote.RequestTracker)
    started: float = field(default_factory=time.monotonic)
    epochs: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)

    def __post_init__(self, /) -> None:
        self.router = remote.Router(
            self.tracker,
            self,
            forward=self.invoke,
            timeout=self.call_timeout,
            logger=self.logger.bind(component='router'),
        )

    @property
    def connected(self, /) -> bool:
        return self.session is not None and not self.session.closed

    @remote.route
    async def ping(self, /) -> dict[str, Any]:
        return {
            'status': 'success',
            'message': 'pong',
            'timestamp': int(time.time() * 1000),
        }

    @remote.route
    async def get_server_info(self, /) -> dict[str, Any]:
        """Describe this relay process."""
        return {
            'status': 'success',
            'name': 'phonepi-relay',
            'version': phonepi.__version__,
            'role': self.role.value,
            'connected': self.connected,
            'followers': len(self.links),
            'pending': self.tracker.pending,
            'uptime': round(time.monotonic() - self.started, 3),
        }

    def status(self, /) -> dict[str, Any]:
        """Summarize the relay's state for health checks."""
        return {
            'role': self.role.value,
            'connected': self.connected,
            'epoch': self.session.epoch if self.session else None,
            'followers': len(self.links),
            'pending': self.tracker.pending,
        }

    def _make_session(self, connection: Any, role: SessionRole, /) -> remote.Session:
        epoch = next(self.epochs)
        return remote.Session(
            connection,
            role,
            epoch,
            logger=self.logger.bind(epoch=epoch, session_role=role.value),
        )

    def attach(self, connection: Any, role: SessionRole, /) -> remote.Session:
        """Make a connection the active session, displacing any previous session.

        Parameters:
            connection: An open WebSocket connection.
            role: How the connection was established.

        Returns:
            The new session. Its heartbeat monitor is already running.
        """
        session = self._make_session(connection, role)
        if self.session:
            self.session.close(ErrorKind.PEER_DISCONNECTED, 'replaced by a new connection')
        session.close_callbacks.append(self._handle_close)
        self.session = session
        session.start_heartbeat(
            interval=self.heartbeat_interval,
            timeout=self.heartbeat_timeout,
        )
        self.logger.sync_bl.info('Session attached', epoch=session.epoch, role=role.value)
        return session

    def _handle_close(
        self,
        session: remote.Session,
        reason: ErrorKind,
        message: str,
        /,
    ) -> None:
        if self.session is session:
            self.session = None
        failed = self.tracker.fail_all(
            'Phone disconnected',
            epoch=session.epoch,
            reason=reason.value,
        )
        self.logger.sync_bl.info(
            'Session closed',
            epoch=session.epoch,
            reason=reason.value,
            detail=message,
            failed_calls=failed,
        )

    async def serve_session(self, connection: Any, role: SessionRole, /) -> None:
        """Attach a connection and route its frames until it closes."""
        session = self.attach(connection, role)
        await session.send(remote.Frame.ping())
        await session.serve(self.router)

    async def serve_link(self, connection: Any, /) -> None:
        """Route frames from a follower link until it closes."""
        link = self._make_session(connection, SessionRole.FOLLOWER_ACCEPTED)
        link.close_callbacks.append(lambda session, *_: self.links.discard(session))
        link.start_heartbeat(
            interval=self.heartbeat_interval,
            timeout=self.heartbeat_timeout,
        )
        self.links.add(link)
        await self.logger.info('Follower connected', epoch=link.epoch)
        try:
            await link.serve(self.router)
        finally:
            self.links.discard(link)
            await self.logger.info('Follower disconnected', epoch=link.epoch)

    async def handle_connection(self, connection: ServerConnection, /) -> None:
        """Accept an inbound connection as either a follower link or the peer."""
        path = connection.request.path if connection.request else '/'
        if path.rstrip('/') == FOLLOWER_PATH:
            await self.serve_link(connection)
        else:
            await self.logger.info('Peer connected', remote_address=connection.remote_address)
            await self.serve_session(connection, SessionRole.LISTENER_ACCEPTED)

    async def call(
        self,
        tool: str,
        /,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: Optional[float] = None,
    ) -> Any:
        """Issue a request over the active session and wait for its response.

        Raises:
            RemoteCallError: With kind ``no-peer`` if no session is active, or any kind
                produced by :meth:`remote.RequestTracker.call`. A follower also raises
                the relay errors reported by the listener.
        """
        session = self.session
        if not session or session.closed:
            raise RemoteCallError(
                'Phone not connected - please ensure the phone app is running',
                kind=ErrorKind.NO_PEER,
                tool=tool,
            )
        result = await self.tracker.call(
            session.send,
            tool,
            params,
            epoch=session.epoch,
            timeout=self.call_timeout if timeout is None else timeout,
        )
        if session.role is SessionRole.FOLLOWER_OUTBOUND:
            raise_relay_error(result, tool=tool)
        return result

    async def invoke(self, name: str, /, args: Optional[Mapping[str, Any]] = None) -> Any:
        """Invoke a peer command on behalf of the host.

        Parameters:
            name: The command (tool) name.
            args: The command arguments.

        Returns:
            The peer's response payload, verbatim.

        Raises:
            RemoteCallError: If the call could not complete.
        """
        logger = self.logger.bind(tool=name)
        await logger.info('Invoking command')
        try:
            result = await self.call(name, args)
        except RemoteCallError as exc:
            await logger.warn('Command failed', exc_info=exc)
            raise
        await logger.debug('Command succeeded')
        return result

    def close(self, /) -> None:
        """Close the active session and every follower link."""
        if self.session:
            self.session.close(ErrorKind.PEER_DISCONNECTED, 'relay is shutting down')
        for link in list(self.links):
            link.close(ErrorKind.PEER_DISCONNECTED, 'relay is shutting down')


def raise_relay_error(result: Any, /, **context: Any) -> None:
    """Re-raise a relay failure the listener reported in place of a peer response.

    Failures of the command itself (``remote-error``) are payloads like any other and
    are returned as-is.

    Examples:
        >>> raise_relay_error({'level': 87})
        >>> raise_relay_error({'status': 'error', 'error': 'phone says no'})
        >>> raise_relay_error({'status': 'error', 'error': 'gone', 'kind': 'no-peer'})
        Traceback (most recent call last):
          ...
        phonepi.remote.RemoteCallError: gone
    """
    if not isinstance(result, dict) or result.get('status') != 'error':
        return
    try:
        kind = ErrorKind(result.get('kind'))
    except ValueError:
        return
    if kind is ErrorKind.REMOTE_ERROR:
        return
    raise RemoteCallError(str(result.get('error', '')), kind=kind, **context)


@dataclass
class RoleArbiter:
    """Decide whether this process listens on the rendezvous port or follows.

    The arbiter tries to bind the port. If the port is taken, it connects to the current
    listener as a follower. When a follower's link closes, it reconnects after a fixed
    delay. When a follower cannot complete the handshake, it waits for a cooldown and
    tries to take over the port, so some process eventually becomes the listener after
    the previous listener exits. The cooldown backs off exponentially (with jitter) while
    attempts keep failing.

    Parameters:
        relay: The relay whose session this arbiter establishes.
        port: The rendezvous port.
        host: The interface the listener binds to.
        handshake_timeout: Maximum duration (in seconds) of a follower's handshake.
        reconnect_delay: Duration (in seconds) to wait before reconnecting to the
            listener after a follower link closes.
        cooldown: Initial duration (in seconds) to wait before retrying the bind after a
            failed handshake.
        cooldown_max: Upper bound (in seconds) of the cooldown.
        max_size: Maximum size (in bytes) of a received frame, or ``None`` for no limit.
            Applies to the listener's connections and the follower's link.
    """

    relay: Relay
    port: int = 11041
    host: str = '0.0.0.0'
    handshake_timeout: float = 10
    reconnect_delay: float = 5
    cooldown: float = 5
    cooldown_max: float = 60
    max_size: Optional[int] = MAX_FRAME_SIZE
    failures: int = 0
    server: Optional[Server] = None
    logger: log.AsyncLogger = field(default_factory=log.get_logger)

    MAX_EXPONENT: ClassVar[int] = 16

    @property
    def role(self, /) -> Role:
        return self.relay.role

    def transition(self, role: Role, /) -> None:
        """Change roles.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if role not in TRANSITIONS[self.role]:
            raise ValueError(f'invalid role transition: {self.role.value} -> {role.value}')
        self.relay.role = role
        self.logger.sync_bl.info('Role changed', role=role.value, port=self.port)

    def backoff(self, /) -> float:
        """The cooldown before the next bind attempt, given the failures so far.

        Examples:
            >>> arbiter = RoleArbiter(Relay(), cooldown=5, cooldown_max=60)
            >>> arbiter.failures = 1
            >>> 2.5 <= arbiter.backoff() <= 5
            True
            >>> arbiter.failures = 10
            >>> 30 <= arbiter.backoff() <= 60
            True
        """
        exponent = min(max(self.failures - 1, 0), self.MAX_EXPONENT)
        return min(self.cooldown_max, self.cooldown * 2**exponent) * random.uniform(0.5, 1)

    @property
    def uri(self, /) -> str:
        return f'ws://localhost:{self.port}{FOLLOWER_PATH}'

    async def acquire_role(self, /) -> Role:
        """Try to bind the rendezvous port.

        Returns:
            :attr:`Role.LISTENER` if the bind succeeded, or :attr:`Role.FOLLOWER` if
            another process owns the port.

        Raises:
            OSError: If the bind failed for any reason other than the port being in use.
        """
        self.transition(Role.ASPIRING_LISTENER)
        try:
            self.server = await serve(
                self.relay.handle_connection,
                self.host,
                self.port,
                ping_interval=None,
                max_size=self.max_size,
            )
        except OSError as exc:
            if exc.errno != errno.EADDRINUSE:
                await self.logger.critical('Unable to bind', port=self.port, exc_info=exc)
                raise
            await self.logger.info(
                'Port is in use',
                kind=ErrorKind.BIND_CONFLICT.value,
                port=self.port,
            )
            self.transition(Role.FOLLOWER)
            return Role.FOLLOWER
        self.failures = 0
        self.transition(Role.LISTENER)
        await self.logger.info('Listening', host=self.host, port=self.port)
        return Role.LISTENER

    async def follow(self, /) -> bool:
        """Connect to the listener and serve the link until it closes.

        Returns:
            Whether the handshake succeeded.
        """
        try:
            connection = await connect(
                self.uri,
                open_timeout=self.handshake_timeout,
                ping_interval=None,
                max_size=self.max_size,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            await self.logger.error(
                'Unable to reach listener',
                kind=ErrorKind.HANDSHAKE_TIMEOUT.value,
                uri=self.uri,
                exc_info=exc,
            )
            return False
        self.failures = 0
        await self.logger.info('Connected to listener', uri=self.uri)
        await self.relay.serve_session(connection, SessionRole.FOLLOWER_OUTBOUND)
        return True

    async def run_forever(self, /) -> None:
        """Arbitrate roles until this process becomes the listener and its server stops."""
        while True:
            if await self.acquire_role() is Role.LISTENER:
                assert self.server is not None
                await self.server.wait_closed()
                return
            while await self.follow():
                await self.logger.info('Link closed, reconnecting', delay=self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)
            self.failures += 1
            delay = self.backoff()
            await self.logger.info('Retrying bind', delay=round(delay, 3), failures=self.failures)
            await asyncio.sleep(delay)

    async def close(self, /) -> None:
        self.relay.close()
        if self.server:
            self.server.close()
            await self.server.wait_closed()
