import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

import click
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidHandshake

from .. import log, process, remote
from ..remote import ErrorKind, RemoteCallError, SessionRole
from ..service.relay import MAX_FRAME_SIZE

DEFAULT_RESPONSES: dict[str, Any] = {
    'get_battery_level': {'level': 87, 'charging': False},
    'get_all_snippets': {'status': 'success', 'snippets': []},
    'get_contacts': {'status': 'success', 'contacts': []},
    'copy_to_clipboard': {'status': 'success'},
    'send_notification': {'status': 'success'},
}


@dataclass
class VirtualPeer(remote.Handler):
    """A stand-in for the phone app that answers commands with canned payloads.

    Parameters:
        responses: Command names mapped to response payloads.
        calls: The commands received so far, with their parameters.
    """

    responses: Mapping[str, Any] = field(default_factory=lambda: dict(DEFAULT_RESPONSES))
    calls: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    logger: log.AsyncLogger = field(default_factory=log.get_logger)

    async def dispatch(
        self,
        method: str,
        /,
        params: Optional[Mapping[str, Any]] = None,
        *,
        timeout: float = 30,
    ) -> Any:
        self.calls.append((method, dict(params or {})))
        await self.logger.info('Received command', tool=method, params=params)
        if method in self.responses:
            return self.responses[method]
        raise RemoteCallError(f'Unknown tool: {method}', method=method)

    def make_router(self, /) -> remote.Router:
        return remote.Router(remote.RequestTracker(), self, logger=self.logger)

    async def serve(
        self,
        uri: str,
        /,
        *,
        open_timeout: float = 10,
        max_size: Optional[int] = MAX_FRAME_SIZE,
    ) -> None:
        """Connect to a relay and answer its requests until the connection closes."""
        async with connect(
            uri,
            open_timeout=open_timeout,
            ping_interval=None,
            max_size=max_size,
        ) as connection:
            session = remote.Session(
                connection,
                SessionRole.PEER_OUTBOUND,
                int(time.time()),
                logger=self.logger,
            )
            await self.logger.info('Connected to relay', uri=uri)
            await session.serve(self.make_router())
        await self.logger.info('Disconnected from relay', reason=session.close_reason)


async def main(ctx: click.Context) -> None:
    async with process.Application('peer-emulator', ctx.obj.options) as app:
        responses = dict(DEFAULT_RESPONSES)
        responses.update(app.options['responses'] or {})
        responses.update(app.options['response'])
        peer = VirtualPeer(responses, logger=app.logger.bind())
        uri = f"ws://localhost:{app.options['port']}"
        while True:
            try:
                await peer.serve(
                    uri,
                    open_timeout=app.options['handshake_timeout'],
                    max_size=app.options['max_frame_size'],
                )
            except (OSError, asyncio.TimeoutError, InvalidHandshake) as exc:
                await app.logger.error(
                    'Unable to reach relay',
                    kind=ErrorKind.HANDSHAKE_TIMEOUT.value,
                    uri=uri,
                    exc_info=exc,
                )
            await asyncio.sleep(app.options['reconnect_delay'])
