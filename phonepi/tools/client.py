import asyncio

import click
import orjson as json
from websockets.asyncio.client import connect
from websockets.exceptions import InvalidHandshake

from .. import log, process
from ..remote import RemoteCallError, SessionRole
from ..service.relay import FOLLOWER_PATH, Relay


async def main(ctx: click.Context) -> bool:
    async with process.Application('cli', ctx.obj.options) as app:
        relay = Relay(
            call_timeout=app.options['timeout'],
            heartbeat_interval=app.options['heartbeat_interval'],
            heartbeat_timeout=app.options['heartbeat_timeout'],
            logger=log.get_null_logger(),
        )
        uri = f"ws://localhost:{app.options['port']}{FOLLOWER_PATH}"
        try:
            connection = await connect(
                uri,
                open_timeout=app.options['handshake_timeout'],
                ping_interval=None,
                max_size=app.options['max_frame_size'],
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake) as exc:
            await app.logger.error('Relay is not reachable', uri=uri, exc_info=exc)
            return False
        session = relay.attach(connection, SessionRole.FOLLOWER_OUTBOUND)
        serve = asyncio.create_task(session.serve(relay.router), name='session')
        try:
            result = await relay.invoke(app.options['tool'], app.options['params'])
        except RemoteCallError as exc:
            await app.logger.error('Remote call failed', exc_info=exc)
            return False
        finally:
            relay.close()
            await serve
        click.echo(json.dumps(result, option=json.OPT_INDENT_2).decode())
        return True
