import asyncio

import click

__version__ = '0.1.0'

from phonepi import process  # noqa: E402
from phonepi.service import host, relay  # noqa: E402


async def main(ctx: click.Context) -> None:
    options = ctx.obj.options
    async with process.Application('relay', options) as app:
        peer_relay = relay.Relay(
            call_timeout=options['call_timeout'],
            heartbeat_interval=options['heartbeat_interval'],
            heartbeat_timeout=options['heartbeat_timeout'],
            logger=app.logger.bind(component='relay'),
        )
        arbiter = relay.RoleArbiter(
            peer_relay,
            port=options['port'],
            host=options['host'],
            handshake_timeout=options['handshake_timeout'],
            reconnect_delay=options['reconnect_delay'],
            cooldown=options['rebind_cooldown'],
            cooldown_max=options['rebind_cooldown_max'],
            max_size=options['max_frame_size'],
            logger=app.logger.bind(component='arbiter'),
        )
        app.stack.push_async_callback(arbiter.close)
        tasks = {
            asyncio.create_task(arbiter.run_forever(), name='arbiter'),
            app.report_health(peer_relay.status),
        }
        if options['stdio']:
            tools = host.make_catalog(options['catalog_data'])
            host_logger = app.logger.bind(component='host')
            tasks.add(
                asyncio.create_task(
                    host.serve_stdio(peer_relay, tools, logger=host_logger),
                    name='host',
                ),
            )
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
        finally:
            for task in tasks:
                task.cancel()
