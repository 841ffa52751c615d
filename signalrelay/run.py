"""CLI and serving functions for running a relay server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from signalrelay.config import RelayServingConfig
from signalrelay.server import RelayServer
from signalrelay.utils.tasks import cancel_and_wait
from signalrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


def periodic_client_logger(
    server: RelayServer,
    interval: float = 60,
    limit: float | None = 60,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently connected participants.

    Args:
        server: Relay server instance to log connected participants of.
        interval: Seconds between logging connected participants.
        limit: Only log detailed participant list if the number of
            participants is less than this number.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    async def _log() -> None:
        while True:
            await asyncio.sleep(interval)
            participants = await server.registry.snapshot()
            participants.sort(key=lambda p: p.created)
            message = f'Connected participants: {len(participants)}'
            if limit is not None and 0 < len(participants) < limit:
                detail = '\n'.join(repr(p) for p in participants)
                message = f'{message}\n{detail}'
            logger.log(level, message)

    return spawn_guarded_background_task(
        _log,
        name='relay-server-client-logger',
    )


async def serve(config: RelayServingConfig) -> None:
    """Run the relay server.

    Initializes a [`RelayServer`][signalrelay.server.RelayServer]
    and starts a websocket server listening for new connections
    and incoming messages.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RelayServingConfig.logging`][signalrelay.config.RelayServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    server = RelayServer(
        config.admission,
        config.routing,
        max_message_bytes=config.max_message_bytes,
        max_pending_messages=config.max_pending_messages,
    )

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    client_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_client_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        client_logger_task = periodic_client_logger(
            server,
            config.logging.current_client_interval,
            config.logging.current_client_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Relay serving configuration:\n{config_repr}')

    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        ssl=ssl_context,
    ):
        logger.info(
            f'Relay server listening on port {config.port} '
            f'(admission={config.admission}, routing={config.routing})',
        )
        logger.info('Use ctrl-C to stop')
        await stop

    if client_logger_task is not None:  # pragma: no branch
        await cancel_and_wait(client_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Relay server shutdown')


def configure_logging(config: RelayServingConfig) -> None:
    """Configure the root logger from a serving config."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option(
    '--port',
    type=int,
    metavar='PORT',
    envvar='PORT',
    help='Port to bind to. Also read from the PORT environment variable.',
)
@click.option(
    '--admission',
    type=click.Choice(['anonymous', 'identified']),
    help='Participant admission mode.',
)
@click.option(
    '--routing',
    type=click.Choice(['broadcast', 'addressed']),
    help='Message routing mode.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    admission: str | None,
    routing: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a signaling relay server instance.

    Peers connect to the relay server to exchange the messages needed to
    establish a direct WebRTC session. If no configuration file is provided,
    a default configuration will be created from
    [`RelayServingConfig()`][signalrelay.config.RelayServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RelayServingConfig()
        if config_path is None
        else RelayServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given. Validation runs again so
    # invalid mode combinations are rejected.
    overrides: dict[str, object] = {}
    if host is not None:
        overrides['host'] = host
    if port is not None:
        overrides['port'] = port
    if admission is not None:
        overrides['admission'] = admission
    if routing is not None:
        overrides['routing'] = routing
    if overrides:
        config = RelayServingConfig.model_validate(
            {**config.model_dump(), **overrides},
        )
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level)

    configure_logging(config)
    asyncio.run(serve(config))
