"""`sharecode` command-line interface."""
from __future__ import annotations

import asyncio
import datetime
import functools
import logging
import logging.handlers
import os
import signal
import sys
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import ClassVar

import click

import sharecode
from sharecode.config import ShareConfig
from sharecode.exceptions import ConfigError
from sharecode.exceptions import SessionError
from sharecode.session import SessionController
from sharecode.session import TransferResult
from sharecode.signaling.exceptions import InvalidShareCodeError
from sharecode.signaling.exceptions import RecordStoreError
from sharecode.signaling.exceptions import StoreAuthenticationError
from sharecode.signaling.factory import create_store
from sharecode.transport.rtc import RtcTransport
from sharecode.utils.config import dumps

logger = logging.getLogger(__name__)


class _CLIFormatter(logging.Formatter):
    """Custom format for CLI printing.

    Source: https://stackoverflow.com/questions/1343227
    """

    grey = '\x1b[0;30m'
    red = '\x1b[0;31m'
    green = '\x1b[0;32m'
    yellow = '\x1b[0;33m'
    cyan = '\x1b[0;36m'
    bold_red = '\x1b[1;31m'
    reset = '\x1b[0m'

    FORMATS: ClassVar[dict[int, str]] = {
        logging.DEBUG: f'{cyan}DEBUG:{reset} %(message)s',
        logging.INFO: f'{green}INFO:{reset} %(message)s',
        logging.WARNING: f'{yellow}WARNING:{reset} %(message)s',
        logging.ERROR: f'{red}ERROR:{reset} %(message)s',
        logging.CRITICAL: f'{bold_red}CRITICAL:{reset} %(message)s',
    }

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover
        formatter = logging.Formatter(self.FORMATS[record.levelno])
        return formatter.format(record)


class _ProgressPrinter:
    """Print session status lines and a progress bar."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._bar: Any = None
        self._last = 0

    def status(self, message: str) -> None:
        # The bar already shows the percentage
        if self._bar is not None and message.startswith('Downloading'):
            return
        self.finish()
        click.echo(message)

    def progress(self, transferred: int, total: int) -> None:
        if self._bar is None:
            self._bar = click.progressbar(length=total, label=self.label)
            self._last = 0
        self._bar.update(transferred - self._last)
        self._last = transferred

    def finish(self) -> None:
        if self._bar is not None:
            self._bar.render_finish()
            self._bar = None


def _configure_logging(config: ShareConfig) -> None:
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(_CLIFormatter())
    handlers: list[logging.Handler] = [console]

    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(config.logging.log_dir, 'sharecode.log'),
            # Rotate logs Sunday at midnight
            when='W6',
            atTime=datetime.time(hour=0, minute=0, second=0),
        )
        file_handler.setFormatter(
            logging.Formatter(
                '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
                '%(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
            ),
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=config.logging.level,
        handlers=handlers,
        force=True,
    )

    for name in ('aioice', 'aiortc'):
        logging.getLogger(name).setLevel(config.logging.third_party_level)


def _transport_factory(config: ShareConfig) -> Callable[[], RtcTransport]:
    return functools.partial(
        RtcTransport,
        tuple(config.ice.servers),
        buffer_threshold=16 * config.transfer.chunk_size,
    )


async def _run_session(
    config: ShareConfig,
    start: Callable[[SessionController], Awaitable[None]],
    printer: _ProgressPrinter,
) -> TransferResult:
    store = await create_store(config.store)
    try:
        controller = SessionController(
            store,
            _transport_factory(config),
            config=config,
        )
        controller.on_status(printer.status)
        controller.on_progress(printer.progress)

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
        try:
            await start(controller)
            wait_task = asyncio.ensure_future(controller.wait())
            stop_task = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait(
                {wait_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stop_task in done:
                printer.finish()
                click.echo('Cancelling...')
                await controller.cancel()
            else:
                stop_task.cancel()
            return await wait_task
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
            printer.finish()
    finally:
        await store.close()


def _run(
    config: ShareConfig,
    start: Callable[[SessionController], Awaitable[None]],
    printer: _ProgressPrinter,
) -> TransferResult:
    try:
        return asyncio.run(_run_session(config, start, printer))
    except StoreAuthenticationError as e:
        logger.debug(f'Store authentication failed: {e}')
        raise click.ClickException(
            'Authentication failed. Please retry.',
        ) from e
    except (
        RecordStoreError,
        InvalidShareCodeError,
        SessionError,
        FileNotFoundError,
    ) as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.option(
    '--config',
    '-c',
    'config_path',
    metavar='PATH',
    type=click.Path(exists=True, dir_okay=False),
    help='Configuration file.',
)
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option('--redis-host', metavar='ADDR', help='Redis server hostname.')
@click.option('--redis-port', type=int, metavar='PORT', help='Redis port.')
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    log_level: str | None,
    log_dir: str | None,
    redis_host: str | None,
    redis_port: int | None,
) -> None:
    """Share a file peer-to-peer using a short numeric code.

    If no configuration file is provided, a default configuration will be
    created from [`ShareConfig()`][sharecode.config.ShareConfig]. The
    remaining CLI options will override the options provided in the
    configuration object.
    """
    try:
        config = (
            ShareConfig()
            if config_path is None
            else ShareConfig.from_toml(config_path)
        )
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    # Override config with CLI options if given
    if log_level is not None:
        config.logging.level = log_level.upper()
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if redis_host is not None:
        config.store.hostname = redis_host
    if redis_port is not None:
        config.store.port = redis_port

    _configure_logging(config)
    ctx.ensure_object(dict)
    ctx.obj['CONFIG'] = config


@cli.command()
def version() -> None:
    """Show the sharecode version."""
    click.echo(f'sharecode v{sharecode.__version__}')


@cli.command(name='config')
@click.option(
    '--output',
    '-o',
    metavar='PATH',
    help='Write the configuration to this file instead of stdout.',
)
@click.pass_context
def config_command(ctx: click.Context, output: str | None) -> None:
    """Show or write the effective configuration as TOML."""
    config: ShareConfig = ctx.obj['CONFIG']
    if output is None:
        click.echo(dumps(config), nl=False)
    else:
        config.write_toml(output)
        click.echo(f'Wrote configuration to {output}')


@cli.command()
@click.argument(
    'path',
    metavar='FILE',
    type=click.Path(exists=True, dir_okay=False),
)
@click.pass_context
def send(ctx: click.Context, path: str) -> None:
    """Send FILE and print the share code for the receiver."""
    config: ShareConfig = ctx.obj['CONFIG']
    printer = _ProgressPrinter('Sending')

    async def _start(controller: SessionController) -> None:
        code = await controller.start_send(path)
        click.secho(f'Share code: {code}', bold=True)

    result = _run(config, _start, printer)
    if not result.ok:
        raise SystemExit(1)
    click.echo(f'Sent {os.path.basename(path)}')


@cli.command()
@click.argument('code', metavar='CODE')
@click.option(
    '--output',
    '-o',
    metavar='DIR',
    help='Directory to save the file in.',
)
@click.pass_context
def receive(ctx: click.Context, code: str, output: str | None) -> None:
    """Receive the file shared with CODE."""
    config: ShareConfig = ctx.obj['CONFIG']
    if output is not None:
        config.transfer.output_dir = output
    printer = _ProgressPrinter('Receiving')

    async def _start(controller: SessionController) -> None:
        await controller.start_receive(code)

    result = _run(config, _start, printer)
    if not result.ok:
        raise SystemExit(1)
    click.echo(f'Saved to {result.path}')
