"""CLI for starting or joining a session from a terminal."""
from __future__ import annotations

import asyncio
import datetime
import json
import logging
import logging.handlers
import os
import sys
import time
from typing import Any

import click
import pydantic

from colormatch.p2p.config import LoggingConfig
from colormatch.p2p.config import SignalingConfig
from colormatch.p2p.connection import ConnectionCoordinator
from colormatch.p2p.exceptions import PeerConnectionError
from colormatch.p2p.exceptions import SessionNotFoundError
from colormatch.p2p.relay.client import RelayClient
from colormatch.p2p.session import parse_session_code
from colormatch.p2p.session import Role
from colormatch.p2p.signaling import RelaySignaling
from colormatch.p2p.signaling import SignalingSession

logger = logging.getLogger(__name__)


def configure_logging(config: LoggingConfig) -> None:
    """Configure the root logger according to the logging config."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.log_dir is not None:
        os.makedirs(config.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.log_dir, 'peer.log'),
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
        level=config.default_level,
        handlers=handlers,
    )

    logging.getLogger('aiortc').setLevel(config.aiortc_level)
    logging.getLogger('aioice').setLevel(config.aiortc_level)


async def _wait_for_answer(
    signaling: RelaySignaling,
    coordinator: ConnectionCoordinator,
    session_id: str,
    timeout: float,
) -> bool:
    # The answerer may take a while to scan the code so the bounded fetch
    # loop is repeated until the timeout.
    deadline = time.monotonic() + timeout
    while True:
        try:
            return await signaling.complete_offer(coordinator, session_id)
        except SessionNotFoundError:
            if time.monotonic() >= deadline:
                raise


async def run_peer(
    config: SignalingConfig,
    role: Role,
    session_id: str | None = None,
    *,
    payload: Any = None,
    duration: float = 10,
    wait: float = 60,
) -> int:
    """Start (offerer) or join (answerer) a session and exchange messages.

    Messages received on the data channel are echoed to stdout as JSON.

    Args:
        config: Signaling configuration.
        role: Role to play.
        session_id: Session code to join. Required for the answerer.
        payload: Optional JSON-serializable payload to send once the data
            channel opens.
        duration: Seconds to keep the connection open after it is ready.
        wait: Seconds to wait for the counterpart peer.

    Returns:
        Process exit code.
    """
    if role is Role.answerer and session_id is None:
        raise ValueError('The answerer requires a session code.')

    coordinator = ConnectionCoordinator(
        ice_servers=config.peer.ice_servers,
        gathering_timeout=config.peer.gathering_timeout,
        channel_label=config.peer.channel_label,
    )
    coordinator.on_message(lambda message: click.echo(json.dumps(message)))

    async with RelayClient(
        config.relay.address,
        proxy_address=config.relay.proxy_address,
        timeout=config.relay.timeout,
    ) as relay:
        signaling = RelaySignaling(
            relay,
            app_name=config.app_name,
            base_url=config.base_url,
            fetch_attempts=config.relay.fetch_attempts,
            fetch_delay=config.relay.fetch_delay,
        )
        session: SignalingSession | None = None
        try:
            if role is Role.offerer:
                session = await signaling.start_offer(coordinator, session_id)
                click.echo(f'Session code: {session.session_id}')
                click.echo(f'Share URL: {session.url}')
                await _wait_for_answer(
                    signaling,
                    coordinator,
                    session.session_id,
                    wait,
                )
            else:
                assert session_id is not None
                session = await signaling.accept_offer(
                    coordinator,
                    session_id,
                )
                click.echo(f'Joined session {session.session_id}')

            if not await coordinator.wait_for_channel(timeout=wait):
                logger.error(
                    f'Data channel did not open within {wait} seconds '
                    f'(connection state: {coordinator.connection_state})',
                )
                return 1

            if payload is not None:
                coordinator.send(payload)
            await asyncio.sleep(duration)
        except SessionNotFoundError as e:
            click.echo(f'Wrong session code? {e}', err=True)
            return 1
        except PeerConnectionError as e:
            click.echo(str(e), err=True)
            return 1
        finally:
            if session is not None:
                session.candidates.unsubscribe()
            await coordinator.close()

    return 0


def _parse_payload(
    ctx: click.Context,
    param: click.Parameter,
    value: str | None,
) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError as e:
        raise click.BadParameter(f'Not valid JSON: {e}') from e


@click.group()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--relay', 'relay_address', metavar='URL', help='Relay address.')
@click.option('--base-url', metavar='URL', help='Base URL of share links.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    relay_address: str | None,
    base_url: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Start or join a peer-to-peer session through a public relay.

    If no configuration file is provided, a default configuration will be
    created from `SignalingConfig()`. The remaining CLI options will override
    the options provided in the configuration object.
    """
    config = (
        SignalingConfig()
        if config_path is None
        else SignalingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    try:
        if relay_address is not None:
            config.relay.address = relay_address
        if base_url is not None:
            config.base_url = base_url
        if log_dir is not None:
            config.logging.log_dir = log_dir
        if log_level is not None:
            config.logging.default_level = log_level.upper()
    except pydantic.ValidationError as e:
        raise click.UsageError(str(e), ctx=ctx) from e

    configure_logging(config.logging)
    ctx.obj = config


_send_option = click.option(
    '--send',
    'payload',
    metavar='JSON',
    callback=_parse_payload,
    help='JSON payload to send once connected.',
)
_duration_option = click.option(
    '--duration',
    type=float,
    default=10,
    show_default=True,
    help='Seconds to stay connected.',
)
_wait_option = click.option(
    '--wait',
    type=float,
    default=60,
    show_default=True,
    help='Seconds to wait for the other peer.',
)


@cli.command()
@_send_option
@_duration_option
@_wait_option
@click.pass_obj
def offer(
    config: SignalingConfig,
    payload: Any,
    duration: float,
    wait: float,
) -> None:
    """Start a new session and print its code."""
    exit_code = asyncio.run(
        run_peer(
            config,
            Role.offerer,
            payload=payload,
            duration=duration,
            wait=wait,
        ),
    )
    sys.exit(exit_code)


@cli.command()
@click.argument('code')
@_send_option
@_duration_option
@_wait_option
@click.pass_obj
def answer(
    config: SignalingConfig,
    code: str,
    payload: Any,
    duration: float,
    wait: float,
) -> None:
    """Join the session identified by CODE (a code or a share URL)."""
    session_id = parse_session_code(code)
    if session_id is None:
        raise click.BadParameter(
            f'{code!r} is not a session code or share URL.',
            param_hint='CODE',
        )
    exit_code = asyncio.run(
        run_peer(
            config,
            Role.answerer,
            session_id,
            payload=payload,
            duration=duration,
            wait=wait,
        ),
    )
    sys.exit(exit_code)
