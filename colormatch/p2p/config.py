"""Signaling configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

from colormatch.p2p.connection import DEFAULT_CHANNEL_LABEL
from colormatch.p2p.connection import DEFAULT_GATHERING_TIMEOUT
from colormatch.p2p.connection import DEFAULT_ICE_SERVERS
from colormatch.p2p.relay.client import DEFAULT_PROXY_ADDRESS
from colormatch.p2p.relay.client import DEFAULT_RELAY_ADDRESS
from colormatch.p2p.signaling import DEFAULT_APP_NAME
from colormatch.utils.config import load


class RelayConfig(BaseModel):
    """Relay client configuration.

    Attributes:
        address: Base address of the relay.
        proxy_address: Prefix of the proxy used to retry requests which
            failed at the network level. `None` disables the proxy.
        timeout: Seconds to wait on each HTTP request.
        fetch_attempts: Attempts made when polling for a description.
        fetch_delay: Seconds between polling attempts.
    """

    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    address: str = DEFAULT_RELAY_ADDRESS
    proxy_address: str | None = DEFAULT_PROXY_ADDRESS
    timeout: float = Field(10, gt=0)
    fetch_attempts: int = Field(5, ge=1)
    fetch_delay: float = Field(1.5, ge=0)

    @field_validator('address')
    @classmethod
    def _check_address(cls, value: str) -> str:
        if not value.startswith(('http://', 'https://')):
            raise ValueError(
                'Relay address must start with http:// or https://. '
                f'Got {value}.',
            )
        return value


class PeerConfig(BaseModel):
    """Peer connection configuration.

    Attributes:
        ice_servers: STUN server URLs used for candidate gathering.
        gathering_timeout: Maximum seconds to wait for ICE gathering.
        channel_label: Label of the data channel created by the offerer.
    """

    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    ice_servers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ICE_SERVERS),
    )
    gathering_timeout: float = Field(DEFAULT_GATHERING_TIMEOUT, gt=0)
    channel_label: str = DEFAULT_CHANNEL_LABEL


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        log_dir: Optional directory to write log files to.
        default_level: Default logging level for the root logger.
        aiortc_level: Log level for the `aiortc` and `aioice` loggers.
            They log with much higher frequency so it is suggested to set
            this to `WARNING` or higher.
    """

    model_config = ConfigDict(validate_assignment=True)

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    aiortc_level: int | str = logging.WARNING


class SignalingConfig(BaseModel):
    """Signaling configuration.

    Attributes:
        app_name: Prefix of every relay topic.
        base_url: Base URL of share links.
        relay: Relay client configuration.
        peer: Peer connection configuration.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    app_name: str = DEFAULT_APP_NAME
    base_url: str = 'http://localhost/'
    relay: RelayConfig = Field(default_factory=RelayConfig)
    peer: PeerConfig = Field(default_factory=PeerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="colormatch.toml"
            app_name = "colormatch"
            base_url = "https://example.github.io/colormatch/"

            [relay]
            address = "https://dweet.cc"
            proxy_address = "https://corsproxy.org/?"
            fetch_attempts = 5
            fetch_delay = 1.5

            [peer]
            ice_servers = ["stun:stun.l.google.com:19302"]
            gathering_timeout = 5.0

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            ```

            ```python
            from colormatch.p2p.config import SignalingConfig

            config = SignalingConfig.from_toml('colormatch.toml')
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
