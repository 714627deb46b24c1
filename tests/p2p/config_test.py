from __future__ import annotations

import logging
import pathlib

import pydantic
import pytest

from colormatch.p2p.config import LoggingConfig
from colormatch.p2p.config import PeerConfig
from colormatch.p2p.config import RelayConfig
from colormatch.p2p.config import SignalingConfig
from colormatch.p2p.connection import DEFAULT_ICE_SERVERS
from colormatch.utils.config import dumps


def test_defaults() -> None:
    config = SignalingConfig()
    assert config.app_name == 'colormatch'
    assert config.relay.address == 'https://dweet.cc'
    assert config.relay.proxy_address == 'https://corsproxy.org/?'
    assert config.relay.fetch_attempts == 5
    assert config.relay.fetch_delay == 1.5
    assert config.peer.ice_servers == list(DEFAULT_ICE_SERVERS)
    assert config.peer.gathering_timeout == 5.0
    assert config.peer.channel_label == 'colors'
    assert config.logging.log_dir is None
    assert config.logging.default_level == logging.INFO


def test_default_ice_servers_not_shared() -> None:
    first = PeerConfig()
    first.ice_servers.append('stun:other.example.com')
    assert PeerConfig().ice_servers == list(DEFAULT_ICE_SERVERS)


@pytest.mark.parametrize(
    'address',
    ('dweet.cc', 'ws://dweet.cc', 'ftp://dweet.cc'),
)
def test_relay_address_validation(address: str) -> None:
    with pytest.raises(pydantic.ValidationError, match='http'):
        RelayConfig(address=address)


@pytest.mark.parametrize(
    'kwargs',
    ({'fetch_attempts': 0}, {'fetch_delay': -1}, {'timeout': 0}),
)
def test_relay_bounds(kwargs) -> None:
    with pytest.raises(pydantic.ValidationError):
        RelayConfig(**kwargs)


def test_extra_fields_forbidden() -> None:
    with pytest.raises(pydantic.ValidationError):
        SignalingConfig(unknown=True)  # type: ignore[call-arg]


def test_from_toml(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'colormatch.toml'
    with open(filepath, 'w') as f:
        f.write(
            """\
app_name = "palette"
base_url = "https://example.com/palette/"

[relay]
address = "http://localhost:8000"
proxy_address = "http://localhost:8001/?"
fetch_attempts = 2

[peer]
ice_servers = []
gathering_timeout = 1.0

[logging]
default_level = "DEBUG"
""",
        )

    config = SignalingConfig.from_toml(filepath)

    assert config.app_name == 'palette'
    assert config.base_url == 'https://example.com/palette/'
    assert config.relay.address == 'http://localhost:8000'
    assert config.relay.fetch_attempts == 2
    # Omitted values use their defaults
    assert config.relay.fetch_delay == 1.5
    assert config.peer.ice_servers == []
    assert config.peer.gathering_timeout == 1.0
    assert config.logging.default_level == 'DEBUG'


def test_from_toml_does_not_coerce(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'colormatch.toml'
    with open(filepath, 'w') as f:
        f.write('[relay]\nfetch_attempts = "5"\n')

    with pytest.raises(pydantic.ValidationError):
        SignalingConfig.from_toml(filepath)


def test_assignment_validated() -> None:
    config = SignalingConfig()
    with pytest.raises(pydantic.ValidationError, match='http'):
        config.relay.address = 'ftp://dweet.cc'
    with pytest.raises(pydantic.ValidationError):
        config.relay.fetch_attempts = 0
    assert config.relay.address == 'https://dweet.cc'
    assert config.relay.fetch_attempts == 5


def test_toml_round_trip(tmp_path: pathlib.Path) -> None:
    config = SignalingConfig(
        app_name='palette',
        logging=LoggingConfig(log_dir=str(tmp_path)),
    )
    filepath = tmp_path / 'colormatch.toml'
    with open(filepath, 'w') as f:
        f.write(dumps(config))

    assert SignalingConfig.from_toml(filepath) == config
