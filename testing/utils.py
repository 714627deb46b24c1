"""Fixtures and utilities for testing."""
from __future__ import annotations

import socket


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


def closed_address() -> str:
    """Return an HTTP address nothing is listening on."""
    return f'http://127.0.0.1:{open_port()}'
