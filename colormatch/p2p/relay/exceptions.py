"""Exception types raised by relay messages."""
from __future__ import annotations


class RelayMessageError(Exception):
    """Base exception type for relay messages."""

    pass


class RelayMessageDecodeError(RelayMessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class RelayMessageEncodeError(RelayMessageError):
    """Exception raised when a message cannot be encoded."""

    pass
