"""Exception types for peering errors."""
from __future__ import annotations


class PeerConnectionError(Exception):
    """Error establishing the peer connection."""

    pass


class SessionNotFoundError(Exception):
    """No description was found for a session code.

    This usually means the code was mistyped or the peer never published.
    It should be surfaced as a wrong code rather than retried automatically.
    """

    pass
