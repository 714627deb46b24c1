"""Local fallback cache for handshake descriptions.

The cache holds encoded descriptions under `sdp_<session_id>_<type>` and the
time each was stored under `sdp_<session_id>_<type>_time` so that stale
entries can be pruned in the future. Entries are never pruned today.
"""
from __future__ import annotations

import logging
from typing import Any
from typing import MutableMapping

from colormatch.p2p import codec
from colormatch.p2p.session import timestamp_ms

logger = logging.getLogger(__name__)


def cache_key(session_id: str, description_type: str) -> str:
    """Get the cache key of a description."""
    return f'sdp_{session_id}_{description_type}'


class SessionCache:
    """Session-scoped key-value store of handshake descriptions.

    Used by the [signaling][colormatch.p2p.signaling] layer when the relay
    is unreachable.

    Warning:
        The cache lives in the local process's memory (or whatever mapping
        is passed as `store_dict`). It is only useful to peers sharing it.

    Args:
        store_dict: Mapping to store data in. If not specified, a new empty
            dict will be used.
    """

    def __init__(
        self,
        store_dict: MutableMapping[str, str] | None = None,
    ) -> None:
        self._store: MutableMapping[str, str] = (
            {} if store_dict is None else store_dict
        )

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(entries={len(self._store)})'

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def put(
        self,
        session_id: str,
        description_type: str,
        description: dict[str, Any],
    ) -> None:
        """Store a description.

        Args:
            session_id: Session code.
            description_type: `'offer'` or `'answer'`.
            description: Description as `{'type': ..., 'sdp': ...}`.
        """
        key = cache_key(session_id, description_type)
        self._store[key] = codec.encode(description)
        self._store[f'{key}_time'] = str(timestamp_ms())
        logger.debug(f'Cached {description_type} for session {session_id}')

    def get(
        self,
        session_id: str,
        description_type: str,
    ) -> dict[str, Any] | None:
        """Get a description.

        Returns:
            The description or `None` if it is not cached or cannot be
            decoded.
        """
        encoded = self._store.get(cache_key(session_id, description_type))
        if encoded is None:
            return None
        return codec.decode(encoded)

    def stored_at(
        self,
        session_id: str,
        description_type: str,
    ) -> int | None:
        """Get the time in milliseconds a description was stored."""
        key = cache_key(session_id, description_type)
        value = self._store.get(f'{key}_time')
        return None if value is None else int(value)
