"""Transport-safe encoding of handshake payloads.

Session descriptions are carried through the relay and through share URLs as
base64 encoded JSON. Decoding accepts both the standard alphabet and the
URL-safe alphabet (`-` and `_` in place of `+` and `/`) with or without
padding.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

_URL_SAFE_TRANSLATION = str.maketrans('-_', '+/')


def encode(value: Any) -> str:
    """Encode a JSON-serializable value as a base64 string.

    Args:
        value: Any JSON-serializable value.

    Returns:
        Standard (padded) base64 encoding of the JSON representation.

    Raises:
        TypeError: If `value` is not JSON-serializable.
        ValueError: If `value` contains `NaN` or infinite floats.
    """
    data = json.dumps(
        value,
        separators=(',', ':'),
        allow_nan=False,
    ).encode('utf-8')
    return base64.b64encode(data).decode('ascii')


def decode(text: str) -> Any | None:
    """Decode a string produced by [`encode()`][colormatch.p2p.codec.encode].

    Note:
        This function never raises. Malformed input is logged and `None`
        is returned, so callers should treat `None` as "not available yet".

    Args:
        text: Standard or URL-safe base64 string, padding optional.

    Returns:
        The decoded value or `None` if `text` could not be decoded.
    """
    try:
        normalized = text.strip().translate(_URL_SAFE_TRANSLATION)
        normalized += '=' * (-len(normalized) % 4)
        data = base64.b64decode(normalized, validate=True)
        return json.loads(data.decode('utf-8'))
    except (
        AttributeError,
        binascii.Error,
        UnicodeDecodeError,
        ValueError,
    ) as e:
        logger.error(f'Error decoding session payload: {e!r}')
        return None
