"""Message types published to and fetched from the relay.

Two message bodies are published:

* A description message, `{"type": "offer", "sdp": <encoded>, "timestamp": T}`,
  where `sdp` is the [codec][colormatch.p2p.codec] encoding of the
  `{"type": ..., "sdp": ...}` session description.
* A candidate message, `{"candidate": {"candidate": ..., "sdpMLineIndex": ...,
  "sdpMid": ...}, "timestamp": T}`.

The relay wraps the latest body published to a topic in an envelope,
`{"with": [{"content": <body>, "created": ...}]}`. Some deployments (and
some proxies) return the bare body instead, so both shapes are accepted.
"""
from __future__ import annotations

import dataclasses
from typing import Any
from typing import Literal

from colormatch.p2p.relay.exceptions import RelayMessageDecodeError
from colormatch.p2p.relay.exceptions import RelayMessageEncodeError


@dataclasses.dataclass
class RelayMessage:
    """Base message."""

    pass


@dataclasses.dataclass
class DescriptionMessage(RelayMessage):
    """Session description published for the counterpart peer.

    Attributes:
        type: One of `#!python 'offer'` or `#!python 'answer'`.
        sdp: Encoded session description.
        timestamp: Publish time in milliseconds since the epoch.
    """

    type: Literal['offer', 'answer']
    sdp: str
    timestamp: int | None = None


@dataclasses.dataclass
class CandidateMessage(RelayMessage):
    """ICE candidate published for the counterpart peer.

    Attributes:
        candidate: Candidate as a dictionary with `candidate`,
            `sdpMLineIndex`, and `sdpMid` keys.
        timestamp: Publish time in milliseconds since the epoch, or the
            relay's ISO-8601 creation time if the publisher sent none.
    """

    candidate: dict[str, Any]
    timestamp: int | str | None = None


def unwrap_envelope(data: Any) -> dict[str, Any] | None:
    """Extract the published body from a relay response.

    The body is returned as published, except that a candidate body without
    its own `timestamp` takes the envelope's `created` value.

    Args:
        data: Parsed JSON response from the relay.

    Returns:
        The latest published body or `None` if the response holds no value.
    """
    if not isinstance(data, dict) or data.get('this') == 'failed':
        return None

    item: Any = data
    if 'with' in data:
        records = data['with']
        if not isinstance(records, list) or len(records) == 0:
            return None
        item = records[0]

    if not isinstance(item, dict):
        return None

    content = item.get('content', item)
    if not isinstance(content, dict):
        return None

    if (
        'candidate' in content
        and content.get('timestamp') is None
        and 'created' in item
    ):
        content = dict(content, timestamp=item['created'])
    return content


def decode_relay_message(content: dict[str, Any]) -> RelayMessage:
    """Decode a published body into the correct message type.

    Descriptions published by older clients under the `offer` key instead
    of `sdp` are also accepted.

    Args:
        content: Body returned by
            [`unwrap_envelope()`][colormatch.p2p.relay.messages.unwrap_envelope].

    Returns:
        Parsed message.

    Raises:
        RelayMessageDecodeError: If the body is not a known message.
    """
    if not isinstance(content, dict):
        raise RelayMessageDecodeError(
            f'Expected a JSON object but got {type(content).__name__}.',
        )

    if 'candidate' in content:
        candidate = content['candidate']
        if not isinstance(candidate, dict) or 'candidate' not in candidate:
            raise RelayMessageDecodeError(
                'Candidate message does not contain a candidate object.',
            )
        return CandidateMessage(
            candidate=candidate,
            timestamp=content.get('timestamp'),
        )

    encoded = content.get('sdp') or content.get('offer')
    if isinstance(encoded, str):
        description_type = content.get('type', 'offer')
        if description_type not in ('offer', 'answer'):
            raise RelayMessageDecodeError(
                f'Unknown description type: {description_type}.',
            )
        return DescriptionMessage(
            type=description_type,
            sdp=encoded,
            timestamp=content.get('timestamp'),
        )

    raise RelayMessageDecodeError(
        'Message contains neither a candidate nor a session description.',
    )


def encode_relay_message(message: RelayMessage) -> dict[str, Any]:
    """Encode a message as the JSON body to publish.

    Raises:
        RelayMessageEncodeError: If the message is not a relay message.
    """
    if not isinstance(message, RelayMessage):
        raise RelayMessageEncodeError(
            f'Message is not an instance of {RelayMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )
    return dataclasses.asdict(message)
