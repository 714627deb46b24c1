"""Session codes, relay topics, and handshake records."""
from __future__ import annotations

import dataclasses
import enum
import random
import re
import string
import time
from typing import Any
from typing import NamedTuple
from urllib.parse import parse_qs
from urllib.parse import urlencode
from urllib.parse import urlsplit

SESSION_ID_LENGTH = 6
SESSION_ID_ALPHABET = string.digits + string.ascii_uppercase

_SESSION_ID_PATTERN = re.compile(rf'^[A-Z0-9]{{{SESSION_ID_LENGTH}}}$')
_system_random = random.SystemRandom()


class Role(enum.Enum):
    """Side of the handshake a peer is playing."""

    offerer = 'offerer'
    """Peer that creates the offer and the data channel."""
    answerer = 'answerer'
    """Peer that answers the offer and accepts the data channel."""

    @property
    def opposite(self) -> Role:
        """The counterpart role."""
        return Role.answerer if self is Role.offerer else Role.offerer


class TopicKind(enum.Enum):
    """Kinds of relay topics used by one session."""

    offer = 'offer'
    answer = 'answer'
    ice_offerer = 'ice-offerer'
    ice_answerer = 'ice-answerer'

    @classmethod
    def ice(cls, role: Role) -> TopicKind:
        """Get the candidate topic kind published by `role`."""
        return cls.ice_offerer if role is Role.offerer else cls.ice_answerer


def generate_session_id(rng: random.Random | None = None) -> str:
    """Generate a short human-shareable session code.

    Codes are six uppercase base-36 characters. Collisions are not detected;
    a peer that observes an unexpected mismatch during a handshake should
    treat it as a wrong code rather than retrying.

    Args:
        rng: Optional source of randomness. Defaults to the system's
            cryptographic random source.
    """
    rng = _system_random if rng is None else rng
    return ''.join(
        rng.choice(SESSION_ID_ALPHABET) for _ in range(SESSION_ID_LENGTH)
    )


def is_valid_session_id(session_id: str) -> bool:
    """Check if a string is a well-formed session code."""
    return _SESSION_ID_PATTERN.match(session_id) is not None


def relay_topic(app: str, session_id: str, kind: TopicKind | str) -> str:
    """Get the relay topic name `<app>-<session_id>-<kind>`."""
    kind = TopicKind(kind)
    return f'{app}-{session_id}-{kind.value}'


def timestamp_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclasses.dataclass(frozen=True)
class SessionDescriptor:
    """Local record of one side of a handshake.

    A descriptor is immutable. Starting a new handshake requires a new
    session code.

    Attributes:
        session_id: Session code correlating the offer and answer.
        role: Role of the peer that created the description.
        sdp: Session description as `{'type': ..., 'sdp': ...}`.
        created_at: Creation time in milliseconds since the epoch.
    """

    session_id: str
    role: Role
    sdp: dict[str, Any]
    created_at: int = dataclasses.field(default_factory=timestamp_ms)


@dataclasses.dataclass(frozen=True)
class IceCandidateRecord:
    """A candidate published (or fetched) for a session.

    The relay only retains the latest record per topic so records are
    effectively single-slot.

    Attributes:
        session_id: Session code.
        role: Role of the peer that discovered the candidate.
        candidate: Candidate as
            `{'candidate': ..., 'sdpMLineIndex': ..., 'sdpMid': ...}`.
        timestamp: Publish time in milliseconds since the epoch.
    """

    session_id: str
    role: Role
    candidate: dict[str, Any]
    timestamp: int = dataclasses.field(default_factory=timestamp_ms)


class SessionLink(NamedTuple):
    """Session information carried by a share URL."""

    session_id: str
    description_type: str = 'offer'


def build_share_url(
    base_url: str,
    session_id: str,
    description_type: str | None = None,
) -> str:
    """Build the short URL a peer shares with its counterpart.

    Only the session code (and an optional role marker) is carried in the
    URL. The descriptions themselves live on the relay.

    Example:
        ```python
        >>> build_share_url('https://example.com/app', 'ABC123')
        'https://example.com/app/index.html?s=ABC123'
        >>> build_share_url('https://example.com/app/', 'ABC123', 'answer')
        'https://example.com/app/index.html?s=ABC123&type=answer'
        ```

    Args:
        base_url: Base URL the page is served from.
        session_id: Session code.
        description_type: Optional `type` parameter, e.g. `'answer'`.
    """
    base = base_url if base_url.endswith('/') else f'{base_url}/'
    params = {'s': session_id}
    if description_type is not None:
        params['type'] = description_type
    return f'{base}index.html?{urlencode(params)}'


def parse_share_url(url: str) -> SessionLink | None:
    """Extract the session from a share URL.

    Both the current `s` and the legacy `session` query keys are accepted.
    The `type` parameter defaults to `'offer'`.

    Returns:
        The session link or `None` if the URL carries no well-formed code.
    """
    query = parse_qs(urlsplit(url).query)
    values = query.get('s') or query.get('session')
    if not values:
        return None
    session_id = values[0].strip().upper()
    if not is_valid_session_id(session_id):
        return None
    description_type = query.get('type', ['offer'])[0]
    return SessionLink(session_id, description_type)


def parse_session_code(text: str) -> str | None:
    """Parse a session code typed by a user or a share URL.

    Returns:
        The normalized session code or `None` if `text` is neither a
        well-formed code nor a URL carrying one.
    """
    text = text.strip()
    if '?' in text:
        link = parse_share_url(text)
        return None if link is None else link.session_id
    code = text.upper()
    return code if is_valid_session_id(code) else None
