"""Relay-backed signaling protocol.

Peers establish a connection without a dedicated signaling server by
exchanging handshake artifacts through topics on a public key-value relay.
For a session code `ID` and application name `app`:

1. The offerer creates an offer and publishes it to `app-ID-offer`, then
   shares a short URL carrying only `ID`.
2. The answerer polls `app-ID-offer` (tolerating relay propagation delay),
   answers it, and publishes the answer to `app-ID-answer`.
3. The offerer polls `app-ID-answer` and commits the answer.

Each side also publishes every discovered candidate to
`app-ID-ice-<role>` and reads the counterpart's topic once after its remote
description is committed.

Warning:
    The relay keeps only the most recent write per topic, so candidate
    exchange is lossy by construction. A single viable candidate pair is
    usually enough, but not every candidate is guaranteed to reach the
    counterpart.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Any

from colormatch.p2p import codec
from colormatch.p2p.cache import SessionCache
from colormatch.p2p.connection import ConnectionCoordinator
from colormatch.p2p.events import Subscription
from colormatch.p2p.exceptions import PeerConnectionError
from colormatch.p2p.exceptions import SessionNotFoundError
from colormatch.p2p.relay.client import RelayClient
from colormatch.p2p.relay.exceptions import RelayMessageDecodeError
from colormatch.p2p.relay.messages import CandidateMessage
from colormatch.p2p.relay.messages import decode_relay_message
from colormatch.p2p.relay.messages import DescriptionMessage
from colormatch.p2p.relay.messages import encode_relay_message
from colormatch.p2p.session import build_share_url
from colormatch.p2p.session import generate_session_id
from colormatch.p2p.session import relay_topic
from colormatch.p2p.session import Role
from colormatch.p2p.session import SessionDescriptor
from colormatch.p2p.session import timestamp_ms
from colormatch.p2p.session import TopicKind

logger = logging.getLogger(__name__)

DEFAULT_APP_NAME = 'colormatch'


@dataclasses.dataclass
class SignalingSession:
    """Result of starting or accepting a session.

    Attributes:
        descriptor: Local description record for the session.
        url: Short URL to share with the counterpart peer.
        published: If the description reached the relay. When `False`, the
            description is only available from the local cache.
        candidates: Subscription publishing local candidates to the relay.
    """

    descriptor: SessionDescriptor
    url: str
    published: bool
    candidates: Subscription

    @property
    def session_id(self) -> str:
        """Session code."""
        return self.descriptor.session_id


class RelaySignaling:
    """Exchange handshake artifacts for sessions through a relay.

    A single instance is created per application and shared by reference
    with whatever needs to start or join sessions.

    Example:
        ```python
        from colormatch.p2p.connection import ConnectionCoordinator
        from colormatch.p2p.relay.client import RelayClient
        from colormatch.p2p.signaling import RelaySignaling

        async with RelayClient() as relay:
            signaling = RelaySignaling(relay, base_url='https://example.com')

            # Offerer
            offerer = ConnectionCoordinator()
            session = await signaling.start_offer(offerer)
            print(f'Share {session.url}')
            await signaling.complete_offer(offerer, session.session_id)

            # Answerer (given the session code)
            answerer = ConnectionCoordinator()
            await signaling.accept_offer(answerer, session.session_id)
        ```

    Args:
        relay_client: Client used to publish and fetch topics.
        app_name: Prefix of every relay topic.
        base_url: Base URL of share links.
        cache: Local fallback cache. A new in-memory cache is used if not
            provided.
        fetch_attempts: Attempts made when polling for a description.
        fetch_delay: Seconds between polling attempts.
    """

    def __init__(
        self,
        relay_client: RelayClient,
        *,
        app_name: str = DEFAULT_APP_NAME,
        base_url: str = 'http://localhost/',
        cache: SessionCache | None = None,
        fetch_attempts: int = 5,
        fetch_delay: float = 1.5,
    ) -> None:
        self._relay = relay_client
        self._app_name = app_name
        self._base_url = base_url
        self._cache = SessionCache() if cache is None else cache
        self._fetch_attempts = fetch_attempts
        self._fetch_delay = fetch_delay

        # Timestamp of the last candidate applied from each topic.
        self._applied_candidates: dict[str, Any] = {}

    def __repr__(self) -> str:
        return (
            f'{self.__class__.__name__}(app_name={self._app_name!r}, '
            f'relay={self._relay!r})'
        )

    @property
    def cache(self) -> SessionCache:
        """Local fallback cache."""
        return self._cache

    def topic(self, session_id: str, kind: TopicKind | str) -> str:
        """Get the relay topic of `kind` for a session."""
        return relay_topic(self._app_name, session_id, kind)

    async def publish_description(
        self,
        session_id: str,
        description: dict[str, Any],
    ) -> bool:
        """Publish an offer or answer.

        The description is also written to the local cache.

        Args:
            session_id: Session code.
            description: Description as `{'type': ..., 'sdp': ...}`.

        Returns:
            If the relay accepted the description.
        """
        description_type = description['type']
        self._cache.put(session_id, description_type, description)
        message = DescriptionMessage(
            type=description_type,
            sdp=codec.encode(description),
            timestamp=timestamp_ms(),
        )
        topic = self.topic(session_id, description_type)
        published = await self._relay.publish(
            topic,
            encode_relay_message(message),
        )
        if published:
            logger.info(f'Published {description_type} to {topic}')
        return published

    async def retrieve_description(
        self,
        session_id: str,
        description_type: str,
    ) -> dict[str, Any] | None:
        """Poll the relay for an offer or answer.

        Falls back to the local cache if the relay does not produce a
        description within the configured number of attempts.

        Returns:
            Description as `{'type': ..., 'sdp': ...}` or `None`.
        """

        def _decode(content: dict[str, Any]) -> dict[str, Any] | None:
            try:
                message = decode_relay_message(content)
            except RelayMessageDecodeError as e:
                logger.warning(f'Ignoring unexpected relay payload: {e}')
                return None
            if not isinstance(message, DescriptionMessage):
                return None
            description = codec.decode(message.sdp)
            if (
                not isinstance(description, dict)
                or description.get('type') != description_type
                or not isinstance(description.get('sdp'), str)
            ):
                logger.warning(
                    f'Relay payload for session {session_id} is not a '
                    f'valid {description_type}',
                )
                return None
            return description

        topic = self.topic(session_id, description_type)
        description = await self._relay.fetch_with_retry(
            topic,
            self._fetch_attempts,
            self._fetch_delay,
            decoder=_decode,
        )
        if description is None:
            description = self._cache.get(session_id, description_type)
            if description is not None:
                logger.info(
                    f'Using locally cached {description_type} for session '
                    f'{session_id}',
                )
        return description

    async def publish_candidate(
        self,
        session_id: str,
        role: Role,
        candidate: dict[str, Any],
    ) -> bool:
        """Publish a local candidate to the topic of `role`.

        Note:
            This replaces any candidate previously published by `role`.
        """
        message = CandidateMessage(
            candidate=candidate,
            timestamp=timestamp_ms(),
        )
        return await self._relay.publish(
            self.topic(session_id, TopicKind.ice(role)),
            encode_relay_message(message),
        )

    async def retrieve_candidate(
        self,
        session_id: str,
        role: Role,
    ) -> dict[str, Any] | None:
        """Fetch the latest candidate published by the counterpart of `role`.

        This makes a single fetch attempt. A candidate which was already
        returned once (same timestamp) is not returned again.

        Args:
            session_id: Session code.
            role: Role of the local peer.

        Returns:
            Candidate as a dictionary with `candidate`, `sdpMLineIndex`, and
            `sdpMid` keys or `None` if no new candidate is available.
        """
        topic = self.topic(session_id, TopicKind.ice(role.opposite))
        content = await self._relay.fetch(topic)
        if content is None:
            return None

        try:
            message = decode_relay_message(content)
        except RelayMessageDecodeError as e:
            logger.warning(f'Ignoring unexpected payload on {topic}: {e}')
            return None
        if not isinstance(message, CandidateMessage):
            return None

        if (
            topic in self._applied_candidates
            and self._applied_candidates[topic] == message.timestamp
        ):
            logger.debug(f'No new candidate on {topic}')
            return None
        self._applied_candidates[topic] = message.timestamp
        return message.candidate

    def forward_local_candidates(
        self,
        coordinator: ConnectionCoordinator,
        session_id: str,
        role: Role,
    ) -> Subscription:
        """Publish every candidate the coordinator discovers.

        Returns:
            Subscription which stops forwarding when unsubscribed.
        """

        async def _publish(candidate: dict[str, Any]) -> None:
            await self.publish_candidate(session_id, role, candidate)

        return coordinator.on_ice_candidate(_publish)

    async def apply_remote_candidate(
        self,
        coordinator: ConnectionCoordinator,
        session_id: str,
        role: Role,
    ) -> bool:
        """Submit the counterpart's latest candidate to the coordinator.

        Returns:
            If a candidate was forwarded to the engine.
        """
        candidate = await self.retrieve_candidate(session_id, role)
        if candidate is None:
            return False
        return await coordinator.submit_remote_ice_candidate(candidate)

    async def start_offer(
        self,
        coordinator: ConnectionCoordinator,
        session_id: str | None = None,
    ) -> SignalingSession:
        """Create and publish an offer for a new session.

        Args:
            coordinator: Idle coordinator to begin as the offerer.
            session_id: Session code. A new one is generated if `None`.

        Returns:
            The started session. Its URL carries only the session code.

        Raises:
            PeerConnectionError: If the coordinator could not create an offer.
        """
        if session_id is None:
            session_id = generate_session_id()
        candidates = self.forward_local_candidates(
            coordinator,
            session_id,
            Role.offerer,
        )

        offer = await coordinator.begin_as_offerer()
        if offer is None:
            candidates.unsubscribe()
            raise PeerConnectionError(
                f'Failed to create an offer for session {session_id}.',
            )

        published = await self.publish_description(session_id, offer)
        if not published:
            logger.warning(
                f'Offer for session {session_id} could not be published to '
                'the relay and is only available from the local cache',
            )
        await coordinator.expect_answer()

        return SignalingSession(
            descriptor=SessionDescriptor(session_id, Role.offerer, offer),
            url=build_share_url(self._base_url, session_id),
            published=published,
            candidates=candidates,
        )

    async def accept_offer(
        self,
        coordinator: ConnectionCoordinator,
        session_id: str,
    ) -> SignalingSession:
        """Answer the offer published for a session code.

        Args:
            coordinator: Idle coordinator to begin as the answerer.
            session_id: Session code shared by the offerer.

        Returns:
            The joined session. Its URL carries the session code and the
            `type=answer` role marker.

        Raises:
            SessionNotFoundError: If no offer is found for the code. This
                should be reported as a wrong code.
            PeerConnectionError: If the coordinator could not answer.
        """
        offer = await self.retrieve_description(session_id, 'offer')
        if offer is None:
            raise SessionNotFoundError(
                f'No offer was found for session code {session_id}.',
            )

        candidates = self.forward_local_candidates(
            coordinator,
            session_id,
            Role.answerer,
        )
        answer = await coordinator.begin_as_answerer(offer)
        if answer is None:
            candidates.unsubscribe()
            raise PeerConnectionError(
                f'Failed to answer the offer for session {session_id}.',
            )

        published = await self.publish_description(session_id, answer)
        if not published:
            logger.warning(
                f'Answer for session {session_id} could not be published to '
                'the relay and is only available from the local cache',
            )
        await self.apply_remote_candidate(
            coordinator,
            session_id,
            Role.answerer,
        )

        return SignalingSession(
            descriptor=SessionDescriptor(session_id, Role.answerer, answer),
            url=build_share_url(self._base_url, session_id, 'answer'),
            published=published,
            candidates=candidates,
        )

    async def complete_offer(
        self,
        coordinator: ConnectionCoordinator,
        session_id: str,
    ) -> bool:
        """Commit the answer published for a session started by this peer.

        Returns:
            If the answer was committed.

        Raises:
            SessionNotFoundError: If no answer is found for the code.
        """
        answer = await self.retrieve_description(session_id, 'answer')
        if answer is None:
            raise SessionNotFoundError(
                f'No answer was found for session code {session_id}.',
            )

        committed = await coordinator.complete_with_remote_description(answer)
        if committed:
            await self.apply_remote_candidate(
                coordinator,
                session_id,
                Role.offerer,
            )
        return committed
