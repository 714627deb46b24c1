"""Peer connection coordination.

The [`ConnectionCoordinator`][colormatch.p2p.connection.ConnectionCoordinator]
drives a WebRTC peer connection through the offer, answer, and candidate
exchange for one side of a session and exposes the connection and data
channel lifecycle to observers. Transporting the descriptions and candidates
to the counterpart peer is the job of the
[signaling][colormatch.p2p.signaling] layer.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import sys
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Sequence

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from aiortc import RTCConfiguration
from aiortc import RTCIceCandidate
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp
from aiortc.sdp import candidate_to_sdp

from colormatch.p2p.events import Callback
from colormatch.p2p.events import EventHub
from colormatch.p2p.events import Subscription
from colormatch.p2p.protocols import DataChannel
from colormatch.p2p.protocols import PeerConnectionEngine
from colormatch.p2p.session import Role

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = (
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
)
DEFAULT_GATHERING_TIMEOUT = 5.0
DEFAULT_CHANNEL_LABEL = 'colors'

EngineFactory = Callable[..., PeerConnectionEngine]


class CoordinatorState(enum.Enum):
    """Handshake and connection state of a coordinator.

    Offerers move through `idle -> creating-offer -> gathering-ice ->
    offer-ready -> awaiting-answer -> connecting -> connected`. Answerers
    move through `idle -> received-offer -> creating-answer ->
    gathering-ice -> answer-ready -> connecting -> connected`. Either side
    can end in `closed` or `failed`.
    """

    idle = 'idle'
    creating_offer = 'creating-offer'
    received_offer = 'received-offer'
    creating_answer = 'creating-answer'
    gathering_ice = 'gathering-ice'
    offer_ready = 'offer-ready'
    answer_ready = 'answer-ready'
    awaiting_answer = 'awaiting-answer'
    connecting = 'connecting'
    connected = 'connected'
    closed = 'closed'
    failed = 'failed'


# Engine connection states which move the coordinator state.
_CONNECTION_TRANSITIONS = {
    'connecting': CoordinatorState.connecting,
    'connected': CoordinatorState.connected,
    'failed': CoordinatorState.failed,
    'closed': CoordinatorState.closed,
}


def description_to_dict(description: RTCSessionDescription) -> dict[str, str]:
    """Convert a session description to `{'type': ..., 'sdp': ...}`."""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_dict(data: dict[str, Any]) -> RTCSessionDescription:
    """Convert `{'type': ..., 'sdp': ...}` to a session description.

    Raises:
        KeyError: If a key is missing.
        ValueError: If the description type is unknown.
    """
    return RTCSessionDescription(sdp=data['sdp'], type=data['type'])


def candidate_to_dict(candidate: RTCIceCandidate) -> dict[str, Any]:
    """Convert a candidate to the browser's JSON form.

    The result has the `candidate`, `sdpMLineIndex`, and `sdpMid` keys
    where `candidate` is the `candidate:...` attribute line.
    """
    return {
        'candidate': f'candidate:{candidate_to_sdp(candidate)}',
        'sdpMLineIndex': candidate.sdpMLineIndex,
        'sdpMid': candidate.sdpMid,
    }


def candidate_from_dict(data: dict[str, Any]) -> RTCIceCandidate:
    """Convert the browser's JSON form of a candidate to a candidate.

    Raises:
        KeyError: If the `candidate` key is missing.
        ValueError: If the candidate attribute cannot be parsed.
    """
    line = data['candidate']
    if not isinstance(line, str):
        raise ValueError(f'Expected candidate string but got {line!r}.')
    if line.startswith('candidate:'):
        line = line[len('candidate:') :]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f'Failed to parse candidate {line!r}.') from e
    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


class ConnectionCoordinator:
    """Coordinate one side of a peer-to-peer connection.

    The offerer creates one ordered, reliable data channel and an offer.
    The answerer commits the offer, answers it, and accepts the channel.
    Candidates learned from the counterpart are only forwarded to the
    engine once a remote description has been committed. Candidates which
    arrive earlier are queued and forwarded, in order, right after the
    remote description is committed.

    No operation raises. Engine errors are logged and reflected in
    [`state`][colormatch.p2p.connection.ConnectionCoordinator.state],
    operations return `None` or `False` on failure, and malformed inbound
    messages are logged and discarded.

    Example:
        ```python
        from colormatch.p2p.connection import ConnectionCoordinator

        offerer = ConnectionCoordinator()
        answerer = ConnectionCoordinator()

        offer = await offerer.begin_as_offerer()
        answer = await answerer.begin_as_answerer(offer)
        await offerer.complete_with_remote_description(answer)

        answerer.on_message(print)
        await offerer.wait_for_channel(timeout=10)
        offerer.send({'color': '#ff8800'})

        await offerer.close()
        await answerer.close()
        ```

    Args:
        engine_factory: Callable which returns a new peer connection engine
            given a `configuration` keyword argument. Defaults to
            [`RTCPeerConnection`][aiortc.RTCPeerConnection].
        ice_servers: STUN server URLs used for candidate gathering.
        gathering_timeout: Maximum seconds to wait for ICE gathering to
            complete after the local description is committed.
        channel_label: Label of the data channel created by the offerer.
    """

    def __init__(
        self,
        engine_factory: EngineFactory | None = None,
        *,
        ice_servers: Sequence[str] = DEFAULT_ICE_SERVERS,
        gathering_timeout: float = DEFAULT_GATHERING_TIMEOUT,
        channel_label: str = DEFAULT_CHANNEL_LABEL,
    ) -> None:
        self._engine_factory: EngineFactory = (
            RTCPeerConnection if engine_factory is None else engine_factory
        )
        self._ice_servers = list(ice_servers)
        self._gathering_timeout = gathering_timeout
        self._channel_label = channel_label

        self._events = EventHub()
        self._state = CoordinatorState.idle
        self._role: Role | None = None

        self._pc: PeerConnectionEngine | None = None
        self._channel: DataChannel | None = None

        self._remote_committed = False
        self._pending_candidates: list[RTCIceCandidate] = []

        self._gathering_complete = asyncio.Event()
        self._channel_open = asyncio.Event()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        role = 'pending' if self._role is None else self._role.value
        return (
            f'{self.__class__.__name__}(role={role}, '
            f'state={self._state.value})'
        )

    @property
    def _log_prefix(self) -> str:
        role = 'pending' if self._role is None else self._role.value
        return f'{self.__class__.__name__}[{role}]'

    @property
    def state(self) -> CoordinatorState:
        """Current handshake and connection state."""
        return self._state

    @property
    def role(self) -> Role | None:
        """Role of this peer or `None` if no handshake has begun."""
        return self._role

    @property
    def connection_state(self) -> str | None:
        """Engine connection state or `None` if there is no engine."""
        return None if self._pc is None else self._pc.connectionState

    @property
    def channel_state(self) -> str | None:
        """Data channel ready state or `None` if there is no channel."""
        return None if self._channel is None else self._channel.readyState

    @property
    def ready(self) -> bool:
        """If the data channel exists and is open."""
        return self.channel_state == 'open'

    @property
    def local_description(self) -> dict[str, str] | None:
        """Committed local description as `{'type': ..., 'sdp': ...}`."""
        if self._pc is None or self._pc.localDescription is None:
            return None
        return description_to_dict(self._pc.localDescription)

    @property
    def remote_description(self) -> dict[str, str] | None:
        """Committed remote description as `{'type': ..., 'sdp': ...}`."""
        if self._pc is None or self._pc.remoteDescription is None:
            return None
        return description_to_dict(self._pc.remoteDescription)

    @property
    def pending_candidates(self) -> int:
        """Number of remote candidates waiting on the remote description."""
        return len(self._pending_candidates)

    def on_state_change(self, callback: Callback) -> Subscription:
        """Observe [`CoordinatorState`][colormatch.p2p.connection.CoordinatorState] changes."""  # noqa: E501
        return self._events.subscribe('state', callback)

    def on_connection_state_change(self, callback: Callback) -> Subscription:
        """Observe engine connection state changes (e.g. `'connected'`)."""
        return self._events.subscribe('connectionstate', callback)

    def on_channel_state_change(self, callback: Callback) -> Subscription:
        """Observe the data channel opening or closing."""
        return self._events.subscribe('channelstate', callback)

    def on_message(self, callback: Callback) -> Subscription:
        """Observe decoded JSON messages received on the data channel."""
        return self._events.subscribe('message', callback)

    def on_ice_candidate(self, callback: Callback) -> Subscription:
        """Observe locally discovered candidates in their JSON form."""
        return self._events.subscribe('icecandidate', callback)

    async def _transition(self, state: CoordinatorState) -> None:
        if state is self._state:
            return
        logger.info(
            f'{self._log_prefix}: {self._state.value} -> {state.value}',
        )
        self._state = state
        await self._events.emit('state', state)

    def _create_engine(self) -> PeerConnectionEngine:
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self._ice_servers],
        )
        pc = self._engine_factory(configuration=configuration)

        def _on_gathering_state_change() -> None:
            logger.debug(
                f'{self._log_prefix}: ICE gathering state is '
                f'{pc.iceGatheringState}',
            )
            if pc.iceGatheringState == 'complete':
                self._gathering_complete.set()

        async def _on_connection_state_change() -> None:
            state = pc.connectionState
            logger.info(f'{self._log_prefix}: connection state is {state}')
            target = _CONNECTION_TRANSITIONS.get(state)
            if (
                target is not None
                and self._state is not CoordinatorState.closed
            ):
                await self._transition(target)
            await self._events.emit('connectionstate', state)

        pc.on('icecandidate', self._on_ice_candidate)
        pc.on('icegatheringstatechange', _on_gathering_state_change)
        pc.on('connectionstatechange', _on_connection_state_change)
        return pc

    async def _on_ice_candidate(
        self,
        candidate: RTCIceCandidate | None,
    ) -> None:
        if candidate is None:
            logger.debug(f'{self._log_prefix}: end of local candidates')
            return
        await self._events.emit('icecandidate', candidate_to_dict(candidate))

    def _setup_channel(self, channel: DataChannel) -> None:
        self._channel = channel
        channel.on('open', self._on_channel_open)
        channel.on('close', self._on_channel_close)
        channel.on('error', self._on_channel_error)
        channel.on('message', self._on_channel_message)

    async def _on_datachannel(self, channel: DataChannel) -> None:
        if self._channel is not None:
            logger.warning(
                f'{self._log_prefix}: ignoring unexpected data channel '
                f'{channel.label}',
            )
            return
        logger.info(f'{self._log_prefix}: accepted data channel')
        self._setup_channel(channel)
        # The channel may already be open when it is announced.
        if channel.readyState == 'open':
            await self._on_channel_open()

    async def _on_channel_open(self) -> None:
        if self._channel_open.is_set():
            return
        logger.info(f'{self._log_prefix}: data channel opened')
        self._channel_open.set()
        await self._events.emit('channelstate', 'open')

    async def _on_channel_close(self) -> None:
        logger.info(f'{self._log_prefix}: data channel closed')
        self._channel_open.clear()
        await self._events.emit('channelstate', 'closed')

    def _on_channel_error(self, error: Any = None) -> None:
        logger.error(f'{self._log_prefix}: data channel error: {error!r}')

    async def _on_channel_message(self, data: bytes | str) -> None:
        try:
            if isinstance(data, bytes):
                data = data.decode('utf-8')
            message = json.loads(data)
        except (TypeError, ValueError) as e:
            logger.error(
                f'{self._log_prefix}: discarding malformed message: {e!r}',
            )
            return
        await self._events.emit('message', message)

    async def _wait_for_ice_gathering(self) -> None:
        assert self._pc is not None
        if self._pc.iceGatheringState == 'complete':
            return
        try:
            await asyncio.wait_for(
                self._gathering_complete.wait(),
                self._gathering_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f'{self._log_prefix}: ICE gathering did not complete within '
                f'{self._gathering_timeout} seconds, continuing with the '
                'candidates gathered so far',
            )

    def _can_begin(self, role: Role) -> bool:
        if self._state is not CoordinatorState.idle:
            logger.warning(
                f'{self._log_prefix}: cannot begin as {role.value} in '
                f'state {self._state.value}',
            )
            return False
        return True

    async def _fail(self, action: str) -> None:
        logger.exception(f'{self._log_prefix}: failed to {action}')
        if self._state is not CoordinatorState.closed:
            await self._transition(CoordinatorState.failed)

    async def begin_as_offerer(self) -> dict[str, str] | None:
        """Create the data channel and the offer.

        Waits for ICE gathering to complete for at most the gathering
        timeout and returns the local description set at that point, which
        may not contain every candidate if gathering stalled.

        Returns:
            The offer as `{'type': 'offer', 'sdp': ...}` or `None` if the
            offer could not be created.
        """
        if not self._can_begin(Role.offerer):
            return None
        self._role = Role.offerer

        try:
            await self._transition(CoordinatorState.creating_offer)
            self._pc = self._create_engine()
            channel = self._pc.createDataChannel(
                self._channel_label,
                ordered=True,
            )
            self._setup_channel(channel)

            offer = await self._pc.createOffer()
            await self._pc.setLocalDescription(offer)

            await self._transition(CoordinatorState.gathering_ice)
            await self._wait_for_ice_gathering()
        except Exception:
            await self._fail('create offer')
            return None

        if self._state is CoordinatorState.gathering_ice:
            await self._transition(CoordinatorState.offer_ready)
        return self.local_description

    async def begin_as_answerer(
        self,
        remote_offer: dict[str, Any],
    ) -> dict[str, str] | None:
        """Answer a remote offer.

        The data channel is not created by the answerer. It is accepted
        when the offerer's channel is announced by the engine.

        Args:
            remote_offer: Offer as `{'type': 'offer', 'sdp': ...}`.

        Returns:
            The answer as `{'type': 'answer', 'sdp': ...}` or `None` if the
            offer could not be answered.
        """
        if not self._can_begin(Role.answerer):
            return None
        self._role = Role.answerer

        try:
            offer = description_from_dict(remote_offer)
            await self._transition(CoordinatorState.received_offer)
            self._pc = self._create_engine()
            self._pc.on('datachannel', self._on_datachannel)

            await self._pc.setRemoteDescription(offer)
            await self._flush_pending_candidates()

            await self._transition(CoordinatorState.creating_answer)
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)

            await self._transition(CoordinatorState.gathering_ice)
            await self._wait_for_ice_gathering()
        except Exception:
            await self._fail('answer offer')
            return None

        if self._state is CoordinatorState.gathering_ice:
            await self._transition(CoordinatorState.answer_ready)
        return self.local_description

    async def expect_answer(self) -> None:
        """Mark the offer as handed to the counterpart peer."""
        if self._state is CoordinatorState.offer_ready:
            await self._transition(CoordinatorState.awaiting_answer)

    async def complete_with_remote_description(
        self,
        remote_description: dict[str, Any],
    ) -> bool:
        """Commit the counterpart's description.

        This is a no-op if no engine exists, i.e., neither
        [`begin_as_offerer()`][colormatch.p2p.connection.ConnectionCoordinator.begin_as_offerer]
        nor
        [`begin_as_answerer()`][colormatch.p2p.connection.ConnectionCoordinator.begin_as_answerer]
        has been called or the coordinator has been closed.

        Args:
            remote_description: Description as `{'type': ..., 'sdp': ...}`.

        Returns:
            If the description was committed.
        """
        if self._pc is None:
            logger.warning(
                f'{self._log_prefix}: no peer connection to commit the '
                'remote description to',
            )
            return False

        try:
            description = description_from_dict(remote_description)
            await self._pc.setRemoteDescription(description)
        except Exception:
            logger.exception(
                f'{self._log_prefix}: failed to commit remote description',
            )
            return False

        logger.info(
            f'{self._log_prefix}: committed remote {description.type}',
        )
        await self._flush_pending_candidates()
        if self._state in (
            CoordinatorState.offer_ready,
            CoordinatorState.awaiting_answer,
        ):
            await self._transition(CoordinatorState.connecting)
        return True

    async def _flush_pending_candidates(self) -> None:
        self._remote_committed = True
        pending, self._pending_candidates = self._pending_candidates, []
        if len(pending) > 0:
            logger.debug(
                f'{self._log_prefix}: forwarding {len(pending)} queued '
                'remote candidate(s)',
            )
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: RTCIceCandidate) -> bool:
        assert self._pc is not None
        try:
            await self._pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(
                f'{self._log_prefix}: engine rejected remote candidate: {e!r}',
            )
            return False
        return True

    async def submit_remote_ice_candidate(
        self,
        candidate: dict[str, Any],
    ) -> bool:
        """Forward a candidate learned from the counterpart peer.

        Candidates are only forwarded to the engine after a remote
        description has been committed. Earlier candidates are queued.

        Args:
            candidate: Candidate as a dictionary with `candidate`,
                `sdpMLineIndex`, and `sdpMid` keys.

        Returns:
            If the candidate was forwarded to the engine now. `False` if it
            was queued, malformed, rejected, or the coordinator is closed.
        """
        if self._state is CoordinatorState.closed:
            return False

        try:
            parsed = candidate_from_dict(candidate)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                f'{self._log_prefix}: discarding malformed remote '
                f'candidate: {e!r}',
            )
            return False

        if self._pc is None or not self._remote_committed:
            self._pending_candidates.append(parsed)
            logger.debug(
                f'{self._log_prefix}: queued remote candidate until the '
                'remote description is committed',
            )
            return False

        return await self._add_candidate(parsed)

    def send(self, payload: Any) -> bool:
        """Send a JSON-serializable payload on the data channel.

        Args:
            payload: JSON-serializable value.

        Returns:
            `True` if the payload was written to the channel. `False`, with
            nothing written, if the channel is not open or the payload is
            not JSON-serializable.
        """
        channel = self._channel
        if channel is None or channel.readyState != 'open':
            logger.warning(
                f'{self._log_prefix}: data channel is not open, '
                'message not sent',
            )
            return False

        try:
            message = json.dumps(payload, allow_nan=False)
        except (TypeError, ValueError) as e:
            logger.warning(
                f'{self._log_prefix}: payload is not JSON-serializable: '
                f'{e!r}',
            )
            return False

        try:
            channel.send(message)
        except InvalidStateError as e:
            logger.error(f'{self._log_prefix}: failed to send: {e!r}')
            return False
        return True

    async def wait_for_channel(self, timeout: float | None = None) -> bool:
        """Wait for the data channel to open.

        Args:
            timeout: Maximum seconds to wait. If `None`, wait indefinitely.

        Returns:
            If the channel is open.
        """
        if self.ready:
            return True
        try:
            await asyncio.wait_for(self._channel_open.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.ready

    async def close(self) -> None:
        """Release the data channel and the peer connection.

        Safe to call more than once and on a coordinator which never began
        a handshake.
        """
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        self._pending_candidates.clear()

        if channel is not None:
            try:
                channel.close()
            except Exception:
                logger.exception(
                    f'{self._log_prefix}: error closing data channel',
                )
        if pc is not None:
            logger.info(f'{self._log_prefix}: closing peer connection')
            try:
                await pc.close()
            except Exception:
                logger.exception(
                    f'{self._log_prefix}: error closing peer connection',
                )

        self._channel_open.clear()
        await self._transition(CoordinatorState.closed)
