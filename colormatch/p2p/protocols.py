"""Peer connection engine protocols.

The [`ConnectionCoordinator`][colormatch.p2p.connection.ConnectionCoordinator]
drives an engine which implements the WebRTC peer connection. The default
engine is [`aiortc.RTCPeerConnection`][aiortc.RTCPeerConnection] but any
object with this interface can be used.
"""
from __future__ import annotations

from typing import Any
from typing import Callable
from typing import Protocol
from typing import runtime_checkable

from aiortc import RTCIceCandidate
from aiortc import RTCSessionDescription


@runtime_checkable
class DataChannel(Protocol):
    """Ordered, reliable data channel opened over a peer connection.

    Events emitted: `open`, `close`, `error`, and `message`.
    """

    @property
    def label(self) -> str:
        """Channel label."""
        ...

    @property
    def readyState(self) -> str:  # noqa: N802
        """One of `connecting`, `open`, `closing`, or `closed`."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register a handler for an event."""
        ...

    def send(self, data: bytes | str) -> None:
        """Send data to the peer."""
        ...

    def close(self) -> None:
        """Close the channel."""
        ...


@runtime_checkable
class PeerConnectionEngine(Protocol):
    """Peer connection capability.

    Events emitted: `icecandidate`, `icegatheringstatechange`,
    `connectionstatechange`, and `datachannel`.
    """

    @property
    def connectionState(self) -> str:  # noqa: N802
        """One of `new`, `connecting`, `connected`, `disconnected`, `failed`, or `closed`."""  # noqa: E501
        ...

    @property
    def iceGatheringState(self) -> str:  # noqa: N802
        """One of `new`, `gathering`, or `complete`."""
        ...

    @property
    def localDescription(self) -> RTCSessionDescription | None:  # noqa: N802
        """Committed local description."""
        ...

    @property
    def remoteDescription(self) -> RTCSessionDescription | None:  # noqa: N802
        """Committed remote description."""
        ...

    def on(self, event: str, f: Callable[..., Any] | None = None) -> Any:
        """Register a handler for an event."""
        ...

    def createDataChannel(  # noqa: N802
        self,
        label: str,
        ordered: bool = True,
    ) -> DataChannel:
        """Open a data channel as the initiator."""
        ...

    async def createOffer(self) -> RTCSessionDescription:  # noqa: N802
        """Create an offer description."""
        ...

    async def createAnswer(self) -> RTCSessionDescription:  # noqa: N802
        """Create an answer description."""
        ...

    async def setLocalDescription(  # noqa: N802
        self,
        sessionDescription: RTCSessionDescription,  # noqa: N803
    ) -> None:
        """Commit the local description."""
        ...

    async def setRemoteDescription(  # noqa: N802
        self,
        sessionDescription: RTCSessionDescription,  # noqa: N803
    ) -> None:
        """Commit the remote description."""
        ...

    async def addIceCandidate(  # noqa: N802
        self,
        candidate: RTCIceCandidate,
    ) -> None:
        """Add a candidate learned from the remote peer."""
        ...

    async def close(self) -> None:
        """Close the peer connection."""
        ...
