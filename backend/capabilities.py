"""
Endpoint capabilities consumed by the call session coordinator.

The coordinator never touches devices or the network directly. It acquires
media through ``MediaDevices``, negotiates through a ``PeerConnection`` built by
a ``PeerConnectionFactory`` and sends envelopes through a ``SignalingChannel``.
Browser, aiortc or test doubles all plug in behind these protocols.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from schemas import IceCandidate, SessionDescription, SignalingEnvelope


@dataclass
class MediaConstraints:
    video: bool = True
    audio: bool = True
    width: int = 1280
    height: int = 720
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


class MediaStreamTrack(Protocol):
    kind: str
    enabled: bool

    def stop(self) -> None:
        ...


class MediaStream(Protocol):
    def get_tracks(self) -> List[MediaStreamTrack]:
        ...


class MediaDevices(Protocol):
    async def get_user_media(self, constraints: MediaConstraints) -> MediaStream:
        """Acquire local audio/video.

        Raises:
            MediaAccessError: permission denied, no device or insecure context.
        """
        ...


class PeerConnection(Protocol):
    def add_track(self, track: MediaStreamTrack, stream: MediaStream) -> None:
        ...

    async def create_offer(self) -> SessionDescription:
        ...

    async def create_answer(self) -> SessionDescription:
        ...

    async def set_local_description(self, description: SessionDescription) -> None:
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        ...

    async def close(self) -> None:
        ...


class PeerConnectionFactory(Protocol):
    def __call__(
        self,
        ice_servers: List[str],
        on_ice_candidate: Callable[[Optional[IceCandidate]], None],
        on_connection_state_change: Callable[[str], None],
        on_track: Callable[[MediaStream], None],
    ) -> PeerConnection:
        """Create a peer connection wired to the given handlers.

        Handlers are plain callables and may be invoked from inside any of the
        connection's coroutines; ``on_ice_candidate(None)`` marks the end of
        gathering. Connection states follow the WebRTC names: ``new``,
        ``connecting``, ``connected``, ``disconnected``, ``failed``, ``closed``.
        """
        ...


class SignalingChannel(Protocol):
    async def send(self, envelope: SignalingEnvelope) -> None:
        ...


def tracks_of_kind(stream: Optional[MediaStream], kind: str) -> List[MediaStreamTrack]:
    if stream is None:
        return []
    return [track for track in stream.get_tracks() if track.kind == kind]


def stop_stream(stream: Optional[MediaStream]) -> int:
    if stream is None:
        return 0
    tracks = stream.get_tracks()
    for track in tracks:
        track.stop()
    return len(tracks)
