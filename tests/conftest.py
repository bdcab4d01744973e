"""
Shared fixtures and in-memory doubles for the signaling tests.

Provides:
- Fake media (tracks, streams, devices) and fake peer connections
- A recording signaling channel for coordinator unit tests
- Static contacts directory and fake registry connections
- Endpoint harness wiring a coordinator to a real registry and relay
"""

import asyncio
from typing import Dict, List, Optional, Set

import pytest

from call_session import CallSessionCoordinator
from errors import SignalingError
from notifier import ContactPresenceNotifier
from presence import PresenceRegistry
from schemas import EnvelopeType, IceCandidate, SessionDescription, SignalingEnvelope
from signaling import SignalingRelay


# ============================================================================
# Media doubles
# ============================================================================

class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.stop_count = 0

    def stop(self):
        self.stop_count += 1

    @property
    def stopped(self) -> bool:
        return self.stop_count > 0


class FakeStream:
    def __init__(self, kinds=("audio", "video")):
        self.tracks = [FakeTrack(kind) for kind in kinds]

    def get_tracks(self):
        return list(self.tracks)


class FakeMediaDevices:
    """Hands out fresh streams; can fail or hold the request open."""

    def __init__(self, error: Optional[Exception] = None, kinds=("audio", "video")):
        self.error = error
        self.kinds = kinds
        self.gate: Optional[asyncio.Event] = None
        self.requested = asyncio.Event()
        self.streams: List[FakeStream] = []
        self.constraints = []

    def hold(self):
        self.gate = asyncio.Event()
        return self.gate

    async def get_user_media(self, constraints):
        self.constraints.append(constraints)
        self.requested.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        stream = FakeStream(self.kinds)
        self.streams.append(stream)
        return stream


# ============================================================================
# Peer connection doubles
# ============================================================================

class FakePeerConnection:
    def __init__(self, owner, ice_servers, on_ice_candidate, on_connection_state_change, on_track, fail_on=()):
        self.owner = owner
        self.ice_servers = ice_servers
        self.on_ice_candidate = on_ice_candidate
        self.on_connection_state_change = on_connection_state_change
        self.on_track = on_track
        self.fail_on = set(fail_on)
        self.tracks = []
        self.local_description: Optional[SessionDescription] = None
        self.remote_description: Optional[SessionDescription] = None
        self.candidates: List[IceCandidate] = []
        self.close_count = 0

    def _check(self, step):
        if step in self.fail_on:
            raise RuntimeError(f"{step} exploded")

    def add_track(self, track, stream):
        self.tracks.append(track)

    async def create_offer(self):
        self._check("create_offer")
        return SessionDescription(type="offer", sdp=f"v=0 offer from {self.owner}")

    async def create_answer(self):
        self._check("create_answer")
        return SessionDescription(type="answer", sdp=f"v=0 answer from {self.owner}")

    async def set_local_description(self, description):
        self._check("set_local_description")
        self.local_description = description

    async def set_remote_description(self, description):
        self._check("set_remote_description")
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        self._check("add_ice_candidate")
        self.candidates.append(candidate)

    async def close(self):
        self.close_count += 1

    # Test drivers
    def emit_candidate(self, candidate: Optional[IceCandidate]):
        self.on_ice_candidate(candidate)

    def set_state(self, state: str):
        self.on_connection_state_change(state)


class FakePeerFactory:
    def __init__(self, owner: str = "endpoint", fail_on=()):
        self.owner = owner
        self.fail_on = fail_on
        self.peers: List[FakePeerConnection] = []

    def __call__(self, ice_servers, on_ice_candidate, on_connection_state_change, on_track):
        peer = FakePeerConnection(
            self.owner, ice_servers, on_ice_candidate, on_connection_state_change, on_track, self.fail_on
        )
        self.peers.append(peer)
        return peer

    @property
    def last(self) -> FakePeerConnection:
        return self.peers[-1]


class RecordingChannel:
    def __init__(self):
        self.sent: List[SignalingEnvelope] = []

    async def send(self, envelope):
        self.sent.append(envelope)

    def of_type(self, envelope_type: EnvelopeType) -> List[SignalingEnvelope]:
        return [e for e in self.sent if e.type is envelope_type]


def candidate(n: int = 1) -> IceCandidate:
    return IceCandidate(candidate=f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000{n} typ host", sdp_mid="0", sdp_mline_index=0)


def envelope(envelope_type: EnvelopeType, sender: str, recipient: str, payload=None) -> SignalingEnvelope:
    return SignalingEnvelope(type=envelope_type, from_user=sender, to_user=recipient, payload=payload)


# ============================================================================
# Presence doubles
# ============================================================================

class StaticDirectory:
    """Symmetric accepted-contacts map; can be made to fail."""

    def __init__(self, pairs=(), error: Optional[Exception] = None):
        self.contacts: Dict[str, Set[str]] = {}
        self.error = error
        self.lookups: List[str] = []
        for a, b in pairs:
            self.contacts.setdefault(a, set()).add(b)
            self.contacts.setdefault(b, set()).add(a)

    async def get_accepted_contacts(self, user_id):
        self.lookups.append(user_id)
        if self.error is not None:
            raise self.error
        return set(self.contacts.get(user_id, ()))


class FakeConnection:
    def __init__(self, name: str):
        self.id = name
        self.delivered: List[dict] = []

    def deliver(self, message):
        self.delivered.append(message)
        return True

    def presence_events(self):
        return [m for m in self.delivered if m["type"] in ("online", "offline")]


# ============================================================================
# Endpoint harness
# ============================================================================

ENVELOPE_TYPES = {t.value for t in EnvelopeType}


class RelayChannel:
    def __init__(self, relay: SignalingRelay):
        self.relay = relay

    async def send(self, envelope):
        self.relay.relay(envelope)


class Endpoint:
    """A registered connection that feeds inbound envelopes to a coordinator in order."""

    def __init__(self, user_id: str, registry: PresenceRegistry, relay: SignalingRelay):
        self.id = f"conn-{user_id}"
        self.user_id = user_id
        self.registry = registry
        self.delivered: List[dict] = []
        self.errors: List[SignalingError] = []
        self.media = FakeMediaDevices()
        self.peers = FakePeerFactory(owner=user_id)
        self.coordinator = CallSessionCoordinator(
            user_id, RelayChannel(relay), self.media, self.peers, ice_servers=["stun:stun.example.org:3478"]
        )
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self._pump: Optional[asyncio.Task] = None

    def deliver(self, message):
        self.delivered.append(message)
        if message["type"] in ENVELOPE_TYPES:
            self._pending += 1
            self._inbox.put_nowait(message)
        return True

    def presence_events(self):
        return [m for m in self.delivered if m["type"] in ("online", "offline")]

    def envelopes(self, envelope_type: EnvelopeType):
        return [m for m in self.delivered if m["type"] == envelope_type.value]

    async def attach(self):
        self._pump = asyncio.get_running_loop().create_task(self._pump_loop())
        await self.registry.register(self.user_id, self)

    async def detach(self):
        await self.registry.unregister(self)
        if self._pump is not None:
            self._pump.cancel()
            self._pump = None

    async def _pump_loop(self):
        while True:
            message = await self._inbox.get()
            try:
                await self.coordinator.handle_envelope(SignalingEnvelope(**message))
            except SignalingError as e:
                self.errors.append(e)
            finally:
                self._pending -= 1

    @property
    def busy(self) -> bool:
        return self._pending > 0 or bool(self.coordinator._tasks)


async def settle(*endpoints: Endpoint, rounds: int = 200):
    """Let queued deliveries and coordinator callbacks run to quiescence."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        for endpoint in endpoints:
            await endpoint.coordinator.drain()
        if not any(endpoint.busy for endpoint in endpoints):
            return
    raise AssertionError("endpoints did not settle")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def media():
    return FakeMediaDevices()


@pytest.fixture
def peers():
    return FakePeerFactory(owner="alice")


@pytest.fixture
def coordinator(channel, media, peers):
    return CallSessionCoordinator("alice", channel, media, peers, ice_servers=["stun:stun.example.org:3478"])


@pytest.fixture
def directory():
    return StaticDirectory([("alice", "bob"), ("alice", "carol")])


@pytest.fixture
def registry(directory):
    return PresenceRegistry(ContactPresenceNotifier(directory))


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry)
