"""
Call Session Coordinator

One coordinator runs per connected endpoint and owns at most one call at a
time. It acquires local media, exchanges offer/answer/ICE envelopes with the
remote endpoint through a SignalingChannel, and tears everything down again.

Progressing events (starting, accepting, rejecting, and every inbound
call-request, call-response and ice-candidate) run one at a time under a
per-endpoint lock, so a transition and all of its awaits finish before the
next one starts. Teardown (a local end, a received end/reject, or the peer
connection failing) does not wait for that lock: it takes effect immediately,
and any step that was mid-await notices its session is gone when it resumes
and releases whatever it acquired instead of adopting it.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from typing import Callable, List, Optional, Set

from call_state import ACTIVE_STATES, CallEvent, CallRole, CallState, can_transition, transition
from capabilities import (
    MediaConstraints,
    MediaDevices,
    MediaStream,
    PeerConnection,
    PeerConnectionFactory,
    SignalingChannel,
    stop_stream,
    tracks_of_kind,
)
from errors import (
    ConcurrentCallRejected,
    InvalidTransition,
    MediaAccessError,
    MediaAccessReason,
    NegotiationError,
    SignalingError,
)
from schemas import EnvelopeType, IceCandidate, SessionDescription, SignalingEnvelope


FAILED_CONNECTION_STATES = ("failed", "disconnected")


@dataclass(eq=False)
class CallSession:
    local_id: str
    remote_id: Optional[str]
    role: CallRole
    state: CallState = CallState.IDLE
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None
    peer: Optional[PeerConnection] = None
    remote_offer: Optional[SessionDescription] = None
    connection_state: str = "new"
    # Whether the remote knows about this call and should hear an end
    announced: bool = False


StateListener = Callable[[CallState, CallSession], None]


class CallSessionCoordinator:
    def __init__(
        self,
        user_id: str,
        channel: SignalingChannel,
        media: MediaDevices,
        peer_factory: PeerConnectionFactory,
        ice_servers: Optional[List[str]] = None,
        constraints: Optional[MediaConstraints] = None,
    ):
        self.user_id = user_id
        self.channel = channel
        self.media = media
        self.peer_factory = peer_factory
        self.ice_servers = list(ice_servers or [])
        self.constraints = constraints or MediaConstraints()
        self._session: Optional[CallSession] = None
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> CallState:
        return self._session.state if self._session else CallState.IDLE

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def remote_id(self) -> Optional[str]:
        return self._session.remote_id if self._session else None

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self._session.local_stream if self._session else None

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._session.remote_stream if self._session else None

    @property
    def incoming_call(self) -> Optional[str]:
        """Caller id while a call is ringing here."""
        if self.state is CallState.RINGING:
            return self._session.remote_id
        return None

    def add_listener(self, listener: StateListener):
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Local control surface
    # ------------------------------------------------------------------

    async def start_call(self, remote_id: str):
        """Call ``remote_id``: acquire media, create an offer and send it.

        Returns once the call-request is sent; the call then waits in
        ``OFFERING`` for the remote answer.

        Raises:
            ConcurrentCallRejected: this endpoint already has a call.
            MediaAccessError: local media could not be acquired.
            NegotiationError: the offer could not be created or applied.
        """
        self._guard(CallEvent.START)
        async with self._lock:
            self._guard(CallEvent.START)
            session = CallSession(self.user_id, remote_id, CallRole.CALLER)
            self._session = session
            self._advance(session, CallEvent.START)
            try:
                await self._place_call(session)
            except SignalingError as e:
                if not self._is_current(session):
                    logging.info(f"[{self.user_id}] Call to {remote_id} was ended while starting: {e}")
                    return
                logging.error(f"[{self.user_id}] Error starting call to {remote_id}: {e}")
                await self._teardown(session, notify_remote=True)
                raise

    async def accept_call(self):
        """Answer the ringing call.

        Raises:
            ConcurrentCallRejected: the endpoint is busy with another call.
            InvalidTransition: nothing is ringing.
            MediaAccessError / NegotiationError: answering failed; the caller
                is sent an ``end``.
        """
        self._guard(CallEvent.ACCEPT)
        async with self._lock:
            self._guard(CallEvent.ACCEPT)
            session = self._session
            caller_id = session.remote_id
            self._advance(session, CallEvent.ACCEPT)
            try:
                await self._answer_call(session)
            except SignalingError as e:
                if not self._is_current(session):
                    logging.info(f"[{self.user_id}] Call from {caller_id} was ended while answering: {e}")
                    return
                logging.error(f"[{self.user_id}] Error accepting call: {e}")
                await self._teardown(session, notify_remote=True)
                raise

    async def reject_call(self) -> bool:
        async with self._lock:
            session = self._session
            if session is None or session.state is not CallState.RINGING:
                logging.warning(f"[{self.user_id}] No incoming call to reject")
                return False
            remote_id = session.remote_id
            self._advance(session, CallEvent.REJECT)
            self._session = None
            await self._send_to(remote_id, EnvelopeType.REJECT)
            return True

    async def end_call(self):
        """Hang up. Safe to call in any state; a no-op when already idle."""
        session = self._session
        if session is None or session.state not in ACTIVE_STATES:
            return
        await self._teardown(session, notify_remote=True)

    def toggle_video(self) -> bool:
        return self._toggle("video")

    def toggle_audio(self) -> bool:
        return self._toggle("audio")

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------

    async def handle_envelope(self, envelope: SignalingEnvelope):
        if envelope.to_user != self.user_id:
            logging.warning(f"[{self.user_id}] Ignoring {envelope.type.value} addressed to {envelope.to_user}")
            return

        if envelope.type in (EnvelopeType.END, EnvelopeType.REJECT):
            session = self._bound_session(envelope)
            if session is not None and session.state in ACTIVE_STATES:
                logging.info(f"[{self.user_id}] Call {envelope.type.value} by {envelope.from_user}")
                # Remote already knows, do not bounce an end back
                await self._teardown(session, notify_remote=False)
            return

        async with self._lock:
            if envelope.type is EnvelopeType.CALL_REQUEST:
                await self._on_call_request(envelope)
            elif envelope.type is EnvelopeType.CALL_RESPONSE:
                await self._on_call_response(envelope)
            elif envelope.type is EnvelopeType.ICE_CANDIDATE:
                await self._on_remote_candidate(envelope)

    async def _on_call_request(self, envelope: SignalingEnvelope):
        caller_id = envelope.from_user
        if self.state is not CallState.IDLE:
            logging.info(f"[{self.user_id}] Busy ({self.state.value}), rejecting call from {caller_id}")
            await self._send_to(caller_id, EnvelopeType.REJECT)
            return

        logging.info(f"[{self.user_id}] Incoming call from {caller_id}")
        session = CallSession(self.user_id, caller_id, CallRole.CALLEE, remote_offer=envelope.payload, announced=True)
        self._session = session
        self._advance(session, CallEvent.CALL_REQUEST)

    async def _on_call_response(self, envelope: SignalingEnvelope):
        session = self._bound_session(envelope)
        if session is None or session.state is not CallState.OFFERING:
            logging.warning(f"[{self.user_id}] Unexpected call-response from {envelope.from_user}, ignoring")
            return

        try:
            await self._negotiate("set remote answer", session.peer.set_remote_description(envelope.payload))
        except NegotiationError as e:
            if not self._is_current(session):
                return
            logging.error(f"[{self.user_id}] Error applying answer from {envelope.from_user}: {e}")
            await self._teardown(session, notify_remote=True)
            raise
        if self._is_current(session):
            self._advance(session, CallEvent.CALL_RESPONSE)
            self._connect_if_ready(session)

    async def _on_remote_candidate(self, envelope: SignalingEnvelope):
        session = self._bound_session(envelope)
        if session is None or session.state not in ACTIVE_STATES:
            logging.debug(f"[{self.user_id}] Dropping ICE candidate from {envelope.from_user}: no call")
            return
        if session.peer is None:
            logging.debug(f"[{self.user_id}] Dropping ICE candidate from {envelope.from_user}: negotiation not started")
            return
        try:
            await session.peer.add_ice_candidate(envelope.payload)
        except Exception as e:
            logging.error(f"[{self.user_id}] Error adding ICE candidate: {e}")

    # ------------------------------------------------------------------
    # Call setup steps
    # ------------------------------------------------------------------

    async def _place_call(self, session: CallSession):
        stream = await self._acquire_media()
        if not self._adopt_stream(session, stream):
            return
        self._advance(session, CallEvent.MEDIA_READY)

        peer = self._create_peer(session)
        offer = await self._negotiate("create offer", peer.create_offer())
        if not self._is_current(session):
            return
        await self._negotiate("set local offer", peer.set_local_description(offer))
        if not self._is_current(session):
            return

        session.announced = True
        await self._send_to(session.remote_id, EnvelopeType.CALL_REQUEST, offer)

    async def _answer_call(self, session: CallSession):
        stream = await self._acquire_media()
        if not self._adopt_stream(session, stream):
            return

        peer = self._create_peer(session)
        await self._negotiate("set remote offer", peer.set_remote_description(session.remote_offer))
        if not self._is_current(session):
            return
        answer = await self._negotiate("create answer", peer.create_answer())
        if not self._is_current(session):
            return
        await self._negotiate("set local answer", peer.set_local_description(answer))
        if not self._is_current(session):
            return

        await self._send_to(session.remote_id, EnvelopeType.CALL_RESPONSE, answer)
        if not self._is_current(session):
            return
        session.remote_offer = None
        self._advance(session, CallEvent.ANSWER_SENT)
        self._connect_if_ready(session)

    async def _acquire_media(self) -> MediaStream:
        try:
            return await self.media.get_user_media(self.constraints)
        except MediaAccessError:
            raise
        except Exception as e:
            raise MediaAccessError(MediaAccessReason.UNKNOWN, f"Failed to access camera/microphone: {e}") from e

    def _adopt_stream(self, session: CallSession, stream: MediaStream) -> bool:
        if not self._is_current(session):
            stopped = stop_stream(stream)
            logging.info(f"[{self.user_id}] Call ended during media acquisition, released {stopped} track(s)")
            return False
        session.local_stream = stream
        return True

    def _create_peer(self, session: CallSession) -> PeerConnection:
        try:
            peer = self.peer_factory(
                ice_servers=self.ice_servers,
                on_ice_candidate=partial(self._on_local_candidate, session),
                on_connection_state_change=partial(self._on_connection_state_change, session),
                on_track=partial(self._on_remote_track, session),
            )
        except Exception as e:
            raise NegotiationError(f"create peer connection failed: {e}") from e
        session.peer = peer
        for track in session.local_stream.get_tracks():
            peer.add_track(track, session.local_stream)
        return peer

    async def _negotiate(self, step: str, awaitable):
        try:
            return await awaitable
        except NegotiationError:
            raise
        except Exception as e:
            raise NegotiationError(f"{step} failed: {e}") from e

    # ------------------------------------------------------------------
    # Peer connection callbacks
    # ------------------------------------------------------------------

    def _on_local_candidate(self, session: CallSession, candidate: Optional[IceCandidate]):
        if candidate is None:
            logging.debug(f"[{self.user_id}] ICE gathering complete")
            return
        if self._session is not session or session.remote_id is None:
            logging.debug(f"[{self.user_id}] Discarding local ICE candidate after teardown")
            return
        self._spawn(self._send_to(session.remote_id, EnvelopeType.ICE_CANDIDATE, candidate))

    def _on_connection_state_change(self, session: CallSession, state: str):
        logging.info(f"[{self.user_id}] Connection state: {state}")
        if not self._is_current(session):
            return
        session.connection_state = state
        if state == "connected":
            self._spawn(self._mark_connected(session))
        elif state in FAILED_CONNECTION_STATES:
            logging.warning(f"[{self.user_id}] Connection {state}, ending call")
            self._spawn(self._teardown(session, notify_remote=True))

    def _on_remote_track(self, session: CallSession, stream: MediaStream):
        if self._is_current(session):
            session.remote_stream = stream

    async def _mark_connected(self, session: CallSession):
        async with self._lock:
            self._connect_if_ready(session)

    def _connect_if_ready(self, session: CallSession):
        # The peer may report connected before the answer round trip is done
        if (
            self._is_current(session)
            and session.connection_state == "connected"
            and can_transition(session.state, CallEvent.CONNECTED)
        ):
            self._advance(session, CallEvent.CONNECTED)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self, session: CallSession, notify_remote: bool):
        if not self._is_current(session):
            return
        self._advance(session, CallEvent.TEARDOWN)

        # Detach everything first so nothing is released twice
        remote_id, session.remote_id = session.remote_id, None
        peer, session.peer = session.peer, None
        stream, session.local_stream = session.local_stream, None
        session.remote_stream = None
        session.remote_offer = None

        stopped = stop_stream(stream)
        if notify_remote and session.announced and remote_id is not None:
            await self._send_to(remote_id, EnvelopeType.END)
        if peer is not None:
            try:
                await peer.close()
            except Exception as e:
                logging.error(f"[{self.user_id}] Error closing peer connection: {e}")

        self._advance(session, CallEvent.RELEASED)
        if self._session is session:
            self._session = None
        logging.info(f"[{self.user_id}] Call with {remote_id} ended, stopped {stopped} local track(s)")

    async def close(self):
        await self.end_call()
        await self.drain()

    async def drain(self):
        """Wait for scheduled callback work (candidate sends, state changes)."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _guard(self, event: CallEvent):
        state = self.state
        if can_transition(state, event):
            return
        if state is not CallState.IDLE:
            raise ConcurrentCallRejected(state, event)
        raise InvalidTransition(state, event)

    def _advance(self, session: CallSession, event: CallEvent):
        previous = session.state
        session.state = transition(previous, event)
        logging.info(f"[{self.user_id}] {previous.value} -> {session.state.value} ({event.value})")
        for listener in list(self._listeners):
            try:
                listener(session.state, session)
            except Exception as e:
                logging.error(f"[{self.user_id}] Call state listener failed: {e}")

    def _is_current(self, session: CallSession) -> bool:
        return self._session is session and session.state in ACTIVE_STATES

    def _bound_session(self, envelope: SignalingEnvelope) -> Optional[CallSession]:
        session = self._session
        if session is None or session.remote_id != envelope.from_user:
            logging.debug(f"[{self.user_id}] Ignoring {envelope.type.value} from unbound {envelope.from_user}")
            return None
        return session

    async def _send_to(self, remote_id: str, envelope_type: EnvelopeType, payload=None):
        envelope = SignalingEnvelope(type=envelope_type, from_user=self.user_id, to_user=remote_id, payload=payload)
        try:
            await self.channel.send(envelope)
        except Exception as e:
            logging.error(f"[{self.user_id}] Failed to send {envelope_type.value} to {remote_id}: {e}")

    def _toggle(self, kind: str) -> bool:
        tracks = tracks_of_kind(self.local_stream, kind)
        if not tracks:
            return False
        track = tracks[0]
        track.enabled = not track.enabled
        return track.enabled

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.error(f"[{self.user_id}] Background call task failed: {task.exception()}")
