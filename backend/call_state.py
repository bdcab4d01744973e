from enum import Enum
from typing import Dict, Tuple

from errors import InvalidTransition


class CallState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    OFFERING = "offering"
    RINGING = "ringing"
    ANSWERING = "answering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDING = "ending"


class CallEvent(str, Enum):
    START = "start"
    MEDIA_READY = "media-ready"
    CALL_REQUEST = "call-request"
    CALL_RESPONSE = "call-response"
    ACCEPT = "accept"
    ANSWER_SENT = "answer-sent"
    REJECT = "reject"
    CONNECTED = "connected"
    TEARDOWN = "teardown"
    RELEASED = "released"


class CallRole(str, Enum):
    CALLER = "caller"
    CALLEE = "callee"


# States holding a live session that teardown can act on
ACTIVE_STATES = frozenset(
    {
        CallState.ACQUIRING,
        CallState.OFFERING,
        CallState.RINGING,
        CallState.ANSWERING,
        CallState.CONNECTING,
        CallState.CONNECTED,
    }
)

TRANSITIONS: Dict[Tuple[CallState, CallEvent], CallState] = {
    (CallState.IDLE, CallEvent.START): CallState.ACQUIRING,
    (CallState.IDLE, CallEvent.CALL_REQUEST): CallState.RINGING,
    (CallState.ACQUIRING, CallEvent.MEDIA_READY): CallState.OFFERING,
    (CallState.OFFERING, CallEvent.CALL_RESPONSE): CallState.CONNECTING,
    (CallState.RINGING, CallEvent.ACCEPT): CallState.ANSWERING,
    (CallState.RINGING, CallEvent.REJECT): CallState.IDLE,
    (CallState.ANSWERING, CallEvent.ANSWER_SENT): CallState.CONNECTING,
    (CallState.CONNECTING, CallEvent.CONNECTED): CallState.CONNECTED,
    (CallState.ENDING, CallEvent.RELEASED): CallState.IDLE,
}
TRANSITIONS.update({(state, CallEvent.TEARDOWN): CallState.ENDING for state in ACTIVE_STATES})


def transition(state: CallState, event: CallEvent) -> CallState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None


def can_transition(state: CallState, event: CallEvent) -> bool:
    return (state, event) in TRANSITIONS
