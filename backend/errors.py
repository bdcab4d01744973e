"""
Signaling Errors

Exceptions raised by the presence registry, the relay and the call session
coordinator.
"""

from enum import Enum


class SignalingError(Exception):
    """Base exception for signaling errors"""
    pass


class MediaAccessReason(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NO_DEVICE = "no-device"
    INSECURE_CONTEXT = "insecure-context"
    UNKNOWN = "unknown"


class MediaAccessError(SignalingError):
    """Raised when local camera/microphone cannot be acquired"""

    def __init__(self, reason: MediaAccessReason, message: str = ""):
        self.reason = MediaAccessReason(reason)
        super().__init__(message or f"Media access failed: {self.reason.value}")


class NegotiationError(SignalingError):
    """Raised when creating or applying a session description fails"""
    pass


class TransportUnavailable(SignalingError):
    """Raised when the recipient has no registered connection"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not connected")


class InvalidTransition(SignalingError):
    """Raised when an event is not allowed in the current call state"""

    def __init__(self, state, event):
        self.state = state
        self.event = event
        super().__init__(f"Event {event.value} not allowed in state {state.value}")


class ConcurrentCallRejected(InvalidTransition):
    """Raised when a call is started or accepted while the endpoint is busy"""
    pass
