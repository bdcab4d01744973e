from enum import Enum
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EnvelopeType(str, Enum):
    CALL_REQUEST = "call-request"
    CALL_RESPONSE = "call-response"
    ICE_CANDIDATE = "ice-candidate"
    END = "end"
    REJECT = "reject"


class SessionDescription(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    # Browser extras such as usernameFragment are kept for the relay
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    candidate: str
    sdp_mid: Optional[str] = Field(None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(None, alias="sdpMLineIndex")


class SignalingEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow", coerce_numbers_to_str=True)

    type: EnvelopeType
    from_user: str = Field(..., alias="from")
    to_user: str = Field(..., alias="to")
    payload: Optional[Union[SessionDescription, IceCandidate]] = None

    @model_validator(mode="after")
    def check_payload(self):
        if self.type in (EnvelopeType.CALL_REQUEST, EnvelopeType.CALL_RESPONSE):
            if not isinstance(self.payload, SessionDescription):
                raise ValueError(f"{self.type.value} requires a session description")
        elif self.type == EnvelopeType.ICE_CANDIDATE:
            if not isinstance(self.payload, IceCandidate):
                raise ValueError("ice-candidate requires a candidate")
        elif self.payload is not None:
            raise ValueError(f"{self.type.value} carries no payload")
        return self

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class PresenceEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["online", "offline"]
    user_id: str = Field(..., alias="userId")

    @classmethod
    def for_user(cls, user_id: str, online: bool) -> "PresenceEvent":
        return cls(type="online" if online else "offline", user_id=user_id)


class RegisterUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    type: Literal["register-user"]
    user_id: str = Field(..., alias="userId", min_length=1)


class TypingNotice(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: Literal["typing", "stop-typing"]
    to: str


class ChatMessage(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    type: Literal["send-message"]
    to: str
    message: Dict[str, Any]
