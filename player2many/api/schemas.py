"""
Pydantic schemas mirroring the signaling WebSocket contract.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, validator

from ..backend.base import ICECandidate


class MessageType(str, Enum):
    CLIENT_START_PUBLISH = "CLIENT_START_PUBLISH"
    CLIENT_SDP_OFFER = "CLIENT_SDP_OFFER"
    CLIENT_ICE_CANDIDATE = "CLIENT_ICE_CANDIDATE"
    CLIENT_DEBUG_DOT = "CLIENT_DEBUG_DOT"
    SERVER_SDP_ANSWER = "SERVER_SDP_ANSWER"
    SERVER_ICE_CANDIDATE = "SERVER_ICE_CANDIDATE"
    SERVER_ERROR = "SERVER_ERROR"


class SignalingMessage(BaseModel):
    type: MessageType
    payload: Any = None


class IceCandidateModel(BaseModel):
    candidate: str
    sdp_mid: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMid", "sdp_mid"),
        serialization_alias="sdpMid",
    )
    sdp_mline_index: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("sdpMLineIndex", "sdp_mline_index"),
        serialization_alias="sdpMLineIndex",
    )
    model_config = ConfigDict(populate_by_name=True)

    @validator("sdp_mline_index")
    def _validate_mline_index(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("sdpMLineIndex must be non-negative")
        return value

    def to_candidate(self) -> ICECandidate:
        return ICECandidate(
            candidate=self.candidate,
            sdp_mid=self.sdp_mid,
            sdp_mline_index=self.sdp_mline_index,
        )


class SdpOfferModel(BaseModel):
    sdp: str

    @validator("sdp", pre=True)
    def _require_sdp(cls, value: object) -> str:
        result = str(value or "").strip()
        if not result:
            raise ValueError("offer SDP is required")
        return str(value)

    @classmethod
    def from_payload(cls, payload: Any) -> "SdpOfferModel":
        if isinstance(payload, dict):
            return cls(sdp=payload.get("sdp"))
        return cls(sdp=payload)


class ErrorPayload(BaseModel):
    code: str
    message: str


class HealthModel(BaseModel):
    status: str = "ok"
    publishing: bool = False
    sessions: int = 0
