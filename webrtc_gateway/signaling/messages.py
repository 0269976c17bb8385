"""
Signaling message models.

Browser and gateway exchange small JSON objects tagged by ``type``. These
dataclasses are the typed form the router and the media engine work with.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from webrtc_gateway.errors import ProtocolError

TYPE_REQUEST_OFFER = "request-offer"
TYPE_OFFER = "offer"
TYPE_ANSWER = "answer"
TYPE_ICE_CANDIDATE = "ice-candidate"


@dataclass
class RequestSession:
    """The browser asks the gateway to start a media session."""

    def to_message(self) -> Dict[str, Any]:
        return {"type": TYPE_REQUEST_OFFER}


@dataclass
class SessionDescription:
    """An SDP offer or answer."""

    kind: str  # "offer" or "answer"
    sdp: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any], kind: str) -> "SessionDescription":
        sdp = data.get("sdp")
        if not isinstance(sdp, str) or not sdp:
            raise ProtocolError(f"{kind} message carries no SDP")
        inner_kind = data.get("type", kind)
        if inner_kind != kind:
            raise ProtocolError(f"{kind} message carries a description of type {inner_kind!r}")
        return cls(kind=kind, sdp=sdp)

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            self.kind: {"type": self.kind, "sdp": self.sdp},
        }


@dataclass
class ConnectivityCandidate:
    """One ICE candidate line with the media section it belongs to."""

    candidate: str
    sdp_mline_index: int = 0
    sdp_mid: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectivityCandidate":
        candidate = data.get("candidate")
        if not isinstance(candidate, str):
            raise ProtocolError("ice-candidate message carries no candidate string")
        mline_index = data.get("sdpMLineIndex")
        if mline_index is None:
            mline_index = 0
        if not isinstance(mline_index, int):
            raise ProtocolError(f"Invalid sdpMLineIndex: {mline_index!r}")
        return cls(candidate=candidate, sdp_mline_index=mline_index, sdp_mid=data.get("sdpMid"))

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": TYPE_ICE_CANDIDATE,
            "candidate": {
                "candidate": self.candidate,
                "sdpMid": self.sdp_mid,
                "sdpMLineIndex": self.sdp_mline_index,
            },
        }


SignalingMessage = Union[RequestSession, SessionDescription, ConnectivityCandidate]


def parse_message(payload: Union[bytes, str]) -> SignalingMessage:
    """
    Decode a channel payload into a typed signaling message.

    Raises:
        ProtocolError: on invalid JSON, a missing field or an unknown tag
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Signaling payload is not UTF-8: {e}") from e
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Signaling payload is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Signaling payload is not a JSON object")

    msg_type = data.get("type")
    if msg_type == TYPE_REQUEST_OFFER:
        return RequestSession()
    elif msg_type == TYPE_ANSWER:
        answer = data.get("answer")
        if not isinstance(answer, dict):
            raise ProtocolError("answer message carries no description")
        return SessionDescription.from_dict(answer, TYPE_ANSWER)
    elif msg_type == TYPE_ICE_CANDIDATE:
        candidate = data.get("candidate")
        if not isinstance(candidate, dict):
            raise ProtocolError("ice-candidate message carries no candidate")
        return ConnectivityCandidate.from_dict(candidate)
    else:
        raise ProtocolError(f"Unrecognised signaling message type: {msg_type!r}")


def serialize_message(message: SignalingMessage) -> str:
    return json.dumps(message.to_message())
