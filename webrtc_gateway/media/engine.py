"""
Media engine contract.

The gateway routes signaling and frames but never negotiates or transports
media itself. Whatever does (GStreamer webrtcbin, a test double, ...) is
plugged in through this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Union

from webrtc_gateway.signaling.messages import (
    ConnectivityCandidate,
    SessionDescription,
    SignalingMessage,
)


@dataclass
class SampleFormat:
    """Format of the frames the upstream pipeline is going to push."""

    codec: str  # "video/h264" or "video/x-raw"
    width: Optional[int] = None
    height: Optional[int] = None
    framerate: Optional[int] = None

    def __str__(self) -> str:
        if self.width and self.height:
            return f"{self.codec} {self.width}x{self.height}@{self.framerate or '?'}fps"
        return self.codec


@dataclass
class PushedFrame:
    """
    A media sample handed over by the upstream pipeline.

    ``data`` is borrowed: it is only valid for the duration of the push call.
    """

    pts: int  # presentation timestamp, nanoseconds
    data: Union[bytes, bytearray, memoryview]
    keyframe: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


class MediaSession:
    """Engine-owned per-client session handle."""

    def __init__(self, client_index: int):
        self.client_index = client_index
        # Set by the router once the remote description is applied
        self.established = False


# emit(message) relays an engine-originated message back to the client
EmitCallback = Callable[[SignalingMessage], None]


class MediaEngine(ABC):
    """External real-time media engine as seen by the gateway."""

    @abstractmethod
    def supports_format(self, sample_format: SampleFormat) -> bool:
        """Whether frames of *sample_format* can be forwarded."""

    @abstractmethod
    def open_stream(self, sample_format: SampleFormat):
        """Called once by the frame sink before any frame is pushed."""

    @abstractmethod
    def close_stream(self):
        """Called once by the frame sink after the last frame."""

    @abstractmethod
    def create_session(self, client_index: int, emit: EmitCallback) -> MediaSession:
        """Create the session context for one client. The engine keeps ownership."""

    @abstractmethod
    def create_offer(self, session: MediaSession) -> SessionDescription:
        """Produce the initial session description for *session*."""

    @abstractmethod
    def set_remote_description(self, session: MediaSession, description: SessionDescription):
        """Complete negotiation with the browser's answer."""

    @abstractmethod
    def add_ice_candidate(self, session: MediaSession, candidate: ConnectivityCandidate):
        """Add a remote connectivity candidate."""

    @abstractmethod
    def push_frame(self, session: MediaSession, frame: PushedFrame):
        """Forward one frame to *session*. Must copy anything it keeps."""

    @abstractmethod
    def close_session(self, session: MediaSession):
        """Tear the session down. Called once per session."""

    def shutdown(self):
        """Release engine-wide resources."""
