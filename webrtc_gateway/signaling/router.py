"""
Signaling Router for the WebRTC Gateway.

Turns channel payloads from a registered client into calls on the external
media engine, and relays whatever the engine wants to say back to that
client as text frames.
"""

from typing import Union

import structlog

from webrtc_gateway.errors import MediaEngineError, TransportError
from webrtc_gateway.media.engine import MediaEngine, MediaSession
from webrtc_gateway.signaling.messages import (
    ConnectivityCandidate,
    RequestSession,
    SessionDescription,
    SignalingMessage,
    parse_message,
    serialize_message,
)
from webrtc_gateway.transport.frame_codec import encode_frame
from webrtc_gateway.transport.registry import ClientRegistry


class SignalingRouter:
    """Dispatches typed signaling events per client."""

    def __init__(self, registry: ClientRegistry, engine: MediaEngine):
        self.registry = registry
        self.engine = engine
        self.logger = structlog.get_logger(__name__)

    def handle_payload(self, index: int, payload: Union[bytes, str]):
        """
        Decode and dispatch one inbound message from client *index*.

        Raises:
            ProtocolError: if the payload is not a known signaling message
            MediaEngineError: if the engine fails for this client
        """
        message = parse_message(payload)
        log = self.logger.bind(client=index)

        if isinstance(message, RequestSession):
            log.debug("Session requested")
            self._start_session(index)
        elif isinstance(message, SessionDescription):
            log.debug("Remote description received", kind=message.kind)
            session = self._require_session(index)
            self.engine.set_remote_description(session, message)
            session.established = True
            log.info("Session established")
        elif isinstance(message, ConnectivityCandidate):
            log.debug("Remote candidate received", mline=message.sdp_mline_index)
            session = self._require_session(index)
            self.engine.add_ice_candidate(session, message)

    def send_message(self, index: int, message: SignalingMessage) -> bool:
        """
        Encode *message* and write it to client *index*.

        A failed write removes the client. Returns True if the message was sent.
        """
        client = self.registry.lookup(index)
        if client is None or not client.connected:
            self.logger.debug("Dropping message for absent client", client=index,
                              type=type(message).__name__)
            return False

        frame = encode_frame(serialize_message(message))
        try:
            client.send(frame)
        except TransportError as e:
            self.logger.warning("Signaling write failed", client=index, error=str(e))
            self.registry.remove(index, client)
            return False
        return True

    def _start_session(self, index: int):
        client = self.registry.lookup(index)
        if client is None or not client.connected:
            return

        previous = client.session
        if previous is not None:
            # Browser restarted negotiation
            client.detach_session()
            self.engine.close_session(previous)

        session = self.engine.create_session(
            index, lambda message: self.send_message(index, message))
        client.attach_session(session)

        if not client.connected:
            # Removed while the session was being built; the disconnect
            # callback already ran without it
            client.detach_session()
            self.logger.debug("Client gone before session was attached", client=index)
            self.engine.close_session(session)
            return

        offer = self.engine.create_offer(session)
        self.send_message(index, offer)

    def _require_session(self, index: int) -> MediaSession:
        client = self.registry.lookup(index)
        session = client.session if client is not None else None
        if session is None:
            raise MediaEngineError(f"Client {index} has no session; request-offer first")
        return session
