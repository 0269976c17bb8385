"""
Test Configuration

Shared fixtures for the WebRTC Gateway tests: a fake media engine, a
recording observer, and a minimal browser-side channel client.
"""

import json
import socket
import threading
import time

import pytest

from webrtc_gateway.config import GatewayConfig
from webrtc_gateway.errors import IncompleteFrame, MediaEngineError
from webrtc_gateway.gateway import GatewayObserver, WebRTCGateway
from webrtc_gateway.media.engine import MediaEngine, MediaSession
from webrtc_gateway.signaling.messages import SessionDescription
from webrtc_gateway.transport.frame_codec import OPCODE_TEXT, decode_frame, encode_masked_frame

CLIENT_KEY = "dGhlIHNhbXBsZSBub25jZQ=="
CLIENT_MASK = b"\x37\xfa\x21\x3d"
TEST_PAGE = b"<html><body>gateway test page</body></html>"


def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll *predicate* until it is truthy or *timeout* expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


class FakeMediaEngine(MediaEngine):
    """Media engine double that records every call."""

    def __init__(self, codecs=("video/h264",)):
        self.codecs = set(codecs)
        self.sessions = {}
        self.calls = []
        self.frames = []
        self.closed_sessions = []
        self.fail_push_for = set()
        self.fail_stream_open = False
        self.shut_down = False
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def call_names(self):
        with self._lock:
            return [call[0] for call in self.calls]

    def supports_format(self, sample_format):
        return sample_format.codec in self.codecs

    def open_stream(self, sample_format):
        self._record("open_stream", sample_format)
        if self.fail_stream_open:
            raise MediaEngineError("stream refused")

    def close_stream(self):
        self._record("close_stream")

    def create_session(self, client_index, emit):
        self._record("create_session", client_index)
        session = MediaSession(client_index)
        session.emit = emit
        with self._lock:
            self.sessions[client_index] = session
        return session

    def create_offer(self, session):
        self._record("create_offer", session.client_index)
        return SessionDescription("offer", f"v=0\r\no=- {session.client_index} 0 IN IP4 127.0.0.1\r\n")

    def set_remote_description(self, session, description):
        self._record("set_remote_description", session.client_index, description.sdp)
        if "reject" in description.sdp:
            raise MediaEngineError("answer rejected")

    def add_ice_candidate(self, session, candidate):
        self._record("add_ice_candidate", session.client_index, candidate.candidate)

    def push_frame(self, session, frame):
        if session.client_index in self.fail_push_for:
            raise MediaEngineError(f"push failed for {session.client_index}")
        with self._lock:
            self.frames.append((session.client_index, frame.pts, bytes(frame.data)))

    def close_session(self, session):
        self._record("close_session", session.client_index)
        with self._lock:
            self.closed_sessions.append(session.client_index)
            if self.sessions.get(session.client_index) is session:
                del self.sessions[session.client_index]

    def shutdown(self):
        self.shut_down = True


class RecordingObserver(GatewayObserver):
    """Observer that keeps every notification for later assertions."""

    def __init__(self):
        self.connected = []
        self.disconnected = []
        self.errors = []

    def on_client_connected(self, index):
        self.connected.append(index)

    def on_client_disconnected(self, index):
        self.disconnected.append(index)

    def on_error(self, message):
        self.errors.append(message)


class HttpResponse:
    def __init__(self, status, headers, body):
        self.status = status
        self.headers = headers
        self.body = body


class BrowserClient:
    """Speaks the browser side of the HTTP bootstrap and the message channel."""

    def __init__(self, port, timeout=3.0):
        self.sock = socket.create_connection(("127.0.0.1", port), timeout=timeout)
        self.buffer = b""

    def request(self, raw: bytes) -> HttpResponse:
        self.sock.sendall(raw)
        return self.read_response()

    def get_page(self) -> HttpResponse:
        return self.request(b"GET / HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n")

    def upgrade(self, key=CLIENT_KEY) -> HttpResponse:
        lines = [
            "GET /ws HTTP/1.1",
            "Host: 127.0.0.1",
            "Upgrade: websocket",
            "Connection: Upgrade",
        ]
        if key is not None:
            lines.append(f"Sec-WebSocket-Key: {key}")
        lines.append("Sec-WebSocket-Version: 13")
        return self.request(("\r\n".join(lines) + "\r\n\r\n").encode("ascii"))

    def read_response(self) -> HttpResponse:
        while b"\r\n\r\n" not in self.buffer:
            data = self.sock.recv(4096)
            if not data:
                raise ConnectionError("Connection closed before response headers")
            self.buffer += data

        head, self.buffer = self.buffer.split(b"\r\n\r\n", 1)
        lines = head.decode("iso-8859-1").split("\r\n")
        status = int(lines[0].split()[1])
        headers = {}
        for line in lines[1:]:
            name, value = line.split(":", 1)
            headers[name.strip().lower()] = value.strip()

        length = int(headers.get("content-length", 0))
        while len(self.buffer) < length:
            data = self.sock.recv(4096)
            if not data:
                break
            self.buffer += data
        body, self.buffer = self.buffer[:length], self.buffer[length:]
        return HttpResponse(status, headers, body)

    def send_frame(self, payload, opcode=OPCODE_TEXT):
        self.sock.sendall(encode_masked_frame(payload, CLIENT_MASK, opcode))

    def send_json(self, message):
        self.send_frame(json.dumps(message))

    def recv_frame(self):
        while True:
            try:
                frame = decode_frame(self.buffer)
            except IncompleteFrame:
                data = self.sock.recv(65536)
                if not data:
                    raise ConnectionError("Connection closed by gateway")
                self.buffer += data
                continue
            self.buffer = self.buffer[frame.size:]
            return frame

    def recv_json(self):
        return json.loads(self.recv_frame().payload.decode("utf-8"))

    def at_eof(self) -> bool:
        """True once the gateway has closed the connection."""
        try:
            return self.sock.recv(4096) == b""
        except ConnectionResetError:
            return True

    def close(self):
        self.sock.close()


@pytest.fixture
def fake_engine():
    return FakeMediaEngine()


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def gateway_config():
    """Ephemeral-port configuration with short timeouts."""
    config = GatewayConfig()
    config.server.port = 0
    config.server.accept_poll_interval = 0.05
    config.server.handshake_timeout = 2.0
    return config


@pytest.fixture
def gateway(gateway_config, fake_engine, observer):
    gateway = WebRTCGateway(gateway_config, fake_engine, observer=observer, page=TEST_PAGE)
    gateway.start()
    yield gateway
    gateway.stop()
    gateway.join(5.0)


@pytest.fixture
def connect(gateway):
    """Factory opening BrowserClient connections to the running gateway."""
    clients = []

    def _connect():
        client = BrowserClient(gateway.port)
        clients.append(client)
        return client

    yield _connect
    for client in clients:
        client.close()
