"""
HTTP request classification and response building for the Connection Listener.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

from webrtc_gateway.errors import ProtocolError

# RFC 6455 magic GUID appended to the client key
WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

STATIC_PAGE_PATH = Path(__file__).resolve().parent.parent / "static" / "index.html"

CORS_HEADERS = (
    "Access-Control-Allow-Origin: *\r\n"
    "Access-Control-Allow-Methods: GET, POST, OPTIONS\r\n"
    "Access-Control-Allow-Headers: Content-Type\r\n"
)


@dataclass
class HttpRequest:
    """The request line and headers of an inbound HTTP request."""

    method: str
    path: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)

    def header(self, name: str, default=None):
        return self.headers.get(name.lower(), default)

    @property
    def is_upgrade(self) -> bool:
        """True when the request asks to switch to the WebSocket protocol."""
        return self.header("upgrade", "").strip().lower() == "websocket"


def parse_request(raw: bytes) -> HttpRequest:
    """
    Parse the request line and headers out of *raw*.

    Raises:
        ProtocolError: if there is no parseable request line
    """
    text = raw.decode("iso-8859-1")
    head = text.split("\r\n\r\n", 1)[0]
    lines = head.split("\r\n")

    parts = lines[0].split()
    if len(parts) != 3:
        raise ProtocolError(f"Malformed request line: {lines[0]!r}")
    method, path, version = parts

    headers = {}
    for line in lines[1:]:
        if ":" not in line:
            continue
        name, value = line.split(":", 1)
        headers[name.strip().lower()] = value.strip()

    return HttpRequest(method=method, path=path, version=version, headers=headers)


def make_accept_key(client_key: str) -> str:
    """Return the ``Sec-WebSocket-Accept`` value for *client_key*."""
    digest = hashlib.sha1((client_key.strip() + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_upgrade_response(client_key: str) -> bytes:
    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {make_accept_key(client_key)}\r\n"
        "\r\n"
    ).encode("ascii")


def build_page_response(body: bytes) -> bytes:
    """200 response carrying *body* with an exact Content-Length."""
    head = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html\r\n"
        f"{CORS_HEADERS}"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


def build_error_response(status: int, reason: str) -> bytes:
    body = f"{status} {reason}\n".encode("ascii")
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        "Content-Type: text/plain\r\n"
        f"{CORS_HEADERS}"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


def load_static_page(path: Path = STATIC_PAGE_PATH) -> bytes:
    """Read the bootstrap page served to plain GET requests."""
    with open(path, "rb") as f:
        return f.read()
