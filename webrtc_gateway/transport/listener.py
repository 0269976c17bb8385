"""
Connection Listener for the WebRTC Gateway.

One thread accepts sockets and, for each, synchronously reads the HTTP
request and either serves the bootstrap page or performs the channel
upgrade. Upgraded clients get their own reader thread that feeds inbound
frames to the Signaling Router.
"""

import enum
import socket
import threading
from typing import List, Optional

import structlog

from webrtc_gateway.errors import (
    CapacityExceeded,
    GatewayError,
    IncompleteFrame,
    MediaEngineError,
    ProtocolError,
    SetupError,
    TransportError,
)
from webrtc_gateway.transport.frame_codec import (
    OPCODE_BINARY,
    OPCODE_CLOSE,
    OPCODE_CONTINUATION,
    OPCODE_PING,
    OPCODE_PONG,
    OPCODE_TEXT,
    decode_frame,
    encode_frame,
)
from webrtc_gateway.transport.http import (
    build_error_response,
    build_page_response,
    build_upgrade_response,
    parse_request,
)
from webrtc_gateway.transport.registry import ClientConnection, ClientRegistry

READER_JOIN_TIMEOUT = 2.0


class ConnectionState(enum.Enum):
    ACCEPTED = "accepted"
    STATIC_SERVE = "static-serve"
    UPGRADING = "upgrading"
    REGISTERED = "registered"
    CLOSED = "closed"


class ConnectionListener:
    """
    Accept loop plus per-client readers.

    Args:
        server_config: ServerConfig section of the gateway configuration
        registry: Client registry upgraded connections are added to
        router: Signaling router that receives inbound payloads
        observer: Host-application observer (connect/disconnect/error)
        page: Body served to plain HTTP requests
    """

    def __init__(self, server_config, registry: ClientRegistry, router, observer, page: bytes):
        self.config = server_config
        self.registry = registry
        self.router = router
        self.observer = observer
        self.page = page
        self.logger = structlog.get_logger(__name__)

        self._socket: Optional[socket.socket] = None
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._readers: List[threading.Thread] = []
        self._readers_lock = threading.Lock()
        self.port = None

    def bind(self):
        """
        Create the listening socket.

        Raises:
            SetupError: if the socket cannot be created, bound or put in listen mode
        """
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        except OSError as e:
            raise SetupError(f"Could not create server socket: {e}") from e

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.config.bind_address, self.config.port))
            sock.listen(self.config.backlog)
            # Bounded accept wait so the loop notices the stop flag
            sock.settimeout(self.config.accept_poll_interval)
        except OSError as e:
            sock.close()
            raise SetupError(
                f"Could not listen on {self.config.bind_address}:{self.config.port}: {e}") from e

        self._socket = sock
        self.port = sock.getsockname()[1]
        self.logger.info("Listening", address=self.config.bind_address, port=self.port)

    def start(self):
        if self._socket is None:
            self.bind()
        self._stopped.clear()
        self._thread = threading.Thread(target=self._accept_loop, name="webrtc-gateway")
        self._thread.start()

    def stop(self):
        """Set the stop flag and close the listening socket."""
        self._stopped.set()
        sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)
        with self._readers_lock:
            readers = list(self._readers)
        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _accept_loop(self):
        self.logger.debug("Accept loop started", port=self.port)

        while not self._stopped.is_set():
            sock = self._socket
            if sock is None:
                break
            try:
                conn, address = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._stopped.is_set():
                    break
                self.logger.warning("Failed to accept client connection", error=str(e))
                self.observer.on_error(f"Accept failed: {e}")
                continue

            state = ConnectionState.CLOSED
            try:
                state = self.handle_connection(conn, address)
            except GatewayError as e:
                self.logger.warning("Connection rejected", peer=address, error=str(e))
                self.observer.on_error(f"Connection from {address[0]}:{address[1]} failed: {e}")
            except Exception as e:
                self.logger.error("Error handling connection", peer=address, error=str(e))
                self.observer.on_error(f"Connection from {address[0]}:{address[1]} failed: {e}")
            finally:
                if state is not ConnectionState.REGISTERED:
                    conn.close()

        self.logger.debug("Accept loop stopped")

    def handle_connection(self, conn: socket.socket, address) -> ConnectionState:
        """
        Classify one accepted connection and serve or upgrade it.

        Returns:
            REGISTERED if the connection now belongs to the registry,
            CLOSED if the caller should close it

        Raises:
            TransportError, ProtocolError, CapacityExceeded
        """
        self.logger.debug("Connection accepted", peer=address, state=ConnectionState.ACCEPTED.value)
        conn.settimeout(self.config.handshake_timeout)

        try:
            raw = conn.recv(self.config.request_buffer_size)
        except OSError as e:
            raise TransportError(f"Reading request failed: {e}") from e
        if not raw:
            raise TransportError("Connection closed before a request was read")

        request = parse_request(raw)
        state = ConnectionState.UPGRADING if request.is_upgrade else ConnectionState.STATIC_SERVE
        self.logger.debug("Request classified", peer=address, state=state.value)

        if state is ConnectionState.UPGRADING:
            return self._upgrade(conn, address, request)
        return self._serve_static(conn, request)

    def _serve_static(self, conn, request) -> ConnectionState:
        self.logger.debug("Serving page", method=request.method, path=request.path)
        _send_all(conn, build_page_response(self.page))
        return ConnectionState.CLOSED

    def _upgrade(self, conn, address, request) -> ConnectionState:
        key = request.header("sec-websocket-key")
        if not key:
            _send_quietly(conn, build_error_response(400, "Bad Request"))
            raise ProtocolError("Upgrade request without Sec-WebSocket-Key")

        # Only this thread adds clients, so the check cannot go stale
        if len(self.registry) >= self.registry.capacity:
            _send_quietly(conn, build_error_response(503, "Service Unavailable"))
            raise CapacityExceeded(
                f"Rejecting {address[0]}:{address[1]}, {self.registry.capacity} clients connected")

        _send_all(conn, build_upgrade_response(key))

        conn.settimeout(None)
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        index = self.registry.add(conn, address)
        client = self.registry.lookup(index)

        reader = threading.Thread(
            target=self._read_loop,
            args=(client,),
            name=f"webrtc-client-{index}",
            daemon=True,
        )
        with self._readers_lock:
            self._readers = [r for r in self._readers if r.is_alive()]
            self._readers.append(reader)
        reader.start()

        self.observer.on_client_connected(index)
        return ConnectionState.REGISTERED

    def _read_loop(self, client: ClientConnection):
        index = client.index
        log = self.logger.bind(client=index)
        transport = client.transport
        buffer = bytearray()

        try:
            while True:
                try:
                    data = transport.recv(self.config.receive_buffer_size)
                except OSError as e:
                    raise TransportError(f"Read failed: {e}") from e
                if not data:
                    raise TransportError("Peer closed the connection")

                buffer.extend(data)
                if len(buffer) > self.config.max_message_size:
                    raise ProtocolError(
                        f"Message exceeds {self.config.max_message_size} bytes")

                while buffer:
                    try:
                        frame = decode_frame(buffer)
                    except IncompleteFrame:
                        break
                    del buffer[:frame.size]
                    if not self._handle_frame(client, frame):
                        self.registry.remove(index, client)
                        return

        except TransportError as e:
            if client.connected:
                log.info("Connection lost", reason=str(e))
                self.registry.remove(index, client)
        except (ProtocolError, MediaEngineError) as e:
            if client.connected:
                log.warning("Closing client", error=str(e))
                self.observer.on_error(f"Client {index}: {e}")
                self.registry.remove(index, client)
        except Exception as e:
            if client.connected:
                log.error("Unexpected error on client connection", error=str(e))
                self.observer.on_error(f"Client {index}: {e}")
                self.registry.remove(index, client)

    def _handle_frame(self, client: ClientConnection, frame) -> bool:
        """Act on one inbound frame. Returns False when the client closed the channel."""
        if not frame.fin or frame.opcode == OPCODE_CONTINUATION:
            raise ProtocolError("Fragmented messages are not supported")

        if frame.opcode in (OPCODE_TEXT, OPCODE_BINARY):
            self.logger.debug("Message received", client=client.index, size=frame.length)
            self.router.handle_payload(client.index, frame.payload)
        elif frame.opcode == OPCODE_CLOSE:
            self.logger.debug("Close frame received", client=client.index)
            try:
                client.send(encode_frame(frame.payload[:2], OPCODE_CLOSE))
            except TransportError:
                pass
            return False
        elif frame.opcode == OPCODE_PING:
            client.send(encode_frame(frame.payload, OPCODE_PONG))
        elif frame.opcode == OPCODE_PONG:
            pass
        else:
            raise ProtocolError(f"Unknown opcode 0x{frame.opcode:x}")
        return True


def _send_all(conn: socket.socket, data: bytes):
    try:
        conn.sendall(data)
    except OSError as e:
        raise TransportError(f"Write failed: {e}") from e


def _send_quietly(conn: socket.socket, data: bytes):
    """Best-effort write of a rejection response; the connection is closed next."""
    try:
        conn.sendall(data)
    except OSError:
        pass
