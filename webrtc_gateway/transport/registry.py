"""
Client Registry for the WebRTC Gateway.

Fixed-capacity table of browser connections. Every mutation and every
fan-out walk happens under one lock; the disconnect notification is
delivered after the lock is released.
"""

import enum
import socket
import threading
import weakref
from typing import Callable, List, Optional

import structlog

from webrtc_gateway.errors import CapacityExceeded, RegistryCorrupted, TransportError

MAX_CLIENTS = 10


class ClientState(enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ClientConnection:
    """
    One browser attached over an upgraded channel.

    The connection owns its transport. The media session is owned by the
    external engine; only a weak reference is kept here.
    """

    def __init__(self, index: int, transport: socket.socket, address=None):
        self.index = index
        self.address = address
        self.state = ClientState.CONNECTED
        self._transport = transport
        self._session_ref = None
        self._send_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self.state is ClientState.CONNECTED

    @property
    def transport(self) -> Optional[socket.socket]:
        return self._transport

    @property
    def session(self):
        """The engine session for this client, or None if not established."""
        if self._session_ref is None:
            return None
        return self._session_ref()

    def attach_session(self, session):
        self._session_ref = weakref.ref(session)

    def detach_session(self):
        self._session_ref = None

    def send(self, data: bytes):
        """
        Write *data* to the transport.

        Raises:
            TransportError: if the client is gone or the write fails
        """
        with self._send_lock:
            transport = self._transport
            if transport is None:
                raise TransportError(f"Client {self.index} has no transport")
            try:
                transport.sendall(data)
            except OSError as e:
                raise TransportError(f"Write to client {self.index} failed: {e}") from e

    def close(self):
        """Shut the transport down and mark the slot disconnected."""
        transport = self._transport
        self._transport = None
        self._session_ref = None
        self.state = ClientState.DISCONNECTED
        if transport is None:
            return
        try:
            # Wakes a reader blocked in recv() on another thread
            transport.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        transport.close()

    def __repr__(self):
        return f"ClientConnection(index={self.index}, state={self.state.value}, address={self.address})"


class ClientRegistry:
    """
    Bounded table of ClientConnection slots.

    Indices are handed out round-robin over the fixed slot table, so an index
    is only reused after its previous holder has been removed and every other
    free slot has had its turn.
    """

    def __init__(self, capacity: int = MAX_CLIENTS,
                 on_disconnect: Optional[Callable[[int, object], None]] = None):
        if capacity < 1:
            raise ValueError(f"Registry capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.logger = structlog.get_logger(__name__)
        self._lock = threading.Lock()
        self._slots: List[Optional[ClientConnection]] = [None] * capacity
        self._count = 0
        self._next_index = 0
        self._on_disconnect = on_disconnect

    def set_disconnect_handler(self, callback: Optional[Callable[[int, object], None]]):
        """Register ``callback(index, session)`` to run after each removal."""
        self._on_disconnect = callback

    def __len__(self):
        with self._lock:
            return self._count

    @property
    def size(self) -> int:
        return len(self)

    def add(self, transport: socket.socket, address=None) -> int:
        """
        Register *transport* in the next free slot.

        Returns:
            The slot index assigned to the new client

        Raises:
            CapacityExceeded: if every slot is occupied
        """
        with self._lock:
            if self._count >= self.capacity:
                raise CapacityExceeded(
                    f"Client registry full ({self.capacity} clients)")

            for offset in range(self.capacity):
                index = (self._next_index + offset) % self.capacity
                slot = self._slots[index]
                if slot is None or not slot.connected:
                    break
            else:
                raise RegistryCorrupted(
                    f"Count {self._count} below capacity but no free slot")

            self._slots[index] = ClientConnection(index, transport, address)
            self._count += 1
            self._next_index = (index + 1) % self.capacity
            count = self._count

        self.logger.info("Client registered", client=index, clients=count)
        return index

    def remove(self, index: int, client: Optional[ClientConnection] = None) -> bool:
        """
        Disconnect and release slot *index*.

        Out-of-range or already disconnected indices are ignored, so calling
        this twice is the same as calling it once. If *client* is given the
        slot is only released while it still holds that connection.

        Returns:
            True if a connected client was removed
        """
        with self._lock:
            slot = self._slot(index)
            if slot is None or not slot.connected:
                return False
            if client is not None and slot is not client:
                return False
            client = slot
            session = client.session
            client.close()
            self._count -= 1
            count = self._count
            callback = self._on_disconnect

        self.logger.info("Client disconnected", client=index, clients=count)
        if callback:
            callback(index, session)
        return True

    def lookup(self, index: int) -> Optional[ClientConnection]:
        """Return the slot at *index*, or None if it is out of range or unused."""
        with self._lock:
            return self._slot(index)

    def remove_all(self) -> List[int]:
        """Force-remove every connected client. Returns the removed indices."""
        removed = []
        for index in self.connected_indices():
            if self.remove(index):
                removed.append(index)
        return removed

    def connected_indices(self) -> List[int]:
        with self._lock:
            return [c.index for c in self._slots if c is not None and c.connected]

    def visit_connected(self, visitor: Callable[[ClientConnection], None]):
        """
        Call *visitor* for every connected client while holding the lock.

        The visitor must not call back into the registry.

        Raises:
            RegistryCorrupted: if the count disagrees with the connected slots
        """
        with self._lock:
            connected = [c for c in self._slots if c is not None and c.connected]
            if len(connected) != self._count:
                raise RegistryCorrupted(
                    f"Registry count {self._count} != {len(connected)} connected slots")
            for client in connected:
                visitor(client)

    def _slot(self, index) -> Optional[ClientConnection]:
        if not isinstance(index, int) or index < 0 or index >= self.capacity:
            return None
        return self._slots[index]
