"""
Tests for the client registry.
"""

import threading

import pytest

from webrtc_gateway.errors import CapacityExceeded, RegistryCorrupted, TransportError
from webrtc_gateway.media.engine import MediaSession
from webrtc_gateway.transport.registry import MAX_CLIENTS, ClientRegistry


@pytest.fixture
def transport(mocker):
    return mocker.Mock()


def test_add_fills_to_capacity(mocker):
    registry = ClientRegistry()

    indices = [registry.add(mocker.Mock()) for _ in range(MAX_CLIENTS)]

    assert indices == list(range(MAX_CLIENTS))
    assert len(registry) == MAX_CLIENTS
    with pytest.raises(CapacityExceeded):
        registry.add(mocker.Mock())
    assert registry.size == MAX_CLIENTS


def test_remove_is_idempotent(transport):
    removed = []
    registry = ClientRegistry(on_disconnect=lambda index, session: removed.append((index, session)))
    index = registry.add(transport)

    assert registry.remove(index)
    assert not registry.remove(index)

    assert len(registry) == 0
    assert removed == [(index, None)]
    transport.close.assert_called_once()


def test_remove_out_of_range_is_ignored():
    registry = ClientRegistry(capacity=2)
    assert not registry.remove(-1)
    assert not registry.remove(2)
    assert not registry.remove(99)
    assert registry.lookup(5) is None


def test_indices_are_handed_out_round_robin(mocker):
    registry = ClientRegistry(capacity=3)
    first = registry.add(mocker.Mock())
    registry.add(mocker.Mock())
    registry.remove(first)

    assert registry.add(mocker.Mock()) == 2
    # Wraps around to the slot freed earlier
    assert registry.add(mocker.Mock()) == first


def test_stale_remove_does_not_touch_reused_slot(mocker):
    registry = ClientRegistry(capacity=1)
    index = registry.add(mocker.Mock())
    stale = registry.lookup(index)
    registry.remove(index)

    assert registry.add(mocker.Mock()) == index
    assert not registry.remove(index, stale)
    assert len(registry) == 1
    assert registry.lookup(index).connected


def test_session_is_handed_to_disconnect_callback(transport):
    removed = []
    registry = ClientRegistry(on_disconnect=lambda index, session: removed.append(session))
    index = registry.add(transport)
    session = MediaSession(index)

    registry.lookup(index).attach_session(session)
    assert registry.lookup(index).session is session

    registry.remove(index)
    assert removed == [session]
    assert registry.lookup(index).session is None


def test_session_reference_is_weak(transport):
    registry = ClientRegistry()
    index = registry.add(transport)
    client = registry.lookup(index)

    session = MediaSession(index)
    client.attach_session(session)
    del session

    assert client.session is None


def test_disconnect_callback_runs_outside_lock(mocker):
    registry = ClientRegistry()
    sizes = []
    registry.set_disconnect_handler(lambda index, session: sizes.append(len(registry)))
    index = registry.add(mocker.Mock())

    registry.remove(index)

    assert sizes == [0]


def test_remove_all(mocker):
    registry = ClientRegistry()
    for _ in range(3):
        registry.add(mocker.Mock())

    assert sorted(registry.remove_all()) == [0, 1, 2]
    assert len(registry) == 0
    assert registry.connected_indices() == []


def test_visit_connected_only_sees_connected(mocker):
    registry = ClientRegistry()
    for _ in range(4):
        registry.add(mocker.Mock())
    registry.remove(1)

    visited = []
    registry.visit_connected(lambda client: visited.append(client.index))

    assert visited == [0, 2, 3]


def test_visit_connected_detects_corruption(mocker):
    registry = ClientRegistry()
    registry.add(mocker.Mock())
    registry._count = 3

    with pytest.raises(RegistryCorrupted):
        registry.visit_connected(lambda client: None)


def test_client_send_after_close_fails(transport):
    registry = ClientRegistry()
    index = registry.add(transport)
    client = registry.lookup(index)

    client.send(b"data")
    transport.sendall.assert_called_once_with(b"data")

    registry.remove(index)
    with pytest.raises(TransportError):
        client.send(b"more")


def test_client_send_wraps_socket_errors(transport):
    transport.sendall.side_effect = BrokenPipeError("gone")
    registry = ClientRegistry()
    client = registry.lookup(registry.add(transport))

    with pytest.raises(TransportError):
        client.send(b"data")


def test_invalid_capacity():
    with pytest.raises(ValueError):
        ClientRegistry(capacity=0)


def test_concurrent_add_remove_and_visit(mocker):
    """Count always agrees with the connected slots under interleaving."""
    registry = ClientRegistry()
    errors = []
    done = threading.Event()

    def churn():
        for _ in range(300):
            try:
                index = registry.add(mocker.Mock())
            except CapacityExceeded:
                continue
            registry.visit_connected(lambda client: None)
            registry.remove(index)

    def visit():
        while not done.is_set():
            try:
                registry.visit_connected(lambda client: None)
            except RegistryCorrupted as e:
                errors.append(e)

    visitor = threading.Thread(target=visit)
    visitor.start()
    workers = [threading.Thread(target=churn) for _ in range(6)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    done.set()
    visitor.join()

    assert errors == []
    assert len(registry) == 0
    assert registry.connected_indices() == []
