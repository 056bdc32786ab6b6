import queue
import socket
import time

import pytest

from conftest import free_udp_port
from tellolink.errors import LinkError, LinkNotOpenError
from tellolink.models import SocketRole, TelloPeer
from tellolink.udp_link import TelloLink


@pytest.fixture
def drone():
    """Stands in for the drone's command port on loopback."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


@pytest.fixture
def peer(drone):
    return TelloPeer(
        ip="127.0.0.1",
        command_port=drone.getsockname()[1],
        local_command_port=free_udp_port(),
        local_state_port=free_udp_port(),
    )


@pytest.fixture
def link(peer):
    lnk = TelloLink(peer)
    yield lnk
    lnk.close()


def _broadcast(port, payload: bytes):
    sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sender.sendto(payload, ("127.0.0.1", port))
    finally:
        sender.close()


def test_open_binds_both_sockets(link):
    assert not link.is_open
    link.open(lambda event: None)
    assert link.is_open


def test_send_before_open_fails(link):
    with pytest.raises(LinkNotOpenError) as excinfo:
        link.send("command")
    assert excinfo.value.which is SocketRole.COMMAND


def test_send_reaches_peer(link, drone):
    link.open(lambda event: None)
    link.send("command")
    data, addr = drone.recvfrom(1024)
    assert data == b"command"
    assert addr[1] == link.peer.local_command_port


def test_state_broadcast_is_decoded(link, peer):
    events = queue.Queue()
    link.open(events.put)
    _broadcast(peer.local_state_port, b"bat:87;time:125;other:x")
    event = events.get(timeout=2.0)
    assert event.error is None
    assert event.fields == {"bat": "87", "time": "125", "other": "x"}


def test_malformed_broadcast_is_dropped(link, peer):
    events = queue.Queue()
    link.open(events.put)
    _broadcast(peer.local_state_port, b"garbage without separators")
    _broadcast(peer.local_state_port, b"bat:12;")
    event = events.get(timeout=2.0)
    assert event.fields == {"bat": "12"}
    assert link.invalid_count == 1
    assert events.empty()


def test_command_ack_does_not_produce_telemetry(link, drone):
    events = queue.Queue()
    link.open(events.put)
    link.send("command")
    _, addr = drone.recvfrom(1024)
    drone.sendto(b"ok", addr)
    time.sleep(0.3)
    assert events.empty()


def test_state_bind_failure_releases_command_socket(peer):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("", peer.local_state_port))
    lnk = TelloLink(peer)
    try:
        with pytest.raises(LinkError) as excinfo:
            lnk.open(lambda event: None)
        assert excinfo.value.which is SocketRole.STATE
        assert not lnk.is_open

        probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        probe.bind(("", peer.local_command_port))
        probe.close()
    finally:
        blocker.close()
        lnk.close()


def test_reopen_closes_existing_sockets_first(link, peer):
    first = queue.Queue()
    second = queue.Queue()
    link.open(first.put)
    link.open(second.put)
    assert link.is_open
    _broadcast(peer.local_state_port, b"bat:55;")
    assert second.get(timeout=2.0).fields == {"bat": "55"}
    assert first.empty()


def test_close_is_idempotent_and_clears_callback(link, peer):
    events = queue.Queue()
    link.open(events.put)
    link.close()
    link.close()
    assert not link.is_open
    with pytest.raises(LinkNotOpenError):
        link.send("land")


class _ScriptedSocket:
    """Fake socket: the state socket fails its first receive, the command socket idles."""

    def __init__(self, state_port):
        self.state_port = state_port
        self.port       = None
        self.closed     = False
        self._failed    = False

    def bind(self, addr):
        self.port = addr[1]

    def settimeout(self, value):
        pass

    def recvfrom(self, bufsize):
        if self.port == self.state_port and not self._failed:
            self._failed = True
            raise OSError("Network is down")
        time.sleep(0.02)
        raise socket.timeout()

    def sendto(self, data, addr):
        return len(data)

    def close(self):
        self.closed = True


def test_transport_error_reported_once_then_link_closes():
    peer = TelloPeer(ip="127.0.0.1", local_command_port=40001, local_state_port=40002)
    created = []

    def factory(family, kind):
        sock = _ScriptedSocket(state_port=40002)
        created.append(sock)
        return sock

    events = queue.Queue()
    lnk = TelloLink(peer, socket_factory=factory)
    lnk.open(events.put)

    event = events.get(timeout=2.0)
    assert event.fields is None
    assert "State" in event.error
    assert "Network is down" in event.error

    deadline = time.time() + 2.0
    while lnk.is_open and time.time() < deadline:
        time.sleep(0.01)
    assert not lnk.is_open
    assert all(sock.closed for sock in created)
    time.sleep(0.1)
    assert events.empty()
