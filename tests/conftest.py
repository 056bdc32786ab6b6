import socket
import threading

import pytest

from tellolink.errors import LinkError, RelayError
from tellolink.models import SocketRole
from tellolink.session import TelloSession


def free_udp_port():
    """Ask the OS for a UDP port that is free right now."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
    finally:
        s.close()


class FakeLink:
    """Records commands instead of sending them; ``fail_on`` names commands that raise."""

    def __init__(self, fail_on=(), open_error=None):
        self.sent         = []
        self.fail_on      = set(fail_on)
        self.open_error   = open_error
        self.on_telemetry = None
        self.open_count   = 0
        self.close_count  = 0
        self._open        = False

    @property
    def is_open(self):
        return self._open

    def open(self, on_telemetry):
        if self.open_error:
            raise self.open_error
        self.open_count  += 1
        self.on_telemetry = on_telemetry
        self._open        = True

    def send(self, command):
        if not self._open:
            raise LinkError("Command socket not initialized", which=SocketRole.COMMAND)
        if command in self.fail_on:
            raise LinkError(f"Failed to send command {command}: network unreachable",
                            which=SocketRole.COMMAND)
        self.sent.append(command)

    def close(self):
        self.close_count += 1
        self.on_telemetry = None
        self._open        = False


class FakeRelay:
    def __init__(self, fail=False, stop_error=None, start_error=None):
        self.on_complete        = None
        self.fail               = fail
        self.stop_error         = stop_error
        self.start_error        = start_error
        self.started_ports      = []
        self.stop_count         = 0
        self.current_session_id = None
        self._next_id           = 1

    def start(self, output_port):
        if self.start_error:
            raise self.start_error
        if self.fail:
            raise RelayError("Failed to start ffmpeg: [Errno 2] No such file or directory: 'ffmpeg'")
        self.started_ports.append(output_port)
        self.current_session_id = self._next_id
        self._next_id += 1
        return self.current_session_id

    def stop(self):
        self.stop_count += 1
        self.current_session_id = None
        if self.stop_error:
            raise self.stop_error


class GatedSleep:
    """sleep() replacement that can hold the caller until released."""

    def __init__(self, block=False):
        self.calls   = []
        self.entered = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()

    def __call__(self, seconds):
        self.calls.append(seconds)
        self.entered.set()
        assert self.release.wait(5.0), "sleep was never released"


@pytest.fixture
def link():
    return FakeLink()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def sleeper():
    return GatedSleep()


@pytest.fixture
def session(link, relay, sleeper):
    sess = TelloSession(link=link, relay=relay, sleep=sleeper, clock=lambda: 1000.0)
    sess.start(run_pump=False)
    return sess


@pytest.fixture(scope="session")
def qapp():
    from PyQt5 import QtCore

    app = QtCore.QCoreApplication.instance()
    if app is None:
        app = QtCore.QCoreApplication([])
    return app
