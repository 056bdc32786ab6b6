"""Dual-socket UDP link to the drone: SDK commands out, state broadcasts in."""

import socket
import threading
from typing import Callable, Optional

from .common import _record_cleanup_failure, log
from .errors import LinkError, LinkNotOpenError
from .models import SocketRole, TelemetryEvent, TelloPeer
from .telemetry import decode

RECV_POLL_SECS = 0.2
RECV_BUFSIZE   = 2048


class TelloLink:
    """
    Owns the command socket (sends commands, receives acks) and the state
    socket (receives the periodic telemetry broadcast).
    Both are bound by ``open`` or neither is.
    """

    def __init__(self, peer: Optional[TelloPeer] = None,
                 socket_factory: Optional[Callable] = None):
        self.peer            = peer or TelloPeer()
        self._socket_factory = socket_factory or socket.socket
        self._lock           = threading.Lock()
        self._cmd_sock       = None
        self._state_sock     = None
        self._on_telemetry   = None     # receives TelemetryEvent
        self._stop           = None     # threading.Event for the current open
        self._threads        = []
        self.invalid_count   = 0

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._cmd_sock is not None and self._state_sock is not None

    def open(self, on_telemetry: Callable[[TelemetryEvent], None]):
        """Bind both sockets and start their receive threads. Raises LinkError."""
        with self._lock:
            stale = self._cmd_sock is not None or self._state_sock is not None
        if stale:
            log.warning("Sockets already initialized or partially initialized. Closing first.")
            self.close()

        cmd_sock = self._bind(SocketRole.COMMAND, self.peer.local_command_port)
        try:
            state_sock = self._bind(SocketRole.STATE, self.peer.local_state_port)
        except LinkError:
            try:
                cmd_sock.close()
            except OSError as e:
                _record_cleanup_failure("link.open.command_close", e)
            raise

        stop = threading.Event()
        threads = [
            threading.Thread(target=self._recv_loop, args=(SocketRole.COMMAND, cmd_sock, stop),
                             name="tello-command-rx", daemon=True),
            threading.Thread(target=self._recv_loop, args=(SocketRole.STATE, state_sock, stop),
                             name="tello-state-rx", daemon=True),
        ]
        with self._lock:
            self._cmd_sock     = cmd_sock
            self._state_sock   = state_sock
            self._on_telemetry = on_telemetry
            self._stop         = stop
            self._threads      = threads
        for thread in threads:
            thread.start()
        log.info("Both Command and State sockets initialized successfully.")

    def _bind(self, role: SocketRole, port: int):
        try:
            sock = self._socket_factory(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise LinkError(f"UDP {role.value} socket error: {e}", which=role, cause=e) from e
        try:
            sock.bind(("", port))
            sock.settimeout(RECV_POLL_SECS)
        except OSError as e:
            sock.close()
            log.error(f"UDP {role.value} socket bind to port {port} failed: {e}")
            raise LinkError(f"UDP {role.value} Bind socket error: {e}", which=role, cause=e) from e
        log.info(f"{role.value} socket bound to UDP:{port}")
        return sock

    def send(self, command: str):
        """Transmit one SDK command. Returns once handed to the OS, not on ack."""
        with self._lock:
            sock = self._cmd_sock
        if sock is None:
            log.error(f"send({command!r}) called but command socket not ready")
            raise LinkNotOpenError("Command socket not initialized", which=SocketRole.COMMAND)

        log.info(f"Sending command: {command}")
        try:
            sock.sendto(command.encode("utf-8"), (self.peer.ip, self.peer.command_port))
        except OSError as e:
            log.error(f"Failed to send command {command}: {e}")
            raise LinkError(f"Failed to send command {command}: {e}",
                            which=SocketRole.COMMAND, cause=e) from e

    def close(self):
        """Tear down whatever sockets exist. Never raises."""
        with self._lock:
            sockets = [(role, sock) for role, sock in
                       ((SocketRole.COMMAND, self._cmd_sock), (SocketRole.STATE, self._state_sock))
                       if sock is not None]
            self._cmd_sock     = None
            self._state_sock   = None
            self._on_telemetry = None
            stop, self._stop   = self._stop, None
            threads, self._threads = self._threads, []

        if stop is not None:
            stop.set()
        if not sockets:
            log.debug("Close called but no sockets to close.")
            return

        log.info(f"Closing {len(sockets)} UDP socket(s)...")
        for role, sock in sockets:
            try:
                sock.close()
                log.info(f"{role.value} socket closed.")
            except OSError as e:
                _record_cleanup_failure(f"link.close.{role.name.lower()}", e)

        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join(timeout=RECV_POLL_SECS * 5)

    def _recv_loop(self, role: SocketRole, sock, stop: threading.Event):
        while not stop.is_set():
            try:
                data, addr = sock.recvfrom(RECV_BUFSIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if not stop.is_set():
                    self._transport_failure(role, e, stop)
                break

            try:
                if role is SocketRole.COMMAND:
                    self._handle_command_response(data, addr)
                else:
                    self._handle_state(data, stop)
            except Exception as e:
                log.error(f"{role.value} datagram handler error: {e}", exc_info=True)

    def _handle_command_response(self, data: bytes, addr):
        text = data.decode("utf-8", errors="replace").strip()
        log.info(f'Drone command response: "{text}" from {addr[0]}:{addr[1]}')

    def _handle_state(self, data: bytes, stop: threading.Event):
        log.debug(f"State RX: {data!r}")
        fields = decode(data)
        if fields is None:
            self.invalid_count += 1
            return
        with self._lock:
            callback = self._on_telemetry if self._stop is stop else None
        if callback:
            callback(TelemetryEvent(fields=fields))

    def _transport_failure(self, role: SocketRole, exc: OSError, stop: threading.Event):
        """Report once per failure, then close the link. No retry."""
        with self._lock:
            if self._stop is not stop or stop.is_set():
                return
            stop.set()
            callback = self._on_telemetry
        message = f"UDP {role.value} socket error: {exc}"
        log.error(message)
        if callback:
            try:
                callback(TelemetryEvent(error=message))
            except Exception as e:
                log.error(f"Telemetry callback failed while reporting transport error: {e}")
        self.close()
