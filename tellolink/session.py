"""Connection lifecycle: sequences the UDP link and the video relay."""

import dataclasses
import queue
import threading
import time
from typing import Callable, Optional

from .common import (
    CMD_SDK_MODE,
    CMD_STREAM_OFF,
    CMD_STREAM_ON,
    CONNECT_SETTLE_DELAY_SECS,
    EVENT_QUEUE_SIZE,
    FLIGHT_COMMANDS,
    RC_MAX_VALUE,
    STREAMOFF_TRAILING_DELAY_SECS,
    VIDEO_HTTP_PORT,
    _record_cleanup_failure,
    log,
)
from .errors import LinkError, NotConnectedError, RelayError
from .models import (
    ConnectionState,
    Phase,
    RelayCompletion,
    RelayOutcome,
    TelemetryEvent,
    TelemetryState,
)
from .relay import VideoRelay
from .telemetry import BATTERY_KEY, FLIGHT_TIME_KEY, format_flight_time, parse_battery
from .udp_link import TelloLink

NOT_CONNECTED_MESSAGE = "Cannot send command, drone not connected."


class TelloSession:
    """
    Single owner of the ConnectionState.

    connect/disconnect run one at a time behind an admission lock; a request
    arriving while another is in flight waits for it. Telemetry and relay
    completions arrive on an event queue and are applied by one consumer
    (``run_event_loop`` or ``dispatch_pending``) without taking that lock.
    """

    def __init__(self, link: Optional[TelloLink] = None,
                 relay: Optional[VideoRelay] = None,
                 output_port: int = VIDEO_HTTP_PORT,
                 settle_delay: float = CONNECT_SETTLE_DELAY_SECS,
                 streamoff_delay: float = STREAMOFF_TRAILING_DELAY_SECS,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.link            = link or TelloLink()
        self.relay           = relay or VideoRelay()
        self.relay.on_complete = self._post_event
        self.output_port     = output_port
        self.settle_delay    = settle_delay
        self.streamoff_delay = streamoff_delay
        self._sleep          = sleep
        self._clock          = clock
        self._state          = ConnectionState()
        self._state_lock     = threading.RLock()
        self._op_lock        = threading.Lock()
        self._stream_on      = False    # "streamon" went out and no "streamoff" since
        self._listeners      = []
        self._publish_lock   = threading.RLock()
        self._published_rev  = -1
        self.events          = queue.Queue(maxsize=EVENT_QUEUE_SIZE)
        self.dropped_events  = 0
        self._pump_stop      = threading.Event()
        self._pump_thread    = None

    # ── snapshot and subscription ─────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    def subscribe(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        """Call ``listener`` with every new snapshot. Returns an unsubscribe function."""
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _replace(self, **changes):
        """Swap in a new snapshot. Caller holds or takes the state lock."""
        with self._state_lock:
            previous = self._state
            self._state = dataclasses.replace(previous, revision=previous.revision + 1, **changes)
            return previous, self._state

    def _update(self, **changes) -> ConnectionState:
        previous, snapshot = self._replace(**changes)
        self._publish(previous, snapshot)
        return snapshot

    def _publish(self, previous: ConnectionState, snapshot: ConnectionState):
        """
        Deliver ``snapshot`` to listeners in revision order. A snapshot
        superseded before its turn came is skipped.
        """
        with self._publish_lock:
            if snapshot.revision <= self._published_rev:
                log.debug(f"Skipping stale snapshot revision {snapshot.revision}")
                return
            self._published_rev = snapshot.revision
            with self._state_lock:
                listeners = list(self._listeners)
            if previous.phase is not snapshot.phase:
                log.info(f"Phase {previous.phase.value} -> {snapshot.phase.value}")
            for listener in listeners:
                try:
                    listener(snapshot)
                except Exception as e:
                    log.error(f"State listener failed: {e}", exc_info=True)

    def set_error(self, message: Optional[str]):
        self._update(error_message=message)

    # ── service lifetime ─────────────────────────────────────────────────

    def start(self, run_pump: bool = True) -> bool:
        """Open the link and begin consuming events. False if the link could not open."""
        try:
            self.link.open(self._post_event)
        except LinkError as e:
            log.error(f"Failed to initialize link: {e}")
            self.set_error(f"Service Init Failed: {e}")
            return False
        self._pump_stop.clear()
        if run_pump and self._pump_thread is None:
            self._pump_thread = threading.Thread(target=self.run_event_loop,
                                                 name="tello-events", daemon=True)
            self._pump_thread.start()
        return True

    def shutdown(self):
        self.disconnect()
        self.link.close()
        self._pump_stop.set()
        if self._pump_thread is not None and self._pump_thread is not threading.current_thread():
            self._pump_thread.join(timeout=2.0)
        self._pump_thread = None

    # ── connect / disconnect ─────────────────────────────────────────────

    def connect(self) -> bool:
        """
        Enter SDK mode, enable the video stream and launch the relay.
        Returns True when the session reached Streaming. A call while already
        connecting or streaming does nothing and returns False.
        """
        with self._state_lock:
            if self._state.phase is not Phase.IDLE:
                log.info(f"connect() ignored: already {self._state.phase.value}")
                return False
            previous, snapshot = self._replace(phase=Phase.CONNECTING, error_message=None,
                                               telemetry=TelemetryState())
        self._publish(previous, snapshot)

        with self._op_lock:
            if self.state.phase is not Phase.CONNECTING:
                log.info("connect() superseded while waiting for admission")
                return False
            try:
                self._run_connect_steps()
            except Exception as e:
                if isinstance(e, (LinkError, RelayError)):
                    log.error(f"Connect failed: {e}")
                else:
                    log.error(f"Connect failed: {e}", exc_info=True)
                self._disconnect_locked(error_message=f"Connect Error: {e}")
                return False
            self._update(phase=Phase.STREAMING)
            return True

    def _run_connect_steps(self):
        if not self.link.is_open:
            # closed after a transport failure, or never opened
            log.info("Link not open, reopening sockets...")
            self.link.open(self._post_event)

        log.info("Sending SDK commands...")
        self.link.send(CMD_SDK_MODE)
        self._sleep(self.settle_delay)
        self.link.send(CMD_STREAM_ON)
        self._stream_on = True
        self._sleep(self.settle_delay)

        log.info("Drone commands sent. Starting video relay...")
        self.relay.start(self.output_port)
        log.info("Video relay start command issued.")

    def disconnect(self):
        """Stop the relay and the drone's video stream. Always ends Idle; never raises."""
        with self._op_lock:
            self._disconnect_locked()

    def _disconnect_locked(self, error_message: Optional[str] = None):
        """Teardown; ``error_message`` is the message the session is left with."""
        with self._state_lock:
            idle = self._state.phase is Phase.IDLE
            if idle and not self._stream_on and self.relay.current_session_id is None:
                log.debug("disconnect() from Idle: nothing to stop")
                if self._state.error_message == error_message:
                    return
                previous, snapshot = self._replace(error_message=error_message)
                idle_noop = True
            else:
                previous, snapshot = self._replace(phase=Phase.IDLE, error_message=error_message,
                                                   telemetry=TelemetryState())
                idle_noop = False
        self._publish(previous, snapshot)
        if idle_noop:
            return

        log.info("Disconnecting: cleaning up...")
        try:
            self.relay.stop()
            log.info("Video relay stop command issued.")
        except Exception as e:
            _record_cleanup_failure("session.disconnect.relay_stop", e)

        if self._stream_on:
            try:
                self.link.send(CMD_STREAM_OFF)
                self._sleep(self.streamoff_delay)
                log.info("streamoff command sent.")
            except Exception as e:
                _record_cleanup_failure("session.disconnect.streamoff", e)
            finally:
                self._stream_on = False

        self._update(telemetry=TelemetryState())

    def handle_app_backgrounded(self) -> bool:
        """Disconnect if the host application went inactive while streaming."""
        if not self.state.is_streaming:
            return False
        log.info("App inactive, disconnecting...")
        self.disconnect()
        return True

    # ── commands while streaming ─────────────────────────────────────────

    def send_flight_command(self, name: str) -> bool:
        """
        Send takeoff/land/emergency. Raises NotConnectedError unless streaming;
        a send failure is surfaced as the error message and returns False.
        """
        if name not in FLIGHT_COMMANDS:
            raise ValueError(f"Unknown flight command: {name!r}")
        if not self.state.is_streaming:
            self.set_error(NOT_CONNECTED_MESSAGE)
            raise NotConnectedError(NOT_CONNECTED_MESSAGE)
        try:
            self.link.send(name)
        except LinkError as e:
            log.error(f'Failed to send command "{name}": {e}')
            self.set_error(f"Cmd Fail: {name}: {e}")
            return False
        return True

    def send_rc(self, roll: float, pitch: float, throttle: float, yaw: float):
        """Send one ``rc`` stick frame, each axis clamped to +/-100."""
        if not self.state.is_streaming:
            raise NotConnectedError(NOT_CONNECTED_MESSAGE)
        axes = [max(-RC_MAX_VALUE, min(RC_MAX_VALUE, int(round(v))))
                for v in (roll, pitch, throttle, yaw)]
        self.link.send("rc " + " ".join(str(v) for v in axes))

    # ── event channel ────────────────────────────────────────────────────

    def _post_event(self, event):
        """Non-blocking handoff from socket/process threads."""
        try:
            self.events.put_nowait(event)
        except queue.Full:
            self.dropped_events += 1
            log.warning(f"Event queue full, dropping {type(event).__name__} "
                        f"(total drops: {self.dropped_events})")

    def run_event_loop(self):
        while not self._pump_stop.is_set():
            try:
                event = self.events.get(timeout=0.5)
            except queue.Empty:
                continue
            self._dispatch(event)

    def dispatch_pending(self) -> int:
        """Apply every queued event on the calling thread. Returns how many."""
        count = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return count
            self._dispatch(event)
            count += 1

    def _dispatch(self, event):
        try:
            if isinstance(event, TelemetryEvent):
                self._on_telemetry(event)
            elif isinstance(event, RelayCompletion):
                self._on_relay_complete(event)
            else:
                log.warning(f"Unknown event type: {event!r}")
        except Exception as e:
            log.error(f"Event handler failed: {e}", exc_info=True)

    def _on_telemetry(self, event: TelemetryEvent):
        if event.error:
            # the link has closed itself; phase is left as is
            log.error(f"Status listener received an error: {event.error}")
            self.set_error(f"Status Listener Error: {event.error}")
            return

        fields = event.fields or {}
        with self._state_lock:
            current = self._state.telemetry
            battery = current.battery
            flight_time = current.flight_time
            if BATTERY_KEY in fields:
                battery = parse_battery(fields[BATTERY_KEY])
            if FLIGHT_TIME_KEY in fields:
                flight_time = format_flight_time(fields[FLIGHT_TIME_KEY])
            previous, snapshot = self._replace(telemetry=TelemetryState(
                battery=battery,
                flight_time=flight_time,
                last_update_at=self._clock(),
            ))
        self._publish(previous, snapshot)

    def _on_relay_complete(self, completion: RelayCompletion):
        if completion.outcome is not RelayOutcome.FAILED:
            log.info(f"Relay session {completion.session_id} ended: {completion.outcome.value}")
            return
        last_line = completion.output.strip().splitlines()[-1] if completion.output.strip() else "no output"
        self.set_error(f"Video relay failed (exit {completion.return_code}): {last_line}")
