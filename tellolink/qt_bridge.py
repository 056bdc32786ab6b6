"""Qt adapter: session snapshots as signals, UI requests off the GUI thread."""

import threading

from PyQt5 import QtCore

from .common import log
from .errors import NotConnectedError
from .session import TelloSession

_BACKGROUND_STATES = (
    QtCore.Qt.ApplicationHidden,
    QtCore.Qt.ApplicationInactive,
    QtCore.Qt.ApplicationSuspended,
)


class SessionBridge(QtCore.QObject):
    """
    Re-emits TelloSession snapshots as Qt signals. Signals may be emitted
    from worker threads; Qt queues them to receivers living in the GUI thread.
    """

    stateChanged     = QtCore.pyqtSignal(object)    # ConnectionState
    telemetryChanged = QtCore.pyqtSignal(object)    # TelemetryState
    errorChanged     = QtCore.pyqtSignal(object)    # Optional[str], latest wins
    phaseChanged     = QtCore.pyqtSignal(str)

    def __init__(self, session: TelloSession, parent=None):
        super().__init__(parent)
        self.session       = session
        self._lock         = threading.Lock()
        self._last         = session.state
        self._workers      = []
        self.event_thread  = None
        self._unsubscribe  = session.subscribe(self._on_snapshot)

    def start(self) -> bool:
        """Open the link and run the session's event loop on a QThread."""
        ok = self.session.start(run_pump=False)
        self.event_thread = QtCore.QThread()
        self.event_thread.run = self.session.run_event_loop
        self.event_thread.start()
        return ok

    def attach_application(self, app):
        """Disconnect automatically when a QGuiApplication goes to the background."""
        state_signal = getattr(app, "applicationStateChanged", None)
        if state_signal is None:
            log.debug("Application has no state signal; background disconnect disabled")
            return
        state_signal.connect(self.on_application_state_changed)

    def _on_snapshot(self, snapshot):
        with self._lock:
            previous, self._last = self._last, snapshot
        self.stateChanged.emit(snapshot)
        if snapshot.phase is not previous.phase:
            self.phaseChanged.emit(snapshot.phase.value)
        if snapshot.telemetry != previous.telemetry:
            self.telemetryChanged.emit(snapshot.telemetry)
        if snapshot.error_message != previous.error_message:
            self.errorChanged.emit(snapshot.error_message)

    def _run_async(self, name: str, fn):
        worker = threading.Thread(target=fn, name=f"tello-{name}", daemon=True)
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()

    def wait_idle(self, timeout: float = 5.0):
        """Join outstanding connect/disconnect workers."""
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout=timeout)

    @QtCore.pyqtSlot()
    def requestConnect(self):
        state = self.session.state
        if state.is_connecting or state.is_streaming:
            return
        self._run_async("connect", self.session.connect)

    @QtCore.pyqtSlot()
    def requestDisconnect(self):
        self._run_async("disconnect", self.session.disconnect)

    @QtCore.pyqtSlot(str)
    def sendFlightCommand(self, name: str):
        def _send():
            try:
                self.session.send_flight_command(name)
            except NotConnectedError:
                log.warning(f"Flight command {name!r} rejected: not connected")
            except ValueError as e:
                log.error(str(e))
        self._run_async(name, _send)

    def on_application_state_changed(self, state):
        if state in _BACKGROUND_STATES:
            self._run_async("background", self.session.handle_app_backgrounded)

    def shutdown(self):
        self._unsubscribe()
        self.wait_idle()
        self.session.shutdown()
        if self.event_thread is not None:
            self.event_thread.quit()
            if not self.event_thread.wait(2000):
                log.warning("Event thread did not exit cleanly, terminating...")
                self.event_thread.terminate()
                self.event_thread.wait()
            self.event_thread = None
