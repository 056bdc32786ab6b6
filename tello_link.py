#!/usr/bin/env python3
"""Tello link console launcher: connect, relay video, fly from stdin."""

import argparse
import logging
import signal
import sys
import threading

from PyQt5 import QtCore

from tellolink import (
    CONNECT_SETTLE_DELAY_SECS,
    FLIGHT_COMMANDS,
    VIDEO_URL,
    TelloSession,
    VideoRelay,
)
from tellolink.qt_bridge import SessionBridge

log = logging.getLogger("tellolink.console")

HELP_TEXT = "commands: connect, disconnect, " + ", ".join(FLIGHT_COMMANDS) + ", status, quit"


def _configure_logging(level_name: str):
    level = getattr(logging, level_name.upper(), logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(level=level, format='%(asctime)s %(levelname)s %(message)s')
    else:
        root_logger.setLevel(level)

    logging.getLogger('tellolink').setLevel(level)


def _log_telemetry(telemetry):
    battery = f"{telemetry.battery}%" if telemetry.battery is not None else "--"
    log.info(f"Battery: {battery}  Flight time: {telemetry.flight_time or '--'}")


def _read_commands(bridge: SessionBridge, app: QtCore.QCoreApplication):
    """Stdin command loop; runs on its own thread until EOF or quit."""
    print(HELP_TEXT, flush=True)
    for raw_line in sys.stdin:
        cmd = raw_line.strip().lower()
        if not cmd:
            continue
        if cmd in ("quit", "exit"):
            break
        if cmd == "connect":
            bridge.requestConnect()
        elif cmd == "disconnect":
            bridge.requestDisconnect()
        elif cmd in FLIGHT_COMMANDS:
            bridge.sendFlightCommand(cmd)
        elif cmd == "status":
            state = bridge.session.state
            print(f"phase={state.phase.value} error={state.error_message!r} "
                  f"battery={state.telemetry.battery} flight_time={state.telemetry.flight_time}",
                  flush=True)
        else:
            print(HELP_TEXT, flush=True)
    QtCore.QMetaObject.invokeMethod(app, "quit", QtCore.Qt.QueuedConnection)


def main():
    """Run the link until quit, SIGINT or SIGTERM."""
    app = QtCore.QCoreApplication(sys.argv)

    def _graceful_shutdown(_signum, _frame):
        QtCore.QTimer.singleShot(0, app.quit)

    signal.signal(signal.SIGINT, _graceful_shutdown)
    signal.signal(signal.SIGTERM, _graceful_shutdown)

    parser = argparse.ArgumentParser(description='Tello drone link')
    parser.add_argument('--connect', action='store_true',
                        help='Connect and start streaming immediately')
    parser.add_argument('--settle-delay', type=float, default=CONNECT_SETTLE_DELAY_SECS,
                        help=f'Seconds between SDK commands (default: {CONNECT_SETTLE_DELAY_SECS})')
    parser.add_argument('--ffmpeg', type=str, default='ffmpeg',
                        help='ffmpeg executable used for the video relay')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging verbosity (default: INFO)')
    args = parser.parse_args()

    _configure_logging(args.log_level)

    session = TelloSession(relay=VideoRelay(ffmpeg=args.ffmpeg),
                           settle_delay=args.settle_delay)
    bridge = SessionBridge(session)
    bridge.phaseChanged.connect(lambda phase: log.info(f"Phase: {phase}"))
    bridge.telemetryChanged.connect(_log_telemetry)
    bridge.errorChanged.connect(lambda message: message and log.warning(f"Error: {message}"))
    bridge.attach_application(app)

    bridge.start()
    log.info(f"Video will be served at {VIDEO_URL} while streaming")
    if args.connect:
        bridge.requestConnect()

    reader = threading.Thread(target=_read_commands, args=(bridge, app), daemon=True)
    reader.start()

    timer = QtCore.QTimer()
    timer.start(500)
    timer.timeout.connect(lambda: None)

    rc = app.exec_()
    bridge.shutdown()
    sys.exit(rc)


if __name__ == '__main__':
    main()
