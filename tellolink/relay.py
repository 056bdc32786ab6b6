"""Supervisor for the external ffmpeg process relaying drone video over HTTP."""

import collections
import itertools
import subprocess
import threading
from typing import Callable, Optional

from .common import FFMPEG_BINARY, TELLO_VIDEO_PORT, _record_cleanup_failure, log
from .errors import RelayError
from .models import RelayCompletion, RelayOutcome

OUTPUT_TAIL_LINES = 200


def build_relay_command(output_port: int, video_port: int = TELLO_VIDEO_PORT,
                        ffmpeg: str = FFMPEG_BINARY) -> list[str]:
    """
    Read raw H264 from UDP with no buffering and a receive timeout, drop
    corrupt leading data, and serve the stream copied into MPEG-TS over HTTP.
    """
    return [
        ffmpeg, "-hide_banner",
        "-f", "h264",
        "-analyzeduration", "1000000",
        "-probesize", "1000000",
        "-fflags", "+discardcorrupt+nobuffer",
        "-flags", "low_delay",
        "-avioflags", "direct",
        "-i", f"udp://0.0.0.0:{video_port}?timeout=5000000",
        "-c:v", "copy",
        "-f", "mpegts",
        "-listen", "1",
        f"http://127.0.0.1:{output_port}",
    ]


class VideoRelay:
    """
    At most one relay session is current. ``start`` returns once the process
    is launched; its exit is reported later through ``on_complete``.
    """

    def __init__(self, on_complete: Optional[Callable[[RelayCompletion], None]] = None,
                 video_port: int = TELLO_VIDEO_PORT,
                 ffmpeg: str = FFMPEG_BINARY,
                 popen: Optional[Callable] = None):
        self.on_complete  = on_complete
        self.video_port   = video_port
        self.ffmpeg       = ffmpeg
        self._popen       = popen or subprocess.Popen
        self._lock        = threading.Lock()
        self._ids         = itertools.count(1)
        self._current_id  = None
        self._processes   = {}      # session id -> Popen
        self._cancelled   = set()   # session ids asked to stop

    @property
    def current_session_id(self) -> Optional[int]:
        with self._lock:
            return self._current_id

    def start(self, output_port: int) -> int:
        """Launch a relay serving on ``output_port``. Raises RelayError."""
        if self.current_session_id is not None:
            log.warning("Relay session already exists. Cancelling previous.")
            try:
                self.stop()
            except Exception as e:
                _record_cleanup_failure("relay.start.stop_previous", e)

        cmd = build_relay_command(output_port, self.video_port, self.ffmpeg)
        session_id = next(self._ids)
        with self._lock:
            self._current_id = session_id
        log.info(f"Starting relay session {session_id}: {' '.join(cmd)}")

        try:
            proc = self._popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except (OSError, ValueError) as e:
            with self._lock:
                if self._current_id == session_id:
                    self._current_id = None
            log.error(f"Failed to launch relay process: {e}")
            raise RelayError(f"Failed to start ffmpeg: {e}") from e

        with self._lock:
            self._processes[session_id] = proc
            stopped_during_launch = session_id in self._cancelled
        if stopped_during_launch:
            try:
                proc.terminate()
            except OSError as e:
                _record_cleanup_failure("relay.start.terminate_cancelled", e)
        watcher = threading.Thread(target=self._watch, args=(session_id, proc),
                                   name=f"relay-{session_id}", daemon=True)
        watcher.start()
        log.info(f"Relay session starting with ID: {session_id}")
        return session_id

    def stop(self):
        """Request the current session to stop. Best effort; never raises."""
        with self._lock:
            session_id = self._current_id
            self._current_id = None
            if session_id is None:
                proc = None
            else:
                proc = self._processes.get(session_id)
                self._cancelled.add(session_id)

        if session_id is None:
            log.debug("Stop called but no active relay session.")
            return
        log.info(f"Cancelling relay session: {session_id}")
        if proc is None:
            return
        try:
            if proc.poll() is None:
                proc.terminate()
            log.info(f"Cancel request sent for relay session: {session_id}")
        except OSError as e:
            _record_cleanup_failure("relay.stop.terminate", e)

    def _watch(self, session_id: int, proc):
        tail = collections.deque(maxlen=OUTPUT_TAIL_LINES)
        try:
            if proc.stdout is not None:
                for line in proc.stdout:
                    line = line.rstrip()
                    if line:
                        tail.append(line)
                        log.debug(f"ffmpeg[{session_id}]: {line}")
            return_code = proc.wait()
        except Exception as e:
            log.error(f"Relay session {session_id} watcher error: {e}")
            return_code = proc.poll()

        self._complete(session_id, return_code, "\n".join(tail))

    def _complete(self, session_id: int, return_code: Optional[int], output: str):
        with self._lock:
            if self._current_id == session_id:
                self._current_id = None
            self._processes.pop(session_id, None)
            cancelled = session_id in self._cancelled
            self._cancelled.discard(session_id)

        log.info(f"Relay session {session_id} completed with code {return_code}.")
        if return_code == 0:
            outcome = RelayOutcome.SUCCESS
            log.info("Relay process finished successfully.")
        elif cancelled:
            outcome = RelayOutcome.CANCELLED
            log.info("Relay process cancelled.")
        else:
            outcome = RelayOutcome.FAILED
            log.error(f"Relay process {session_id} failed!\n"
                      f"------ ffmpeg output start ------\n"
                      f"{output or 'No output captured.'}\n"
                      f"------ ffmpeg output end --------")

        if self.on_complete:
            self.on_complete(RelayCompletion(session_id, outcome, return_code, output))
