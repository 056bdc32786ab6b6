"""Shared constants and diagnostics helpers for the Tello link."""

import collections
import logging

log = logging.getLogger("tellolink")

TELLO_IP            = "192.168.10.1"   # fixed peer address on the drone's access point

TELLO_COMMAND_PORT  = 8889          # UDP port the drone accepts SDK commands on

LOCAL_COMMAND_PORT  = 9000          # local bind for command socket (acks arrive here)

TELLO_STATE_PORT    = 8890          # UDP port the drone broadcasts state to

TELLO_VIDEO_PORT    = 11111         # H264 elementary stream from the drone

VIDEO_HTTP_PORT     = 11112         # MPEG-TS served by the relay process

VIDEO_URL = f"http://127.0.0.1:{VIDEO_HTTP_PORT}"

CONNECT_SETTLE_DELAY_SECS     = 0.3     # pause after "command" and "streamon"
STREAMOFF_TRAILING_DELAY_SECS = 0.1     # pause after "streamoff" during teardown

FFMPEG_BINARY = "ffmpeg"

EVENT_QUEUE_SIZE = 256

RC_MAX_VALUE = 100

CMD_SDK_MODE   = "command"
CMD_STREAM_ON  = "streamon"
CMD_STREAM_OFF = "streamoff"

FLIGHT_COMMANDS = ("takeoff", "land", "emergency")

# step name -> number of swallowed failures since process start
CLEANUP_FAILURES: collections.Counter = collections.Counter()


def _record_cleanup_failure(step: str, exc: BaseException):
    """Log a best-effort cleanup failure and count it per step."""
    CLEANUP_FAILURES[step] += 1
    log.warning(
        f"Cleanup step failed: step={step} count={CLEANUP_FAILURES[step]} "
        f"error={type(exc).__name__}: {exc}"
    )
