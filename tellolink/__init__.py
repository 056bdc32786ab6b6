"""Tello drone link: UDP command/state client, video relay, session lifecycle."""

from .common import (
	TELLO_IP,
	TELLO_COMMAND_PORT,
	LOCAL_COMMAND_PORT,
	TELLO_STATE_PORT,
	TELLO_VIDEO_PORT,
	VIDEO_HTTP_PORT,
	VIDEO_URL,
	CONNECT_SETTLE_DELAY_SECS,
	STREAMOFF_TRAILING_DELAY_SECS,
	FLIGHT_COMMANDS,
	CLEANUP_FAILURES,
)
from .errors import LinkError, LinkNotOpenError, RelayError, NotConnectedError
from .models import (
	TelloPeer,
	SocketRole,
	Phase,
	TelemetryState,
	ConnectionState,
	TelemetryEvent,
	RelayOutcome,
	RelayCompletion,
)
from .telemetry import decode, format_flight_time, parse_battery
from .udp_link import TelloLink
from .relay import VideoRelay, build_relay_command
from .session import TelloSession

__all__ = [
	"TELLO_IP",
	"TELLO_COMMAND_PORT",
	"LOCAL_COMMAND_PORT",
	"TELLO_STATE_PORT",
	"TELLO_VIDEO_PORT",
	"VIDEO_HTTP_PORT",
	"VIDEO_URL",
	"CONNECT_SETTLE_DELAY_SECS",
	"STREAMOFF_TRAILING_DELAY_SECS",
	"FLIGHT_COMMANDS",
	"CLEANUP_FAILURES",
	"LinkError",
	"LinkNotOpenError",
	"RelayError",
	"NotConnectedError",
	"TelloPeer",
	"SocketRole",
	"Phase",
	"TelemetryState",
	"ConnectionState",
	"TelemetryEvent",
	"RelayOutcome",
	"RelayCompletion",
	"decode",
	"format_flight_time",
	"parse_battery",
	"TelloLink",
	"VideoRelay",
	"build_relay_command",
	"TelloSession",
]
