"""Data structures for the drone link and the session snapshot."""

import enum
from dataclasses import dataclass, field
from typing import Optional

from .common import (
    LOCAL_COMMAND_PORT,
    TELLO_COMMAND_PORT,
    TELLO_IP,
    TELLO_STATE_PORT,
    TELLO_VIDEO_PORT,
    VIDEO_URL,
)


@dataclass(frozen=True)
class TelloPeer:
    ip:                 str = TELLO_IP
    command_port:       int = TELLO_COMMAND_PORT
    video_port:         int = TELLO_VIDEO_PORT
    local_command_port: int = LOCAL_COMMAND_PORT
    local_state_port:   int = TELLO_STATE_PORT


class SocketRole(enum.Enum):
    COMMAND = "Command"
    STATE   = "State"


class Phase(enum.Enum):
    IDLE       = "idle"
    CONNECTING = "connecting"
    STREAMING  = "streaming"


@dataclass(frozen=True)
class TelemetryState:
    battery:        Optional[int]   = None
    flight_time:    Optional[str]   = None   # "Xm Ys" or "N/A"
    last_update_at: Optional[float] = None   # time.time() of last accepted broadcast


@dataclass(frozen=True)
class ConnectionState:
    """Read-only snapshot published to subscribers after every mutation."""
    phase:         Phase          = Phase.IDLE
    error_message: Optional[str]  = None
    telemetry:     TelemetryState = field(default_factory=TelemetryState)
    video_url:     str            = VIDEO_URL
    revision:      int            = 0       # increases with every replacement

    @property
    def is_streaming(self) -> bool:
        return self.phase is Phase.STREAMING

    @property
    def is_connecting(self) -> bool:
        return self.phase is Phase.CONNECTING


@dataclass(frozen=True)
class TelemetryEvent:
    """One delivery from the state socket: decoded fields, or a transport error."""
    fields: Optional[dict] = None
    error:  Optional[str]  = None


class RelayOutcome(enum.Enum):
    SUCCESS   = "success"
    CANCELLED = "cancelled"
    FAILED    = "failed"


@dataclass(frozen=True)
class RelayCompletion:
    session_id:  int
    outcome:     RelayOutcome
    return_code: Optional[int]
    output:      str = ""
