from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..control.authorization import AuthorizationSnapshot
from ..protocol.commands import Command, NEAR_DISTANCE_CM
from ..protocol.frames import SignalStrength
from .reconnect import ReconnectSuggestion


class ConnectionPhase(Enum):
    """Published connection phase. DISCONNECTED is neutral, not an error."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"  # Transient; always followed by DISCONNECTED


class Severity(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Proximity(Enum):
    UNKNOWN = "N/A"
    CLEAR = "CLEAR"
    NEAR = "NEAR"
    AVOIDING = "AVOIDING"


@dataclass(frozen=True)
class Notification:
    """Toast-equivalent message for presentation layers."""
    message: str
    severity: Severity = Severity.INFO
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TelemetrySample:
    """Latest telemetry reported by the car. No history is kept.

    Attributes:
        signal (SignalStrength): Bucket derived from `rssi`.
        rssi (Optional[int]): Raw signal quality in dBm.
        distance (Optional[float]): Distance to the nearest obstacle in centimeters.
        obstacle_active (bool): True while the car is avoiding an obstacle.
    """
    signal: SignalStrength = SignalStrength.UNKNOWN
    rssi: Optional[int] = None
    distance: Optional[float] = None
    obstacle_active: bool = False

    @property
    def proximity(self) -> Proximity:
        if self.obstacle_active:
            return Proximity.AVOIDING
        if self.distance is None:
            return Proximity.UNKNOWN
        return Proximity.NEAR if self.distance <= NEAR_DISTANCE_CM else Proximity.CLEAR


@dataclass(frozen=True)
class SessionSnapshot:
    """Everything a presentation layer needs to render the link."""
    phase: ConnectionPhase
    authorization: AuthorizationSnapshot
    telemetry: TelemetrySample
    latency_ms: Optional[float]
    last_notification: Optional[Notification]
    last_command: Command
    keyboard_enabled: bool
    reconnect_attempts: int
    reconnect_suggestion: Optional[ReconnectSuggestion]
    url: str
