import json
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .commands import (
    Command,
    KEEPALIVE_TOKEN,
    OBSTACLE_TAG,
    PONG_TAG,
    RFID_TAG,
    TELEMETRY_TAG,
    TERMINATOR,
)

logger = logging.getLogger(__name__)


class SignalStrength(Enum):
    """Ordinal bucket derived from the car's raw RSSI reading."""
    UNKNOWN = 0
    WEAK = 1
    FAIR = 2
    GOOD = 3
    EXCELLENT = 4

    @classmethod
    def from_rssi(cls, rssi: Optional[int]) -> "SignalStrength":
        if rssi is None:
            return cls.UNKNOWN
        if rssi >= -60:
            return cls.EXCELLENT
        if rssi >= -70:
            return cls.GOOD
        if rssi >= -80:
            return cls.FAIR
        return cls.WEAK

    @property
    def label(self) -> str:
        return "N/A" if self is SignalStrength.UNKNOWN else self.name.capitalize()


@dataclass(frozen=True)
class Pong:
    sent_at_echo: str


@dataclass(frozen=True)
class Telemetry:
    rssi: Optional[int] = None
    distance: Optional[float] = None
    obstacle_avoidance: Optional[bool] = None


@dataclass(frozen=True)
class Authorization:
    authorized: bool
    principal: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class ObstacleEvent:
    active: bool
    distance: Optional[float] = None


@dataclass(frozen=True)
class Unknown:
    raw: str


@dataclass(frozen=True)
class DecodeFailure:
    """A tagged frame whose payload could not be turned into an event.

    Attributes:
        tag (str): The frame tag that was recognised (e.g. "TELEMETRY:").
        raw (str): The full frame text as received.
        reason (str): Human readable description of what was wrong.
    """
    tag: str
    raw: str
    reason: str


InboundEvent = Union[Pong, Telemetry, Authorization, ObstacleEvent, Unknown]
DecodeResult = Union[Pong, Telemetry, Authorization, ObstacleEvent, Unknown, DecodeFailure]


class PayloadError(ValueError):
    """Raised internally when a JSON payload is missing or has a bad field."""


def encode_command(command: Command) -> str:
    """Encodes a drive command as its wire frame, e.g. Command.FORWARD -> "1\\r\\n"."""
    return f"{int(command)}{TERMINATOR}"


def encode_keepalive() -> str:
    return f"{KEEPALIVE_TOKEN}{TERMINATOR}"


def _load_object(payload: str) -> Dict[str, Any]:
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise PayloadError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _optional_number(data: Dict[str, Any], key: str) -> Optional[float]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PayloadError(f"'{key}' must be a number, got {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise PayloadError(f"'{key}' must be finite, got {value!r}")
    return value


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        # Accept quoted integers such as "-65".
        try:
            return int(value, 10)
        except ValueError:
            raise PayloadError(f"'{key}' must be an integer, got {value!r}")
    number = _optional_number(data, key)
    return int(number)


def _optional_bool(data: Dict[str, Any], key: str) -> Optional[bool]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise PayloadError(f"'{key}' must be a boolean, got {value!r}")
    return value


def _required_bool(data: Dict[str, Any], key: str) -> bool:
    if key not in data:
        raise PayloadError(f"missing required field '{key}'")
    value = _optional_bool(data, key)
    if value is None:
        raise PayloadError(f"'{key}' must not be null")
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise PayloadError(f"'{key}' must be a string, got {value!r}")
    return value


def _parse_telemetry(payload: str) -> Telemetry:
    data = _load_object(payload)
    return Telemetry(
        rssi=_optional_int(data, "rssi"),
        distance=_optional_number(data, "distance"),
        obstacle_avoidance=_optional_bool(data, "obstacleAvoidance"),
    )


def _parse_authorization(payload: str) -> Authorization:
    data = _load_object(payload)
    return Authorization(
        authorized=_required_bool(data, "authorized"),
        principal=_optional_str(data, "user"),
        message=_optional_str(data, "message"),
    )


def _parse_obstacle(payload: str) -> ObstacleEvent:
    data = _load_object(payload)
    return ObstacleEvent(
        active=_required_bool(data, "active"),
        distance=_optional_number(data, "distance"),
    )


_JSON_PARSERS = {
    TELEMETRY_TAG: _parse_telemetry,
    RFID_TAG: _parse_authorization,
    OBSTACLE_TAG: _parse_obstacle,
}


def decode_frame(frame: str) -> DecodeResult:
    """
    Decodes one inbound text frame into a typed event.

    This function never raises: malformed payloads are returned as a
    DecodeFailure so the caller can report them and keep its previous state.

    Args:
        frame: A single frame as received from the transport. A trailing
               CR/LF terminator is tolerated.

    Returns:
        A Pong, Telemetry, Authorization, ObstacleEvent or Unknown event, or a
        DecodeFailure when a recognised tag carries an unusable payload.
    """
    if isinstance(frame, bytes):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as e:
            return DecodeFailure(tag="", raw=repr(frame), reason=f"invalid UTF-8: {e}")

    text = frame.rstrip("\r\n")

    if text.startswith(PONG_TAG):
        return Pong(sent_at_echo=text[len(PONG_TAG):])

    for tag, parser in _JSON_PARSERS.items():
        if text.startswith(tag):
            try:
                return parser(text[len(tag):])
            except json.JSONDecodeError as e:
                return DecodeFailure(tag=tag, raw=text, reason=f"invalid JSON: {e.msg}")
            except PayloadError as e:
                return DecodeFailure(tag=tag, raw=text, reason=str(e))
            except (ValueError, RecursionError) as e:
                return DecodeFailure(tag=tag, raw=text, reason=f"unusable payload: {type(e).__name__}")

    logger.debug(f"Frames: Unknown frame received: {text!r}")
    return Unknown(raw=text)
