import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, List, Optional

from ..control.authorization import AuthorizationGate
from ..control.resolver import CommandResolver, is_keyboard_input
from ..protocol.commands import (
    Command,
    KEEPALIVE_INTERVAL_S,
    NORMAL_CLOSURE,
    OBSTACLE_TAG,
    RFID_TAG,
    TELEMETRY_TAG,
    USER_DISCONNECT_REASON,
)
from ..protocol.frames import (
    Authorization,
    DecodeFailure,
    ObstacleEvent,
    Pong,
    SignalStrength,
    Telemetry,
    Unknown,
    decode_frame,
    encode_command,
    encode_keepalive,
)
from .keepalive import KeepaliveTimer, LatencyEstimator, monotonic_ms
from .reconnect import ReconnectPolicy, ReconnectSuggestion
from .state import (
    ConnectionPhase,
    Notification,
    SessionSnapshot,
    Severity,
    TelemetrySample,
)
from .transport import Scheduler, Transport, TransportError, TransportFactory

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}

_DECODE_FAILURE_MESSAGES = {
    TELEMETRY_TAG: "Error processing telemetry",
    RFID_TAG: "Invalid RFID data received",
    OBSTACLE_TAG: "Invalid obstacle data received",
}


@dataclass
class SessionConfig:
    """Values the session needs from configuration, kept free of the environment."""
    url: str
    keepalive_interval: float = KEEPALIVE_INTERVAL_S
    max_reconnect_attempts: int = 3
    reconnect_initial_delay: float = 5.0
    auto_reconnect: bool = False


def _format_distance(distance: float) -> str:
    return f"{distance:g}"


class Session:
    """
    Owns the control link to the car and drives its lifecycle.

    The session is single-threaded and event driven: every public method and
    every transport callback runs to completion and never blocks. It holds at
    most one transport at a time; events from any other transport instance are
    ignored, which is how late PONGs and close notifications from a released
    link are discarded.

    Collaborators call `request_connect`, `request_disconnect`, `input_down`,
    `input_up` and `set_keyboard_enabled`, and observe the link through
    `snapshot()` plus the state and notification listeners.

    Attributes:
        config (SessionConfig): Target URL, keepalive period and reconnect settings.
        phase (ConnectionPhase): Current connection phase.
        last_command (Command): Last command put on the wire.
        reconnect_attempts (int): Retries made since the last successful connection.
        keyboard_enabled (bool): Whether keyboard inputs are accepted.
        telemetry (TelemetrySample): Latest telemetry from the car.
    """
    def __init__(self, transport_factory: TransportFactory, scheduler: Scheduler,
                 config: SessionConfig,
                 clock: Callable[[], float] = monotonic_ms,
                 wall_clock: Callable[[], datetime] = datetime.now,
                 resolver: Optional[CommandResolver] = None):
        self.config = config
        self._transport_factory = transport_factory
        self._scheduler = scheduler
        self._wall_clock = wall_clock

        self._transport: Optional[Transport] = None
        self._user_closing = False
        self._retry_handle: Optional[Any] = None

        self.phase = ConnectionPhase.DISCONNECTED
        self.last_command = Command.STOP
        self.reconnect_attempts = 0
        self.reconnect_suggestion: Optional[ReconnectSuggestion] = None
        self.keyboard_enabled = True
        self.telemetry = TelemetrySample()
        self.last_notification: Optional[Notification] = None

        self.gate = AuthorizationGate()
        self.resolver = resolver or CommandResolver()
        self.latency = LatencyEstimator(clock)
        self.keepalive = KeepaliveTimer(scheduler, self._send_keepalive, config.keepalive_interval)
        self.reconnect_policy = ReconnectPolicy(
            max_attempts=config.max_reconnect_attempts,
            initial_delay=config.reconnect_initial_delay,
        )

        self._state_listeners: List[Callable[[SessionSnapshot], Any]] = []
        self._notification_listeners: List[Callable[[Notification], Any]] = []

    # --- Observation ---

    def add_state_listener(self, listener: Callable[[SessionSnapshot], Any]):
        """Registers a callback invoked with a fresh snapshot after every state change."""
        self._state_listeners.append(listener)

    def add_notification_listener(self, listener: Callable[[Notification], Any]):
        self._notification_listeners.append(listener)

    @property
    def connected(self) -> bool:
        return self.phase is ConnectionPhase.CONNECTED and self._transport is not None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            phase=self.phase,
            authorization=self.gate.snapshot(),
            telemetry=self.telemetry,
            latency_ms=self.latency.latency_ms,
            last_notification=self.last_notification,
            last_command=self.last_command,
            keyboard_enabled=self.keyboard_enabled,
            reconnect_attempts=self.reconnect_attempts,
            reconnect_suggestion=self.reconnect_suggestion,
            url=self.config.url,
        )

    def _publish(self):
        snapshot = self.snapshot()
        for listener in list(self._state_listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Session: State listener {listener!r} failed: {e}", exc_info=True)

    def _notify(self, message: str, severity: Severity = Severity.INFO):
        notification = Notification(message=message, severity=severity, timestamp=self._wall_clock())
        self.last_notification = notification
        logger.log(_LOG_LEVELS[severity], f"Session: [{severity.value}] {message}")
        for listener in list(self._notification_listeners):
            try:
                listener(notification)
            except Exception as e:
                logger.error(f"Session: Notification listener {listener!r} failed: {e}", exc_info=True)

    def _set_phase(self, phase: ConnectionPhase):
        if self.phase is not phase:
            logger.info(f"Session: {self.phase.value} -> {phase.value}")
        self.phase = phase
        self._publish()

    # --- Consumed calls ---

    def request_connect(self):
        """
        Opens a new transport to the configured URL.

        A no-op while a transport is open or connecting. Instantiation failures
        are reported as an ERROR phase followed by DISCONNECTED and are never
        retried automatically.
        """
        if self._transport is not None:
            logger.warning("Session: Connect requested, but a connection is already open or connecting.")
            return

        self._cancel_retry()
        if self.reconnect_suggestion is not None:
            # This connect is a retry after a lost connection.
            self.reconnect_attempts += 1
            self.reconnect_suggestion = None

        self._user_closing = False
        logger.info(f"Session: Attempting connect: {self.config.url}")
        try:
            transport = self._transport_factory(self.config.url, self)
        except TransportError as e:
            logger.error(f"Session: Transport instantiation failed: {e}")
            self._notify("Failed connection initialization", Severity.ERROR)
            self._set_phase(ConnectionPhase.ERROR)
            self._teardown()
            return

        self._transport = transport
        self._set_phase(ConnectionPhase.CONNECTING)

    def request_disconnect(self):
        """
        Closes the link with the normal closure code. State is reset when the
        close notification arrives; if nothing is open the reset happens now.
        """
        self._cancel_retry()
        self.reconnect_suggestion = None
        if self._transport is not None:
            logger.info("Session: Disconnect requested.")
            self._user_closing = True
            self._transport.close(NORMAL_CLOSURE, USER_DISCONNECT_REASON)
            return

        logger.info("Session: Disconnect requested, but not open or connecting.")
        self._closed(NORMAL_CLOSURE, "Already disconnected", clean=True)

    def input_down(self, input_id: str):
        if is_keyboard_input(input_id) and not self.keyboard_enabled:
            return
        command = self.resolver.press(input_id)
        if command is not None:
            self.send_command(command)

    def input_up(self, input_id: str):
        if is_keyboard_input(input_id) and not self.keyboard_enabled:
            return
        command = self.resolver.release(input_id)
        if command is not None:
            self.send_command(command)

    def set_keyboard_enabled(self, enabled: bool):
        self.keyboard_enabled = enabled
        self.resolver.clear()
        if not enabled and self.gate.permits():
            self.send_command(Command.STOP)
        self._notify(f"Keyboard controls {'enabled' if enabled else 'disabled'}", Severity.INFO)
        self._publish()

    # --- Send path ---

    def send_command(self, command: Command) -> bool:
        """
        Sends a resolved command, subject to authorization and deduplication.

        A command is rejected unless the car has authorized this operator. A
        non-STOP command equal to the last one sent is not retransmitted; STOP
        is always transmitted.

        Returns:
            True if a frame was handed to the transport.
        """
        command = Command(command)
        if not self.gate.permits():
            logger.warning(f"Session: Command {int(command)} blocked: RFID authentication required.")
            self._notify("Access denied: RFID not authenticated", Severity.ERROR)
            self._publish()
            return False

        if not self.connected:
            if command != Command.STOP:
                logger.warning(f"Session: Not open. Command not sent: {int(command)}")
                self._notify("Not connected", Severity.WARNING)
                self._publish()
            return False

        if command == self.last_command and command != Command.STOP:
            return False

        self._transport.send(encode_command(command))
        self.last_command = command
        logger.debug(f"Session: Sent command: {int(command)}")
        self._publish()
        return True

    def _send_keepalive(self):
        if not self.connected:
            self.keepalive.stop()
            self.latency.reset()
            self._publish()
            return
        self._transport.send(encode_keepalive())
        self.latency.probe_sent()

    # --- Transport listener ---

    def _is_current(self, transport: Transport, event: str) -> bool:
        if self._transport is None or transport is not self._transport:
            logger.debug(f"Session: Ignoring {event} from a released transport.")
            return False
        return True

    def on_open(self, transport: Transport):
        if not self._is_current(transport, "open"):
            return
        self.reconnect_attempts = 0
        self.reconnect_suggestion = None
        self.gate.reset(self._wall_clock())
        self._reset_telemetry()
        self.last_command = Command.STOP
        self._notify("Connected successfully", Severity.SUCCESS)
        self._set_phase(ConnectionPhase.CONNECTED)
        self.keepalive.start()

    def on_message(self, transport: Transport, frame: str):
        if not self._is_current(transport, "message"):
            return
        event = decode_frame(frame)

        if isinstance(event, Pong):
            if self.latency.acknowledged() is not None:
                self._publish()
        elif isinstance(event, Telemetry):
            self._apply_telemetry(event)
        elif isinstance(event, Authorization):
            self._apply_authorization(event)
        elif isinstance(event, ObstacleEvent):
            self._apply_obstacle(event)
        elif isinstance(event, DecodeFailure):
            logger.error(f"Session: Parse error ({event.reason}). Data: {event.raw!r}")
            self._notify(_DECODE_FAILURE_MESSAGES.get(event.tag, "Invalid data received"), Severity.ERROR)
            self._publish()
        elif isinstance(event, Unknown):
            logger.info(f"Session: Unknown WS msg: {event.raw!r}")

    def on_close(self, transport: Transport, code: int, reason: str, clean: bool):
        if not self._is_current(transport, "close"):
            return
        self._closed(code, reason, clean)

    def on_error(self, transport: Transport, error: Exception):
        if not self._is_current(transport, "error"):
            return
        logger.error(f"Session: WS Error: {error}")
        user_closing = self._user_closing
        self._notify("WebSocket connection error", Severity.ERROR)
        self._set_phase(ConnectionPhase.ERROR)
        self._teardown()
        if not user_closing:
            self._offer_reconnect()

    # --- Inbound state ---

    def _reset_telemetry(self):
        self.telemetry = TelemetrySample()
        self.resolver.block_forward(False)

    def _apply_telemetry(self, event: Telemetry):
        changes = {}
        if event.rssi is not None:
            changes["rssi"] = event.rssi
            changes["signal"] = SignalStrength.from_rssi(event.rssi)
        if event.distance is not None:
            changes["distance"] = event.distance
        if event.obstacle_avoidance is not None:
            changes["obstacle_active"] = event.obstacle_avoidance
            self.resolver.block_forward(event.obstacle_avoidance)
        self.telemetry = replace(self.telemetry, **changes)
        self._publish()

    def _apply_authorization(self, event: Authorization):
        snapshot = self.gate.apply(event, self._wall_clock())
        if event.authorized:
            self._notify(f"RFID Authorized: {snapshot.principal}", Severity.SUCCESS)
        else:
            self._notify(f"RFID Denied: {event.message or 'Invalid Card'}", Severity.ERROR)
        self._publish()

    def _apply_obstacle(self, event: ObstacleEvent):
        changes = {"obstacle_active": event.active}
        if event.distance is not None:
            changes["distance"] = event.distance
        self.telemetry = replace(self.telemetry, **changes)
        self.resolver.block_forward(event.active)
        if event.active:
            where = f" at {_format_distance(event.distance)}cm" if event.distance is not None else ""
            self._notify(f"Obstacle detected{where} - Moving backward", Severity.WARNING)
        else:
            self._notify("Path clear - Obstacle avoidance deactivated", Severity.SUCCESS)
        self._publish()

    # --- Teardown and reconnection ---

    def _closed(self, code: int, reason: str, clean: bool):
        logger.info(f"Session: WS Closed: Code={code}, Reason='{reason}', Clean={clean}")
        user_closing = self._user_closing
        self._teardown()
        if clean and code == NORMAL_CLOSURE:
            self._notify("Disconnected", Severity.INFO)
        else:
            self._notify(f"Connection lost (Code: {code})", Severity.ERROR)
            if not user_closing:
                self._offer_reconnect()
        self._publish()

    def _teardown(self):
        # Release the transport first so late events from it are ignored.
        self._transport = None
        self._user_closing = False
        self.keepalive.stop()
        self.latency.reset()
        self.gate.reset(self._wall_clock())
        self.resolver.clear()
        self.last_command = Command.STOP
        self._reset_telemetry()
        self._set_phase(ConnectionPhase.DISCONNECTED)

    def _offer_reconnect(self):
        suggestion = self.reconnect_policy.suggest(self.reconnect_attempts)
        self.reconnect_suggestion = suggestion
        if suggestion is None:
            logger.warning(f"Session: Reconnect attempts exhausted ({self.reconnect_attempts}).")
        elif self.config.auto_reconnect:
            logger.info(
                f"Session: Reconnecting in {suggestion.delay:.1f}s "
                f"(attempt {suggestion.attempt}/{suggestion.max_attempts})."
            )
            self._retry_handle = self._scheduler.call_later(suggestion.delay, self._retry)
        self._publish()

    def _retry(self):
        self._retry_handle = None
        self.request_connect()

    def _cancel_retry(self):
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
