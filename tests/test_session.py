"""Tests for the Session state machine"""

from rccar.control.authorization import AuthorizationState
from rccar.network.state import ConnectionPhase, Proximity, Severity
from rccar.protocol.commands import Command
from rccar.protocol.frames import SignalStrength


def messages(session):
    return [n.message for n in session.notifications]


# --- Connection lifecycle ---

def test_connect_and_open(session, factory):
    """Opening the link resets state and starts the keepalive"""
    phases = []
    session.add_state_listener(lambda s: phases.append(s.phase))
    session.request_connect()
    assert session.phase is ConnectionPhase.CONNECTING
    assert factory.last.url == "ws://192.168.4.1:81"

    factory.last.open()
    assert session.phase is ConnectionPhase.CONNECTED
    assert session.gate.state is AuthorizationState.WAITING
    assert factory.last.sent == ["PING\r\n"]
    assert messages(session) == ["Connected successfully"]
    assert session.notifications[0].severity is Severity.SUCCESS
    assert phases[0] is ConnectionPhase.CONNECTING
    assert ConnectionPhase.CONNECTED in phases


def test_connect_while_connecting_is_noop(session, factory):
    session.request_connect()
    session.request_connect()
    assert len(factory.transports) == 1


def test_factory_failure(make_session, factory, scheduler):
    """A transport that cannot be created is reported and never retried"""
    session = make_session(auto_reconnect=True)
    phases = []
    session.add_state_listener(lambda s: phases.append(s.phase))
    factory.fail_next = True
    session.request_connect()
    assert messages(session) == ["Failed connection initialization"]
    assert phases[:2] == [ConnectionPhase.ERROR, ConnectionPhase.DISCONNECTED]
    assert session.phase is ConnectionPhase.DISCONNECTED
    assert scheduler.pending == []
    assert factory.transports == []


def test_user_disconnect(connected, factory, scheduler):
    transport = factory.last
    connected.request_disconnect()
    assert transport.close_calls == [(1000, "User disconnected")]

    transport.closed(1000, "User disconnected", clean=True)
    assert connected.phase is ConnectionPhase.DISCONNECTED
    assert connected.last_notification.message == "Disconnected"
    assert connected.last_notification.severity is Severity.INFO
    assert connected.reconnect_suggestion is None
    assert scheduler.pending == []


def test_disconnect_when_idle(session):
    session.request_disconnect()
    assert session.phase is ConnectionPhase.DISCONNECTED
    assert messages(session) == ["Disconnected"]


def test_unclean_close_reports_error(connected, factory):
    factory.last.closed(1006, "", clean=False)
    assert connected.phase is ConnectionPhase.DISCONNECTED
    assert connected.last_notification.message == "Connection lost (Code: 1006)"
    assert connected.last_notification.severity is Severity.ERROR
    assert connected.reconnect_suggestion.attempt == 1


def test_clean_close_with_other_code_is_a_loss(connected, factory):
    factory.last.closed(1001, "going away", clean=True)
    assert connected.last_notification.message == "Connection lost (Code: 1001)"


def test_user_disconnect_never_offers_reconnect(connected, factory):
    connected.request_disconnect()
    factory.last.closed(1006, "", clean=False)
    assert connected.last_notification.severity is Severity.ERROR
    assert connected.reconnect_suggestion is None


def test_transport_error(connected, factory):
    phases = []
    connected.add_state_listener(lambda s: phases.append(s.phase))
    factory.last.fail()
    assert "WebSocket connection error" in messages(connected)
    assert phases[:2] == [ConnectionPhase.ERROR, ConnectionPhase.DISCONNECTED]
    assert connected.reconnect_suggestion is not None


def test_state_reset_on_close(authorized, factory):
    factory.last.receive('TELEMETRY:{"rssi":-50,"distance":20,"obstacleAvoidance":true}')
    factory.last.receive("PONG:1")
    factory.last.closed(1000, "", clean=True)
    snapshot = authorized.snapshot()
    assert snapshot.authorization.state is AuthorizationState.WAITING
    assert snapshot.telemetry.signal is SignalStrength.UNKNOWN
    assert snapshot.telemetry.proximity is Proximity.UNKNOWN
    assert snapshot.latency_ms is None
    assert authorized.resolver.pressed == set()
    assert not authorized.resolver.forward_blocked


# --- Authorization and sending ---

def test_commands_blocked_until_authorized(connected, factory):
    """Nothing but keepalives reaches the wire while unauthorized"""
    connected.input_down("w")
    connected.input_up("w")
    connected.input_down("pad:left")
    assert factory.last.commands == []
    assert "Access denied: RFID not authenticated" in messages(connected)


def test_authorized_drive(authorized, factory):
    authorized.input_down("w")
    authorized.input_down("a")
    authorized.input_up("w")
    authorized.input_up("a")
    assert factory.last.commands == ["1\r\n", "5\r\n", "4\r\n", "0\r\n"]
    assert authorized.snapshot().last_command == 0


def test_authorized_notification(connected, factory):
    factory.last.receive('RFID:{"authorized":true,"user":"Alice"}')
    snapshot = connected.snapshot().authorization
    assert snapshot.state is AuthorizationState.AUTHORIZED
    assert snapshot.principal == "Alice"
    assert connected.last_notification.message == "RFID Authorized: Alice"


def test_stop_always_resent(authorized, factory):
    assert authorized.send_command(Command.STOP)
    assert authorized.send_command(Command.STOP)
    assert authorized.send_command(Command.FORWARD)
    assert not authorized.send_command(Command.FORWARD)
    assert factory.last.commands == ["0\r\n", "0\r\n", "1\r\n"]


def test_denial_blocks_next_command(authorized, factory):
    factory.last.receive('RFID:{"authorized":false,"message":"Unknown card"}')
    auth = authorized.snapshot().authorization
    assert auth.state is AuthorizationState.UNAUTHORIZED
    assert auth.message == "Unknown card"
    assert authorized.last_notification.message == "RFID Denied: Unknown card"

    authorized.input_down("w")
    assert factory.last.commands == []
    assert authorized.last_notification.message == "Access denied: RFID not authenticated"


def test_denial_without_message(connected, factory):
    factory.last.receive('RFID:{"authorized":false}')
    assert connected.last_notification.message == "RFID Denied: Invalid Card"


def test_malformed_rfid_keeps_state(authorized, factory):
    factory.last.receive('RFID:{"user":"Mallory"}')
    assert authorized.gate.state is AuthorizationState.AUTHORIZED
    assert messages(authorized) == ["Invalid RFID data received"]


def test_keyboard_toggle(authorized, factory):
    authorized.input_down("w")
    authorized.set_keyboard_enabled(False)
    assert factory.last.commands == ["1\r\n", "0\r\n"]
    assert authorized.last_notification.message == "Keyboard controls disabled"

    authorized.input_down("s")
    assert factory.last.commands == ["1\r\n", "0\r\n"]
    authorized.input_down("pad:backward")
    assert factory.last.commands[-1] == "2\r\n"

    authorized.set_keyboard_enabled(True)
    assert authorized.last_notification.message == "Keyboard controls enabled"
    assert authorized.snapshot().keyboard_enabled


# --- Inbound telemetry ---

def test_telemetry_partial_update(connected, factory):
    factory.last.receive('TELEMETRY:{"rssi":-65,"distance":42}')
    telemetry = connected.snapshot().telemetry
    assert telemetry.signal is SignalStrength.GOOD
    assert telemetry.rssi == -65
    assert telemetry.distance == 42
    assert telemetry.obstacle_active is False
    assert telemetry.proximity is Proximity.NEAR

    factory.last.receive('TELEMETRY:{"distance":150}')
    telemetry = connected.snapshot().telemetry
    assert telemetry.signal is SignalStrength.GOOD
    assert telemetry.proximity is Proximity.CLEAR


def test_malformed_telemetry(connected, factory):
    """A bad telemetry frame raises one notification and changes nothing"""
    factory.last.receive('TELEMETRY:{"rssi":-65,"distance":42}')
    before = connected.snapshot().telemetry
    connected.notifications.clear()

    factory.last.receive("TELEMETRY:{broken")
    assert messages(connected) == ["Error processing telemetry"]
    assert connected.notifications[0].severity is Severity.ERROR
    assert connected.snapshot().telemetry == before


def test_non_finite_telemetry_keeps_link(connected, factory):
    """NaN and Infinity are valid to the JSON parser but not usable telemetry"""
    factory.last.receive('TELEMETRY:{"rssi":-65,"distance":42}')
    before = connected.snapshot().telemetry
    connected.notifications.clear()

    factory.last.receive('TELEMETRY:{"rssi": NaN}')
    factory.last.receive('TELEMETRY:{"distance": Infinity}')
    assert messages(connected) == ["Error processing telemetry"] * 2
    assert connected.snapshot().telemetry == before
    assert connected.phase is ConnectionPhase.CONNECTED


def test_unknown_frame_ignored(connected, factory):
    before = connected.snapshot()
    connected.notifications.clear()
    factory.last.receive("HELLO")
    assert connected.notifications == []
    assert connected.snapshot() == before


def test_obstacle_blocks_forward(authorized, factory):
    factory.last.receive('OBSTACLE:{"active":true,"distance":30}')
    assert authorized.last_notification.message == "Obstacle detected at 30cm - Moving backward"
    assert authorized.snapshot().telemetry.proximity is Proximity.AVOIDING
    assert factory.last.commands == []

    authorized.input_down("w")
    authorized.input_down("d")
    assert factory.last.commands == ["8\r\n"]

    factory.last.receive('OBSTACLE:{"active":false}')
    assert authorized.last_notification.message == "Path clear - Obstacle avoidance deactivated"
    authorized.input_down("arrowup")
    assert factory.last.commands[-1] == "9\r\n"


def test_obstacle_drops_held_forward(authorized, factory):
    authorized.input_down("w")
    factory.last.receive('TELEMETRY:{"obstacleAvoidance":true}')
    authorized.input_down("a")
    assert factory.last.commands == ["1\r\n", "4\r\n"]


# --- Keepalive and latency ---

def test_keepalive_and_latency(connected, factory, scheduler, clock):
    assert factory.last.sent == ["PING\r\n"]
    clock.value += 25
    factory.last.receive("PONG:1")
    assert connected.snapshot().latency_ms == 25

    scheduler.advance(3.0)
    assert factory.last.sent == ["PING\r\n", "PING\r\n"]
    clock.value += 10
    factory.last.receive("PONG:2")
    assert connected.snapshot().latency_ms == 10


def test_unsolicited_pong_ignored(connected, factory):
    factory.last.receive("PONG:1")
    factory.last.receive("PONG:1")
    assert connected.latency.outstanding is None


def test_keepalive_cancelled_on_close(connected, factory, scheduler):
    transport = factory.last
    transport.closed(1000, "", clean=True)
    assert not connected.keepalive.running
    assert scheduler.pending == []
    scheduler.advance(30.0)
    assert transport.sent == ["PING\r\n"]


def test_stale_transport_events_ignored(connected, factory):
    """Events from a released transport never touch the session"""
    old = factory.last
    old.closed(1006, "", clean=False)
    connected.request_connect()
    new = factory.last
    assert new is not old
    connected.notifications.clear()

    old.open()
    old.receive('RFID:{"authorized":true,"user":"Alice"}')
    old.receive("PONG:1")
    old.closed(1000, "", clean=True)
    old.fail()
    assert connected.phase is ConnectionPhase.CONNECTING
    assert connected.gate.state is AuthorizationState.WAITING
    assert connected.notifications == []

    new.open()
    assert connected.phase is ConnectionPhase.CONNECTED


def test_late_pong_after_disconnect(connected, factory):
    transport = factory.last
    connected.request_disconnect()
    transport.closed(1000, "User disconnected", clean=True)
    transport.receive("PONG:1")
    assert connected.snapshot().latency_ms is None


# --- Reconnection ---

def test_manual_reconnect_counts_attempts(connected, factory):
    factory.last.closed(1006, "", clean=False)
    assert connected.reconnect_suggestion.attempt == 1
    connected.request_connect()
    assert connected.reconnect_attempts == 1
    assert connected.reconnect_suggestion is None

    factory.last.open()
    assert connected.reconnect_attempts == 0


def test_auto_reconnect_is_bounded(make_session, factory, scheduler):
    session = make_session(auto_reconnect=True, max_reconnect_attempts=2)
    session.request_connect()
    factory.last.open()
    factory.last.closed(1006, "", clean=False)

    scheduler.advance(60.0)
    assert len(factory.transports) == 2
    factory.last.fail()

    scheduler.advance(60.0)
    assert len(factory.transports) == 3
    factory.last.fail()

    scheduler.advance(600.0)
    assert len(factory.transports) == 3
    assert session.reconnect_suggestion is None
    assert session.phase is ConnectionPhase.DISCONNECTED
    assert scheduler.pending == []


def test_successful_reconnect_resets_budget(make_session, factory, scheduler):
    session = make_session(auto_reconnect=True, max_reconnect_attempts=1)
    session.request_connect()
    factory.last.open()
    factory.last.closed(1006, "", clean=False)
    scheduler.advance(60.0)
    factory.last.open()
    assert session.reconnect_attempts == 0

    factory.last.closed(1006, "", clean=False)
    assert session.reconnect_suggestion is not None


def test_disconnect_cancels_pending_retry(make_session, factory, scheduler):
    session = make_session(auto_reconnect=True)
    session.request_connect()
    factory.last.open()
    factory.last.closed(1006, "", clean=False)
    assert len(scheduler.pending) == 1

    session.request_disconnect()
    assert scheduler.pending == []
    assert session.reconnect_suggestion is None
    scheduler.advance(600.0)
    assert len(factory.transports) == 1
