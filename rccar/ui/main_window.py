from PyQt6.QtWidgets import (QMainWindow, QWidget, QVBoxLayout, QHBoxLayout,
                             QPushButton, QLabel, QGridLayout, QGroupBox,
                             QFormLayout, QCheckBox)
from PyQt6.QtCore import Qt, QTimer
from PyQt6.QtGui import QKeyEvent, QCloseEvent
import logging
from typing import Dict, Optional

from .. import config
from ..control.authorization import AuthorizationState
from ..network.client import VehicleClient
from ..network.state import ConnectionPhase, Notification, SessionSnapshot, Severity

logger = logging.getLogger(__name__)

# Qt key -> logical input identifier understood by the CommandResolver.
_KEY_INPUTS = {
    Qt.Key.Key_W: "w",
    Qt.Key.Key_Up: "arrowup",
    Qt.Key.Key_S: "s",
    Qt.Key.Key_Down: "arrowdown",
    Qt.Key.Key_A: "a",
    Qt.Key.Key_Left: "arrowleft",
    Qt.Key.Key_D: "d",
    Qt.Key.Key_Right: "arrowright",
    Qt.Key.Key_Space: " ",
    Qt.Key.Key_H: "h",
}
# QKeyEvent.key() returns a plain int, which may not be a Qt.Key member.
QT_KEY_TO_INPUT: Dict[int, str] = {key.value: input_id for key, input_id in _KEY_INPUTS.items()}

SEVERITY_COLORS = {
    Severity.INFO: "#2196F3",
    Severity.SUCCESS: "#4CAF50",
    Severity.WARNING: "#FFA500",
    Severity.ERROR: "#d32f2f",
}


class KeyDisplay(QLabel):
    """
    A QLabel that visually represents a keyboard key, changing appearance
    when active (pressed).
    """
    def __init__(self, key_text: str, width: int = 35, height: int = 35):
        super().__init__(key_text)
        self.setAlignment(Qt.AlignmentFlag.AlignCenter)
        self.setFixedSize(width, height)
        self._active = False
        self._update_style()

    def set_active(self, active: bool):
        if self._active != active:
            self._active = active
            self._update_style()

    def _update_style(self):
        background, border = ("#4CAF50", "#45a049") if self._active else ("#2c2c2c", "#3c3c3c")
        self.setStyleSheet(f"""
            QLabel {{
                background-color: {background};
                color: white;
                border: 2px solid {border};
                border-radius: 4px;
                font-size: 14px;
                font-weight: bold;
            }}
        """)


class MainWindow(QMainWindow):
    """
    The main window for the RC Car Remote.

    Renders the session state published by VehicleClient (connection phase,
    RFID authorization, telemetry, latency) and turns key presses and the
    on-screen direction pad into input_down/input_up calls. The window holds
    no protocol state of its own.
    """
    def __init__(self, client: Optional[VehicleClient] = None):
        super().__init__()
        self.setWindowTitle(config.WINDOW_TITLE)
        self.setGeometry(100, 100, config.WINDOW_WIDTH, config.WINDOW_HEIGHT)

        # Enable strong focus to capture key events directly on the main window
        self.setFocusPolicy(Qt.FocusPolicy.StrongFocus)
        self.setFocus()

        self.client = client or VehicleClient()
        self.client.start()

        self.key_displays: Dict[str, KeyDisplay] = {}
        self.pad_buttons: Dict[str, QPushButton] = {}
        self._phase = ConnectionPhase.DISCONNECTED

        self._setup_ui()
        self._connect_signals()

        # Timer for rendering the published session state
        self.state_update_timer = QTimer(self)
        self.state_update_timer.timeout.connect(self.update_state_display)
        self.state_update_timer.start(config.UI_REFRESH_INTERVAL_MS)

        self.update_state_display()
        logger.info("MainWindow initialized.")

    def _setup_ui(self):
        central_widget = QWidget()
        self.setCentralWidget(central_widget)
        main_layout = QHBoxLayout(central_widget)

        status_column = QVBoxLayout()
        status_column.addWidget(self._create_connection_group())
        status_column.addWidget(self._create_authorization_group())
        status_column.addWidget(self._create_telemetry_group())
        status_column.addStretch(1)
        main_layout.addLayout(status_column, stretch=1)

        control_column = QVBoxLayout()
        control_column.addWidget(self._create_key_display_group())
        control_column.addWidget(self._create_direction_pad_group())
        control_column.addStretch(1)
        main_layout.addLayout(control_column, stretch=1)

    def _create_connection_group(self) -> QGroupBox:
        group = QGroupBox("Connection")
        layout = QFormLayout(group)
        self.phase_label = QLabel(ConnectionPhase.DISCONNECTED.value)
        self.details_label = QLabel("Not connected to device")
        self.connect_button = QPushButton("Connect")
        self.keyboard_checkbox = QCheckBox("Keyboard controls")
        self.keyboard_checkbox.setChecked(True)
        layout.addRow("WebSocket:", self.phase_label)
        layout.addRow(self.details_label)
        layout.addRow(self.connect_button)
        layout.addRow(self.keyboard_checkbox)
        return group

    def _create_authorization_group(self) -> QGroupBox:
        group = QGroupBox("RFID")
        layout = QFormLayout(group)
        self.auth_state_label = QLabel(AuthorizationState.WAITING.value)
        self.auth_details_label = QLabel("Present RFID card")
        self.auth_time_label = QLabel("")
        layout.addRow("State:", self.auth_state_label)
        layout.addRow(self.auth_details_label)
        layout.addRow(self.auth_time_label)
        return group

    def _create_telemetry_group(self) -> QGroupBox:
        group = QGroupBox("Telemetry")
        layout = QFormLayout(group)
        self.signal_label = QLabel("N/A")
        self.latency_label = QLabel("--- ms")
        self.distance_label = QLabel("--- cm")
        self.obstacle_label = QLabel("N/A")
        layout.addRow("Signal:", self.signal_label)
        layout.addRow("Latency:", self.latency_label)
        layout.addRow("Distance:", self.distance_label)
        layout.addRow("Obstacle:", self.obstacle_label)
        return group

    def _create_key_display_group(self) -> QGroupBox:
        """Creates the GroupBox for WASD and Space key displays."""
        group = QGroupBox("Keyboard (WASD / Arrows)")
        layout = QGridLayout(group)
        for input_id, text, row, col in (("w", "W", 0, 1), ("a", "A", 1, 0),
                                          ("s", "S", 1, 1), ("d", "D", 1, 2)):
            display = KeyDisplay(text)
            self.key_displays[input_id] = display
            layout.addWidget(display, row, col)
        space = KeyDisplay("SPACE (STOP)", width=150, height=35)
        self.key_displays[" "] = space
        layout.addWidget(space, 2, 0, 1, 3)
        return group

    def _create_direction_pad_group(self) -> QGroupBox:
        """Creates the on-screen direction pad. Each button is held like a key."""
        group = QGroupBox("Direction Pad")
        layout = QGridLayout(group)
        for input_id, text, row, col in (("pad:forward", "▲", 0, 1), ("pad:left", "◀", 1, 0),
                                          ("pad:stop", "■", 1, 1), ("pad:right", "▶", 1, 2),
                                          ("pad:backward", "▼", 2, 1)):
            button = QPushButton(text)
            button.setFixedSize(60, 60)
            button.setFocusPolicy(Qt.FocusPolicy.NoFocus)
            if input_id == "pad:stop":
                button.setStyleSheet("background-color: #d32f2f; color: white; font-weight: bold;")
            self.pad_buttons[input_id] = button
            layout.addWidget(button, row, col)
        return group

    def _connect_signals(self):
        self.connect_button.clicked.connect(self.toggle_connection)
        self.keyboard_checkbox.toggled.connect(self.on_keyboard_toggled)
        for input_id, button in self.pad_buttons.items():
            # released also fires when the pointer is dragged off a held button
            button.pressed.connect(lambda i=input_id: self.client.input_down(i))
            button.released.connect(lambda i=input_id: self.client.input_up(i))
        logger.debug("MainWindow signals connected.")

    # --- Keyboard ---

    def keyPressEvent(self, event: QKeyEvent):
        if event.isAutoRepeat():  # The resolver tracks held keys; repeats carry no information
            return
        input_id = QT_KEY_TO_INPUT.get(event.key())
        if input_id is None or not self.keyboard_checkbox.isChecked():
            super().keyPressEvent(event)
            return
        self._set_key_display(input_id, True)
        self.client.input_down(input_id)
        event.accept()

    def keyReleaseEvent(self, event: QKeyEvent):
        if event.isAutoRepeat():
            return
        input_id = QT_KEY_TO_INPUT.get(event.key())
        if input_id is None or not self.keyboard_checkbox.isChecked():
            super().keyReleaseEvent(event)
            return
        self._set_key_display(input_id, False)
        self.client.input_up(input_id)
        event.accept()

    def _set_key_display(self, input_id: str, active: bool):
        aliases = {"arrowup": "w", "arrowdown": "s", "arrowleft": "a", "arrowright": "d", "h": " "}
        display = self.key_displays.get(aliases.get(input_id, input_id))
        if display:
            display.set_active(active)

    def _clear_key_displays(self):
        for display in self.key_displays.values():
            display.set_active(False)

    # --- Actions ---

    def toggle_connection(self):
        if self._phase is ConnectionPhase.DISCONNECTED:
            self.client.request_connect()
        elif self._phase is ConnectionPhase.CONNECTED:
            self.client.request_disconnect()
        self.setFocus()

    def on_keyboard_toggled(self, enabled: bool):
        self._clear_key_displays()
        self.client.set_keyboard_enabled(enabled)
        self.setFocus()

    # --- Rendering ---

    def update_state_display(self):
        """Periodically called by QTimer to render the latest snapshot and notifications."""
        snapshot = self.client.snapshot()
        if snapshot is not None:
            self._render_snapshot(snapshot)
        notification = self.client.get_notification()
        while notification is not None:
            self._show_notification(notification)
            notification = self.client.get_notification()

    def _render_snapshot(self, snapshot: SessionSnapshot):
        if snapshot.phase is not self._phase and snapshot.phase is ConnectionPhase.DISCONNECTED:
            self._clear_key_displays()
        self._phase = snapshot.phase

        self.phase_label.setText(snapshot.phase.value)
        connected = snapshot.phase is ConnectionPhase.CONNECTED
        self.details_label.setText(f"Connected to {snapshot.url}" if connected else "Not connected to device")
        self.connect_button.setText("Disconnect" if connected else
                                    "Connecting..." if snapshot.phase is ConnectionPhase.CONNECTING else "Connect")
        self.connect_button.setEnabled(snapshot.phase is not ConnectionPhase.CONNECTING)

        auth = snapshot.authorization
        self.auth_state_label.setText(auth.state.value)
        if auth.state is AuthorizationState.AUTHORIZED:
            self.auth_details_label.setText(f"User: {auth.principal}")
            self.auth_time_label.setText(f"Access: {auth.changed_at:%H:%M:%S}" if auth.changed_at else "")
        elif auth.state is AuthorizationState.UNAUTHORIZED:
            self.auth_details_label.setText(auth.message or "Access Denied")
            self.auth_time_label.setText("")
        else:
            self.auth_details_label.setText("Present RFID card")
            self.auth_time_label.setText("")

        telemetry = snapshot.telemetry
        self.signal_label.setText(telemetry.signal.label)
        self.latency_label.setText(f"{snapshot.latency_ms:.0f} ms" if snapshot.latency_ms is not None else "--- ms")
        self.distance_label.setText(f"{telemetry.distance:g} cm" if telemetry.distance is not None else "--- cm")
        self.obstacle_label.setText(telemetry.proximity.value)
        self.pad_buttons["pad:forward"].setEnabled(not telemetry.obstacle_active)

    def _show_notification(self, notification: Notification):
        color = SEVERITY_COLORS.get(notification.severity, "white")
        self.statusBar().setStyleSheet(f"color: {color};")
        self.statusBar().showMessage(notification.message, 3000)

    def closeEvent(self, event: QCloseEvent):
        """Handles the main window close event to ensure graceful shutdown of the client."""
        logger.info("MainWindow: closeEvent triggered. Initiating shutdown of VehicleClient.")
        self.state_update_timer.stop()
        if self.client:
            self.client.stop()  # This method waits for its thread
        super().closeEvent(event)
