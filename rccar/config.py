import os
import logging
from dotenv import load_dotenv

from .protocol.commands import CONTROL_PORT as DEFAULT_CONTROL_PORT, KEEPALIVE_INTERVAL_S

logger = logging.getLogger(__name__)

# --- Environment Variable Loading ---
# The .env file is expected in the project's root directory, one level above
# this package. Example: if this file is /path/to/project/rccar/config.py,
# .env is expected at /path/to/project/.env
env_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info(f"Successfully loaded environment variables from {env_path}")
else:
    logger.debug(f".env file not found at {env_path}. Using default configurations.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- Vehicle Connection Configuration ---
# The car runs its own access point; 192.168.4.1 is the ESP32 soft-AP address.
VEHICLE_HOST = os.getenv("RCCAR_HOST", "192.168.4.1")

# Port of the control WebSocket on the car. Commands, keepalives, telemetry and
# RFID events all share this one link.
CONTROL_PORT = int(os.getenv("RCCAR_CONTROL_PORT", str(DEFAULT_CONTROL_PORT)))

# Use wss:// instead of ws:// (matches the scheme the page was served with).
SECURE = _env_bool("RCCAR_SECURE", False)

# Timeout in seconds for the WebSocket opening handshake.
CONNECT_TIMEOUT = float(os.getenv("RCCAR_CONNECT_TIMEOUT", "5.0"))

# --- Keepalive and Reconnection ---
KEEPALIVE_INTERVAL = float(os.getenv("RCCAR_KEEPALIVE_INTERVAL", str(KEEPALIVE_INTERVAL_S)))  # seconds
MAX_RECONNECT_ATTEMPTS = int(os.getenv("RCCAR_MAX_RECONNECT_ATTEMPTS", "3"))
RECONNECT_INITIAL_DELAY = float(os.getenv("RCCAR_RECONNECT_DELAY", "5.0"))  # seconds

# When false a reconnect is only suggested to the UI, never attempted on its own.
AUTO_RECONNECT = _env_bool("RCCAR_AUTO_RECONNECT", False)

# --- Logging ---
LOG_LEVEL = os.getenv("RCCAR_LOG_LEVEL", "INFO").upper()

# --- User Interface (UI) Configuration ---
WINDOW_WIDTH = 900
WINDOW_HEIGHT = 560
WINDOW_TITLE = "RC Car Remote"

# How often the window re-renders the published session state.
UI_REFRESH_INTERVAL_MS = 100


def control_url(host: str = VEHICLE_HOST, port: int = CONTROL_PORT, secure: bool = SECURE) -> str:
    """Builds the control-channel endpoint, e.g. ws://192.168.4.1:81."""
    scheme = "wss" if secure else "ws"
    return f"{scheme}://{host or '192.168.4.1'}:{port}"


def stream_url(host: str = VEHICLE_HOST, port: int = CONTROL_PORT) -> str:
    """Camera stream endpoint served by the car, for presentation layers only."""
    return f"http://{host or '192.168.4.1'}:{port}/stream"


logger.debug(
    f"Vehicle Connection Config: HOST={VEHICLE_HOST}, CONTROL_PORT={CONTROL_PORT}, "
    f"SECURE={SECURE}, KEEPALIVE_INTERVAL={KEEPALIVE_INTERVAL}, "
    f"MAX_RECONNECT_ATTEMPTS={MAX_RECONNECT_ATTEMPTS}, AUTO_RECONNECT={AUTO_RECONNECT}"
)
