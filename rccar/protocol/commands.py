"""
Command Protocol for RC Car Control

This module defines the command protocol used for communication between the
remote client and the car's controller over the control WebSocket.
All frames are plain text lines terminated with CR LF.

Outbound frames:
1. Drive command - the decimal value of a Command bitmask
2. Keepalive     - the literal token PING

Command bits:
    STOP     = 0
    FORWARD  = 1
    BACKWARD = 2
    LEFT     = 4
    RIGHT    = 8

Bits combine with OR, so diagonal movement is a single value:

1. Drive forward:
    "1\\r\\n"

2. Forward while turning left:
    "5\\r\\n"

3. Stop:
    "0\\r\\n"

4. Keepalive:
    "PING\\r\\n"

Inbound frames are tagged with a colon-delimited prefix:
    PONG:<echo>
    TELEMETRY:{"rssi": -65, "distance": 42, "obstacleAvoidance": false}
    RFID:{"authorized": true, "user": "Alice"}
    OBSTACLE:{"active": true, "distance": 30}

Notes:
- FORWARD/BACKWARD and LEFT/RIGHT are opposed axes; a transmitted command never
  carries both bits of one axis
- STOP is always transmitted, even when the previous command was STOP
- The user-initiated close uses the normal closure code 1000
"""

from enum import IntFlag


class Command(IntFlag):
    """Drive command bitmask."""
    STOP = 0
    FORWARD = 1
    BACKWARD = 2
    LEFT = 4
    RIGHT = 8


# Framing
TERMINATOR = "\r\n"
KEEPALIVE_TOKEN = "PING"

# Inbound tags
PONG_TAG = "PONG:"
TELEMETRY_TAG = "TELEMETRY:"
RFID_TAG = "RFID:"
OBSTACLE_TAG = "OBSTACLE:"

# Close codes
NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
USER_DISCONNECT_REASON = "User disconnected"

# Constants
CONTROL_PORT = 81
KEEPALIVE_INTERVAL_S = 3.0
NEAR_DISTANCE_CM = 100  # Distance at or below which an obstacle is reported as near
