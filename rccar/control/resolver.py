import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set

from ..protocol.commands import Command

logger = logging.getLogger(__name__)


class InputRole(Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    LEFT = "left"
    RIGHT = "right"
    STOP = "stop"


# --- Default Input Bindings ---
# Keyboard identifiers are lower-cased key names as reported by the UI layer.
KEY_BINDINGS: Dict[str, InputRole] = {
    "w": InputRole.FORWARD,
    "arrowup": InputRole.FORWARD,
    "s": InputRole.BACKWARD,
    "arrowdown": InputRole.BACKWARD,
    "a": InputRole.LEFT,
    "arrowleft": InputRole.LEFT,
    "d": InputRole.RIGHT,
    "arrowright": InputRole.RIGHT,
    " ": InputRole.STOP,  # Space
    "h": InputRole.STOP,  # Halt
}

# On-screen direction pad. Each button behaves as one held input.
PAD_BINDINGS: Dict[str, InputRole] = {
    "pad:forward": InputRole.FORWARD,
    "pad:backward": InputRole.BACKWARD,
    "pad:left": InputRole.LEFT,
    "pad:right": InputRole.RIGHT,
    "pad:stop": InputRole.STOP,
}

DEFAULT_BINDINGS: Dict[str, InputRole] = {**KEY_BINDINGS, **PAD_BINDINGS}


def normalize_input_id(input_id: str) -> str:
    # Space must survive normalization, so no strip().
    return input_id.lower()


def is_keyboard_input(input_id: str) -> bool:
    return normalize_input_id(input_id) in KEY_BINDINGS


class CommandResolver:
    """
    Converts the set of currently held inputs into a single drive Command.

    The command is recomputed from scratch on every press or release:
    forward wins over backward, left wins over right, and a held stop input
    overrides everything. While forward is blocked (the car is avoiding an
    obstacle) forward inputs are dropped and new forward presses are ignored.

    Attributes:
        bindings (Dict[str, InputRole]): Input identifier to role mapping.
        pressed (Set[str]): Identifiers currently held.
    """
    def __init__(self, bindings: Optional[Dict[str, InputRole]] = None):
        self.bindings = dict(bindings) if bindings is not None else dict(DEFAULT_BINDINGS)
        self.pressed: Set[str] = set()
        self.forward_blocked = False

    def role_of(self, input_id: str) -> Optional[InputRole]:
        return self.bindings.get(normalize_input_id(input_id))

    def press(self, input_id: str) -> Optional[Command]:
        """
        Marks an input as held and resolves the new command.

        Returns:
            The resolved Command, or None if the event changes nothing (unknown
            input, input already held, or a forward input while blocked).
        """
        key = normalize_input_id(input_id)
        role = self.bindings.get(key)
        if role is None:
            return None
        if key in self.pressed:
            return None
        if role is InputRole.FORWARD and self.forward_blocked:
            logger.info(f"CommandResolver: Forward input '{key}' ignored while obstacle avoidance is active.")
            return None
        self.pressed.add(key)
        return self.resolve()

    def release(self, input_id: str) -> Optional[Command]:
        """
        Marks an input as released and resolves the new command.

        Returns:
            The resolved Command, or None if the input was not held.
        """
        key = normalize_input_id(input_id)
        if key not in self.pressed:
            return None
        self.pressed.discard(key)
        return self.resolve()

    def clear(self):
        self.pressed.clear()

    def block_forward(self, blocked: bool):
        self.forward_blocked = blocked
        if blocked:
            self.pressed = {k for k in self.pressed if self.bindings.get(k) is not InputRole.FORWARD}

    def _active_roles(self) -> FrozenSet[InputRole]:
        return frozenset(self.bindings[k] for k in self.pressed if k in self.bindings)

    def resolve(self) -> Command:
        roles = self._active_roles()
        command = Command.STOP

        if InputRole.FORWARD in roles and not self.forward_blocked:
            command |= Command.FORWARD
        if InputRole.BACKWARD in roles:
            command |= Command.BACKWARD
        if Command.FORWARD in command and Command.BACKWARD in command:
            command &= ~Command.BACKWARD

        if InputRole.LEFT in roles:
            command |= Command.LEFT
        if InputRole.RIGHT in roles:
            command |= Command.RIGHT
        if Command.LEFT in command and Command.RIGHT in command:
            command &= ~Command.RIGHT

        if InputRole.STOP in roles:
            command = Command.STOP

        return command
