import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..protocol.frames import Authorization

logger = logging.getLogger(__name__)

UNKNOWN_PRINCIPAL = "Unknown"


class AuthorizationState(Enum):
    WAITING = "WAITING"
    AUTHORIZED = "AUTHORIZED"
    UNAUTHORIZED = "UNAUTHORIZED"


@dataclass(frozen=True)
class AuthorizationSnapshot:
    state: AuthorizationState = AuthorizationState.WAITING
    principal: Optional[str] = None
    message: Optional[str] = None
    changed_at: Optional[datetime] = None


class AuthorizationGate:
    """
    Tracks the RFID authorization reported by the car and gates drive commands.

    Commands may only be dispatched while the state is AUTHORIZED. The gate is
    forced back to WAITING by `reset()` whenever the session leaves CONNECTED.
    """
    def __init__(self):
        self._snapshot = AuthorizationSnapshot()

    @property
    def state(self) -> AuthorizationState:
        return self._snapshot.state

    def permits(self) -> bool:
        return self._snapshot.state is AuthorizationState.AUTHORIZED

    def snapshot(self) -> AuthorizationSnapshot:
        return self._snapshot

    def apply(self, event: Authorization, now: Optional[datetime] = None) -> AuthorizationSnapshot:
        now = now or datetime.now()
        if event.authorized:
            self._snapshot = AuthorizationSnapshot(
                state=AuthorizationState.AUTHORIZED,
                principal=event.principal or UNKNOWN_PRINCIPAL,
                message=event.message,
                changed_at=now,
            )
            logger.info(f"AuthorizationGate: Authorized as '{self._snapshot.principal}'.")
        else:
            self._snapshot = AuthorizationSnapshot(
                state=AuthorizationState.UNAUTHORIZED,
                message=event.message,
                changed_at=now,
            )
            logger.warning(f"AuthorizationGate: Access denied ({event.message or 'no reason given'}).")
        return self._snapshot

    def reset(self, now: Optional[datetime] = None):
        if self._snapshot.state is not AuthorizationState.WAITING:
            logger.debug("AuthorizationGate: Reset to WAITING.")
        self._snapshot = AuthorizationSnapshot(changed_at=now)
