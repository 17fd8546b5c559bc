"""Session state types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from wagate.session.supervisor import ConnectionSupervisor


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_AUTH = "awaiting_auth"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


@dataclass
class AuthChallenge:
    """Pairing code shown while a session waits to be linked."""
    code: str
    image: str                  # PNG data URI
    issued_at: int = field(default_factory=now_ms)


@dataclass
class ConnectionHealth:
    last_heartbeat_ok_at: int | None = None
    consecutive_failures: int = 0
    restart_scheduled: bool = False
    restart_count: int = 0
    restarts_since_ready: int = 0
    last_failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastHeartbeatOkAt": self.last_heartbeat_ok_at,
            "consecutiveFailures": self.consecutive_failures,
            "restartScheduled": self.restart_scheduled,
            "restartCount": self.restart_count,
            "lastFailureReason": self.last_failure_reason,
        }


@dataclass
class Session:
    id: str
    state: SessionState = SessionState.UNINITIALIZED
    created_at: int = field(default_factory=now_ms)
    last_activity_at: int = field(default_factory=now_ms)
    last_activity_monotonic: float = field(default_factory=time.monotonic)
    pending_auth_challenge: AuthChallenge | None = None
    info: dict[str, Any] | None = None
    supervisor: ConnectionSupervisor | None = field(default=None, repr=False)

    def touch(self) -> None:
        self.last_activity_at = now_ms()
        self.last_activity_monotonic = time.monotonic()

    def set_state(self, state: SessionState) -> SessionState:
        """Move to ``state``; leaving AWAITING_AUTH always drops the challenge."""
        previous = self.state
        self.state = state
        if state is not SessionState.AWAITING_AUTH:
            self.pending_auth_challenge = None
        if state in (SessionState.DISCONNECTED, SessionState.DESTROYED):
            self.info = None
        return previous

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    def idle_for(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity_monotonic
