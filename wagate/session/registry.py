"""Session registry: named sessions, capacity limit, restore and idle expiry."""

import asyncio
import re
from pathlib import Path
from typing import Any

from loguru import logger

from wagate.backend.base import BackendFactory
from wagate.config import Config
from wagate.cron.periodic import PeriodicTask
from wagate.errors import CapacityExceeded, Conflict, GatewayError, NotFound, NotReady, ValidationError
from wagate.relay.gateway import MessageGateway
from wagate.session.models import AuthChallenge, Session, SessionState
from wagate.session.supervisor import ConnectionSupervisor

SESSION_DIR_PREFIX = "session-"
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,50}$")


def validate_session_id(session_id: str) -> str:
    if not SESSION_ID_RE.match(session_id or ""):
        raise ValidationError(
            "Validation error",
            details=["Session id must be 1-50 characters of letters, digits, '_' or '-'"],
        )
    return session_id


class SessionRegistry:
    """Tracks live sessions. Each entry owns exactly one supervisor."""

    def __init__(
        self,
        config: Config,
        backend_factory: BackendFactory,
        gateway: MessageGateway | None = None,
    ):
        self.config = config
        self._factory = backend_factory
        self._gateway = gateway
        self._sessions: dict[str, Session] = {}
        self._sweeper: PeriodicTask | None = None

    @property
    def max_sessions(self) -> int:
        return self.config.sessions.max_sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def ids(self) -> list[str]:
        return list(self._sessions)

    def create(self, session_id: str, allow_existing: bool = False) -> Session:
        """Register a session and request its backend; does not wait for Ready."""
        validate_session_id(session_id)
        existing = self._sessions.get(session_id)
        if existing is not None:
            if not allow_existing:
                raise Conflict(f"Session {session_id} already exists")
            logger.info(f"Session {session_id} already exists, keeping the live instance")
            return existing

        if len(self._sessions) >= self.max_sessions:
            raise CapacityExceeded(f"Maximum sessions limit ({self.max_sessions}) reached")

        session = Session(id=session_id)
        on_message = self._gateway.handler() if self._gateway else None
        supervisor = ConnectionSupervisor(session, self.config, self._factory, on_message=on_message)
        session.supervisor = supervisor
        self._sessions[session_id] = session
        supervisor.start()
        logger.info(f"Session {session_id} created ({len(self._sessions)}/{self.max_sessions})")
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        session.touch()
        return session

    def supervisor(self, session_id: str) -> ConnectionSupervisor:
        session = self.get(session_id)
        if session.supervisor is None:
            raise NotReady(f"Session {session_id} has no running supervisor")
        return session.supervisor

    def qr(self, session_id: str) -> AuthChallenge:
        session = self._sessions.get(session_id)
        challenge = session.pending_auth_challenge if session else None
        if challenge is None:
            raise NotFound(
                f"No QR code available for session {session_id}. Make sure the session is initializing."
            )
        return challenge

    def status(self, session_id: str) -> dict[str, Any]:
        session = self._sessions.get(session_id)
        if session is None:
            return {"exists": False}
        health = session.supervisor.health.to_dict() if session.supervisor else None
        return {
            "exists": True,
            "status": session.state.value,
            "ready": session.is_ready,
            "hasQR": session.pending_auth_challenge is not None,
            "createdAt": session.created_at,
            "lastActivity": session.last_activity_at,
            "info": session.info,
            "health": health,
        }

    def status_all(self) -> dict[str, Any]:
        return {
            "count": len(self._sessions),
            "maxSessions": self.max_sessions,
            "sessions": {sid: self.status(sid) for sid in self._sessions},
        }

    async def destroy(self, session_id: str, logout: bool = True) -> None:
        """Best-effort logout and teardown. The entry is always removed."""
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        try:
            if session.supervisor is not None:
                if logout:
                    await session.supervisor.logout()
                await session.supervisor.stop()
        except Exception as e:
            logger.warning(f"Error destroying session {session_id}: {e}")
        finally:
            if self._sessions.get(session_id) is session:
                del self._sessions[session_id]
            session.set_state(SessionState.DESTROYED)
        logger.info(f"Session {session_id} destroyed")

    async def destroy_all(self, logout: bool = False) -> None:
        results = await asyncio.gather(
            *(self.destroy(sid, logout=logout) for sid in list(self._sessions)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Error destroying session during shutdown: {result}")
        self._sessions.clear()

    @staticmethod
    def _scan_auth_dir(root: Path) -> list[str]:
        if not root.exists():
            return []
        return sorted(
            entry.name[len(SESSION_DIR_PREFIX):]
            for entry in root.iterdir()
            if entry.is_dir() and entry.name.startswith(SESSION_DIR_PREFIX) and len(entry.name) > len(SESSION_DIR_PREFIX)
        )

    async def restore_all(self) -> list[str]:
        """Recreate sessions for every persisted credential directory.

        One bad directory never blocks the others.
        """
        root = self.config.auth_root()
        try:
            ids = await asyncio.to_thread(self._scan_auth_dir, root)
        except OSError as e:
            logger.error(f"Error during session restoration: {e}")
            return []
        if not ids:
            logger.info(f"No existing session data found in {root}")
            return []

        restored: list[str] = []
        for session_id in ids:
            if session_id in self._sessions:
                logger.warning(f"Failed to restore session {session_id}: Session {session_id} already exists")
                continue
            logger.info(f"Restoring session: {session_id}")
            try:
                self.create(session_id, allow_existing=True)
                restored.append(session_id)
            except GatewayError as e:
                logger.error(f"Failed to restore session {session_id}: {e.message}")
        return restored

    async def sweep_idle(self, timeout: float) -> list[str]:
        """Destroy sessions idle for longer than ``timeout`` seconds.

        Credentials are kept (no logout) so the session can be restored later.
        """
        expired = [sid for sid, s in self._sessions.items() if s.idle_for() > timeout]
        for session_id in expired:
            logger.info(f"Cleaning up inactive session: {session_id}")
            try:
                await self.destroy(session_id, logout=False)
            except NotFound:
                continue
        return expired

    def start_sweeper(self) -> None:
        timeout = self.config.sessions.idle_timeout_seconds
        if timeout <= 0:
            logger.info("Idle session sweep disabled")
            return
        self._sweeper = PeriodicTask(
            "idle-sweep",
            self.config.sessions.sweep_interval_seconds,
            lambda: self.sweep_idle(timeout),
        )
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
