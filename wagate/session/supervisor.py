"""Connection supervisor: owns one session's backend and keeps it alive.

All failure sources (backend disconnect events, fault transport states,
watchdog probe failures, construction errors) funnel into ``schedule_restart``.
At most one restart is pending at a time; extra signals inside the debounce
window are dropped.
"""

from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlsplit

from loguru import logger

from wagate.backend import base as ev
from wagate.backend.base import Backend, BackendFactory, BackendOptions, ChatInfo, MediaPayload, MessageRef, RawMessage
from wagate.backend.proxy import build_proxy_settings
from wagate.config import Config
from wagate.cron.periodic import PeriodicTask
from wagate.errors import BackendFault, GatewayError, NotFound, NotReady, OperationFailed
from wagate.guard import guard, guard_quietly
from wagate.relay.events import InboundMessageEvent
from wagate.session.models import AuthChallenge, ConnectionHealth, Session, SessionState, now_ms
from wagate.utils.qr import render_ascii, render_data_uri

T = TypeVar("T")

MessageHandler = Callable[[InboundMessageEvent], Awaitable[Any]]


class ConnectionSupervisor:
    """Lifecycle state machine, watchdog and guarded command surface for one session."""

    def __init__(
        self,
        session: Session,
        config: Config,
        backend_factory: BackendFactory,
        on_message: MessageHandler | None = None,
    ):
        self.session = session
        self.config = config
        self._factory = backend_factory
        self._on_message = on_message
        self.health = ConnectionHealth()
        self._backend: Backend | None = None
        self._watchdog: PeriodicTask | None = None
        self._start_task: asyncio.Task | None = None
        self._restart_task: asyncio.Task | None = None
        self._side_tasks: set[asyncio.Task] = set()
        self._stopped = False

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def backend(self) -> Backend | None:
        """Current backend reference. Swapped out wholesale on restart."""
        return self._backend

    # ------------------------------------------------------------------
    # Construction / teardown
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Request backend construction without waiting for it."""
        self.session.set_state(SessionState.INITIALIZING)
        self._start_task = asyncio.create_task(self._construct(), name=f"construct:{self.id}")

    async def _build_options(self) -> BackendOptions:
        cfg = self.config.backend
        return BackendOptions(
            auth_path=self.config.auth_root() / f"session-{self.id}",
            headless=cfg.headless,
            executable_path=cfg.executable_path,
            proxy=await build_proxy_settings(cfg.proxy_server),
            web_url=cfg.web_url,
            user_agent=cfg.user_agent,
            launch_timeout=cfg.launch_timeout_seconds,
        )

    async def _construct(self) -> None:
        if self._stopped:
            return
        self.session.set_state(SessionState.INITIALIZING)
        logger.info(f"Session {self.id}: initializing backend")
        try:
            options = await self._build_options()
            backend = self._factory(self.id, options)
        except Exception as e:
            self._construction_failed(None, f"backend construction failed: {e}")
            return

        self._backend = backend
        self._bind(backend)
        try:
            await guard(backend.initialize(), self.config.backend.launch_timeout_seconds, f"initialize {self.id}")
        except GatewayError as e:
            self._construction_failed(backend, f"initialize failed: {e.message} {e.details or ''}".rstrip())

    def _construction_failed(self, backend: Backend | None, reason: str) -> None:
        if backend is not None and backend is not self._backend:
            return
        logger.error(f"Session {self.id}: {reason}")
        self.session.set_state(SessionState.DISCONNECTED)
        self.schedule_restart(reason)

    def _bind(self, backend: Backend) -> None:
        backend.on(ev.QR, partial(self._on_qr, backend))
        backend.on(ev.AUTHENTICATED, partial(self._on_authenticated, backend))
        backend.on(ev.AUTH_FAILURE, partial(self._on_auth_failure, backend))
        backend.on(ev.READY, partial(self._on_ready, backend))
        backend.on(ev.DISCONNECTED, partial(self._on_disconnected, backend))
        backend.on(ev.CHANGE_STATE, partial(self._on_change_state, backend))
        backend.on(ev.LOADING_SCREEN, partial(self._on_loading_screen, backend))
        if self._on_message is not None:
            backend.on(ev.MESSAGE, partial(self._on_raw_message, backend))

    async def _teardown(self, backend: Backend) -> None:
        backend.remove_all_listeners()
        await guard_quietly(backend.destroy(), self.config.timeouts.destroy, f"destroy {self.id}")

    async def logout(self) -> None:
        backend = self._backend
        if backend is not None:
            await guard_quietly(backend.logout(), self.config.timeouts.logout, f"logout {self.id}")

    async def stop(self) -> None:
        """Cancel monitors and pending restarts, then release the backend."""
        self._stopped = True
        self._disarm_watchdog()
        current = asyncio.current_task()
        for task in (self._start_task, self._restart_task, *self._side_tasks):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._start_task = None
        self._restart_task = None
        self.health.restart_scheduled = False

        backend, self._backend = self._backend, None
        if backend is not None:
            await self._teardown(backend)
        self.session.set_state(SessionState.DESTROYED)
        logger.info(f"Session {self.id}: supervisor stopped")

    # ------------------------------------------------------------------
    # Restart debounce
    # ------------------------------------------------------------------

    def restart_delay(self) -> float:
        base = self.config.watchdog.restart_delay_seconds
        cap = max(base, self.config.watchdog.restart_backoff_max_seconds)
        return min(base * (2 ** self.health.restarts_since_ready), cap)

    def schedule_restart(self, reason: str) -> bool:
        """Arm a single delayed restart. Returns False if one is already pending."""
        if self._stopped:
            return False
        # Check and set with no await in between.
        if self.health.restart_scheduled:
            logger.debug(f"Session {self.id}: restart already scheduled, ignoring ({reason})")
            return False
        self.health.restart_scheduled = True
        self.health.last_failure_reason = reason

        delay = self.restart_delay()
        logger.warning(f"Session {self.id}: restart scheduled in {delay:g}s ({reason})")
        self._restart_task = asyncio.create_task(self._restart_after(delay), name=f"restart:{self.id}")
        return True

    async def _restart_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            await self._restart()
        finally:
            if self._restart_task is asyncio.current_task():
                self._restart_task = None

    async def _restart(self) -> None:
        logger.info(f"Session {self.id}: restarting backend")
        self._disarm_watchdog()
        old, self._backend = self._backend, None
        if old is not None:
            await self._teardown(old)

        self.health.restart_count += 1
        self.health.restarts_since_ready += 1
        # Cleared before construction so a failed attempt can schedule the next one.
        self.health.restart_scheduled = False
        await self._construct()

    # ------------------------------------------------------------------
    # Lifecycle handlers (synchronous, in backend emission order)
    # ------------------------------------------------------------------

    def _is_current(self, backend: Backend) -> bool:
        return backend is self._backend and not self._stopped

    def _on_qr(self, backend: Backend, code: str) -> None:
        if not self._is_current(backend):
            return
        try:
            image = render_data_uri(code)
        except Exception as e:
            logger.error(f"Session {self.id}: failed to render QR code: {e}")
            image = ""
        self.session.set_state(SessionState.AWAITING_AUTH)
        self.session.pending_auth_challenge = AuthChallenge(code=code, image=image)
        logger.info(
            f"Session {self.id}: QR code received. Scan with WhatsApp → Linked Devices → Link a Device\n"
            f"{render_ascii(code)}"
        )

    def _on_authenticated(self, backend: Backend, *_: Any) -> None:
        if not self._is_current(backend):
            return
        self.session.set_state(SessionState.AUTHENTICATED)
        logger.info(f"Session {self.id}: authenticated successfully")

    def _on_auth_failure(self, backend: Backend, message: Any = None) -> None:
        if not self._is_current(backend):
            return
        self._disarm_watchdog()
        self.session.set_state(SessionState.DISCONNECTED)
        self.health.last_failure_reason = f"auth failure: {message}"
        logger.error(f"Session {self.id}: authentication failed: {message}")

    def _on_ready(self, backend: Backend, *_: Any) -> None:
        if not self._is_current(backend):
            return
        self.session.set_state(SessionState.READY)
        self.session.info = backend.info
        self.health.restarts_since_ready = 0
        self.health.consecutive_failures = 0
        self.health.last_heartbeat_ok_at = now_ms()
        name = (backend.info or {}).get("pushname", "")
        logger.info(f"Session {self.id}: client is ready{f' (connected as {name})' if name else ''}")
        self._arm_watchdog()
        if self.config.backend.restrict_navigation:
            self._spawn(self._guard_navigation(backend))

    def _on_disconnected(self, backend: Backend, reason: Any = None) -> None:
        if not self._is_current(backend):
            return
        logger.warning(f"Session {self.id}: disconnected: {reason}")
        self._disarm_watchdog()
        self.session.set_state(SessionState.DISCONNECTED)
        self.schedule_restart(f"disconnected: {reason}")

    def _on_change_state(self, backend: Backend, state: Any = None) -> None:
        if not self._is_current(backend):
            return
        logger.info(f"Session {self.id}: client state changed: {state}")
        if state in ev.FAULT_STATES:
            self._on_disconnected(backend, state)

    def _on_loading_screen(self, backend: Backend, percent: Any = None, message: Any = "") -> None:
        if self._is_current(backend):
            logger.debug(f"Session {self.id}: loading screen {percent}% {message}")

    async def _on_raw_message(self, backend: Backend, raw: RawMessage) -> None:
        if not self._is_current(backend) or self._on_message is None:
            return
        self.session.touch()
        event = InboundMessageEvent.from_raw(self.id, raw)
        try:
            await self._on_message(event)
        except Exception as e:
            logger.error(f"Session {self.id}: message handling error: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    async def _guard_navigation(self, backend: Backend) -> None:
        parts = urlsplit(self.config.backend.web_url)
        origin = f"{parts.scheme}://{parts.netloc}"
        if await guard_quietly(backend.restrict_navigation(origin), self.config.timeouts.status_probe, "navigation guard"):
            logger.info(f"Session {self.id}: navigation restricted to {origin}")

    # ------------------------------------------------------------------
    # Active watchdog
    # ------------------------------------------------------------------

    def _arm_watchdog(self) -> None:
        self._disarm_watchdog()
        self._watchdog = PeriodicTask(f"watchdog:{self.id}", self.config.watchdog.interval_seconds, self.probe)
        self._watchdog.start()

    def _disarm_watchdog(self) -> None:
        if self._watchdog is not None:
            self._watchdog.stop()
            self._watchdog = None

    async def probe(self) -> bool:
        """One guarded round-trip through the backend. Returns True when healthy."""
        backend = self._backend
        if backend is None or self.session.state not in (SessionState.READY, SessionState.DEGRADED):
            return False
        try:
            state = await guard(backend.get_state(), self.config.timeouts.status_probe, f"status probe {self.id}")
        except GatewayError as e:
            self._probe_failed(backend, f"{e.message} {e.details or ''}".rstrip())
            return False

        if not self._is_current(backend):
            return False
        if state != ev.STATE_CONNECTED:
            self._probe_failed(backend, f"state {state}")
            return False

        self.health.last_heartbeat_ok_at = now_ms()
        self.health.consecutive_failures = 0
        if self.session.state is SessionState.DEGRADED and not self.health.restart_scheduled:
            self.session.set_state(SessionState.READY)
        return True

    def _probe_failed(self, backend: Backend, reason: str) -> None:
        if not self._is_current(backend):
            return
        self.health.consecutive_failures += 1
        logger.warning(
            f"Session {self.id}: watchdog probe failed ({reason}), "
            f"{self.health.consecutive_failures} consecutive"
        )
        self.session.set_state(SessionState.DEGRADED)
        self.schedule_restart(f"watchdog: {reason}")

    # ------------------------------------------------------------------
    # Guarded commands
    # ------------------------------------------------------------------

    def _ready_backend(self) -> Backend:
        backend = self._backend
        if backend is None or not self.session.is_ready:
            raise NotReady(f"Session {self.id} is not ready", details={"status": self.session.state.value})
        self.session.touch()
        return backend

    async def _call(self, name: str, budget: float, call: Callable[[Backend], Awaitable[T]]) -> T:
        backend = self._ready_backend()
        try:
            return await guard(call(backend), budget, name)
        except OperationFailed as e:
            if isinstance(e.__cause__, BackendFault):
                self.schedule_restart(f"{name}: {e.__cause__.reason}")
            raise

    async def get_state(self) -> str | None:
        backend = self._backend
        if backend is None:
            raise NotReady(f"Session {self.id} has no running backend")
        return await guard(backend.get_state(), self.config.timeouts.status_probe, "status probe")

    async def send_text(self, chat_id: str, text: str, quoted_message_id: str | None = None) -> str:
        return await self._call(
            "send text",
            self.config.timeouts.send_text,
            lambda b: b.send_message(chat_id, text, quoted_message_id=quoted_message_id),
        )

    async def send_media(
        self,
        chat_id: str,
        media: MediaPayload,
        caption: str | None = None,
        quoted_message_id: str | None = None,
    ) -> str:
        return await self._call(
            "send media",
            self.config.timeouts.send_media,
            lambda b: b.send_message(chat_id, media, quoted_message_id=quoted_message_id, caption=caption),
        )

    async def get_message(self, message_id: str) -> MessageRef:
        message = await self._call(
            "message lookup",
            self.config.timeouts.message_lookup,
            lambda b: b.get_message_by_id(message_id),
        )
        if message is None:
            raise NotFound("Message not found", details={"messageId": message_id})
        return message

    async def forward_message(self, message_id: str, to_chat_id: str) -> None:
        message = await self.get_message(message_id)
        await self._call(
            "forward",
            self.config.timeouts.forward,
            lambda b: b.forward_message(message.id, to_chat_id),
        )

    async def get_chats(self) -> list[ChatInfo]:
        return await self._call("get chats", self.config.timeouts.chats, lambda b: b.get_chats())

    async def clear_chat(self, chat_id: str) -> None:
        await self._call("clear chat", self.config.timeouts.clear_chat, lambda b: b.clear_chat(chat_id))
