from __future__ import annotations

import asyncio
from typing import Any

import pytest

from wagate.backend import base as ev
from wagate.backend.base import Backend, BackendOptions, ChatInfo, MediaPayload, MessageRef
from wagate.config import Config


class FakeBackend(Backend):
    """In-memory backend. Ops listed in ``hang`` never return, ops in ``fail`` raise."""

    def __init__(self, session_id: str, options: BackendOptions, **behaviour: Any):
        super().__init__(session_id, options)
        self.state = ev.STATE_CONNECTED
        self.auto_ready = behaviour.get("auto_ready", True)
        self.hang: set[str] = set(behaviour.get("hang", ()))
        self.fail: dict[str, Exception] = dict(behaviour.get("fail", {}))
        self.sent: list[dict[str, Any]] = []
        self.messages: dict[str, MessageRef] = {}
        self.chats: list[ChatInfo] = []
        self.forwarded: list[tuple[str, str]] = []
        self.cleared: list[str] = []
        self.calls: list[str] = []
        self.restricted: list[str] = []
        self.destroyed = False
        self.logged_out = False

    async def _step(self, op: str) -> None:
        self.calls.append(op)
        if op in self.fail:
            raise self.fail[op]
        if op in self.hang:
            await asyncio.Event().wait()

    async def initialize(self) -> None:
        await self._step("initialize")
        if self.auto_ready:
            self.info = {"wid": f"{self.session_id}@c.us", "pushname": "Test Bot", "platform": "fake"}
            self.emit(ev.AUTHENTICATED)
            self.emit(ev.READY)

    async def get_state(self) -> str | None:
        await self._step("get_state")
        return self.state

    async def send_message(self, chat_id, content, quoted_message_id=None, caption=None) -> str:
        op = "send_media" if isinstance(content, MediaPayload) else "send_text"
        await self._step(op)
        message_id = f"true_{chat_id}_MSG{len(self.sent) + 1}"
        self.sent.append({
            "id": message_id,
            "chat_id": chat_id,
            "content": content,
            "quoted": quoted_message_id,
            "caption": caption,
        })
        return message_id

    async def get_message_by_id(self, message_id: str) -> MessageRef | None:
        await self._step("get_message")
        return self.messages.get(message_id)

    async def forward_message(self, message_id: str, to_chat_id: str) -> None:
        await self._step("forward")
        self.forwarded.append((message_id, to_chat_id))

    async def get_chats(self) -> list[ChatInfo]:
        await self._step("get_chats")
        return list(self.chats)

    async def clear_chat(self, chat_id: str) -> None:
        await self._step("clear_chat")
        self.cleared.append(chat_id)

    async def restrict_navigation(self, origin: str) -> None:
        self.restricted.append(origin)

    async def logout(self) -> None:
        await self._step("logout")
        self.logged_out = True

    async def destroy(self) -> None:
        await self._step("destroy")
        self.destroyed = True


class FakeFactory:
    """Backend factory that records every backend it builds."""

    def __init__(self, **behaviour: Any):
        self.behaviour = behaviour
        self.created: list[FakeBackend] = []
        self.construct_errors: list[Exception] = []

    def __call__(self, session_id: str, options: BackendOptions) -> FakeBackend:
        if self.construct_errors:
            raise self.construct_errors.pop(0)
        backend = FakeBackend(session_id, options, **self.behaviour)
        self.created.append(backend)
        return backend

    @property
    def last(self) -> FakeBackend:
        return self.created[-1]


async def settle(seconds: float = 0.05) -> None:
    """Let scheduled tasks (construction, restarts, handlers) run."""
    await asyncio.sleep(seconds)


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg._config_dir = tmp_path
    cfg.sessions.auth_dir = str(tmp_path / "auth")
    cfg.sessions.restore_on_startup = False
    cfg.watchdog.interval_seconds = 3600
    cfg.watchdog.restart_delay_seconds = 0.01
    cfg.watchdog.restart_backoff_max_seconds = 0.08
    cfg.backend.restrict_navigation = False
    cfg.backend.launch_timeout_seconds = 1
    cfg.messages.bot_phone_number = "972500000000@c.us"
    cfg.messages.webhook_api_key = "hook-key"
    cfg.messages.webhook_url = "http://bot.test/whatsapp/v2/webhook"
    cfg.messages.allowed_groups = ["120363000000000001@g.us"]
    for name in type(cfg.timeouts).model_fields:
        setattr(cfg.timeouts, name, 0.2)
    return cfg


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()
