"""Narrow interface over the browser-automation messaging client."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Protocol

from loguru import logger

# Lifecycle and message events a backend may emit.
QR = "qr"
AUTHENTICATED = "authenticated"
AUTH_FAILURE = "auth_failure"
READY = "ready"
DISCONNECTED = "disconnected"
MESSAGE = "message"
CHANGE_STATE = "change_state"
LOADING_SCREEN = "loading_screen"

EVENTS = frozenset({QR, AUTHENTICATED, AUTH_FAILURE, READY, DISCONNECTED, MESSAGE, CHANGE_STATE, LOADING_SCREEN})

# Transport states reported by get_state() / change_state.
STATE_CONNECTED = "CONNECTED"
FAULT_STATES = frozenset({"CONFLICT", "UNPAIRED", "UNLAUNCHED", "UNPAIRED_IDLE"})


@dataclass
class ProxySettings:
    server: str
    username: str | None = None
    password: str | None = None

    def as_playwright(self) -> dict[str, str]:
        out = {"server": self.server}
        if self.username:
            out["username"] = self.username
        if self.password:
            out["password"] = self.password
        return out


@dataclass
class BackendOptions:
    """Launch configuration handed to a backend at construction time."""
    auth_path: Path
    headless: bool = True
    executable_path: str | None = None
    proxy: ProxySettings | None = None
    web_url: str = "https://web.whatsapp.com"
    user_agent: str | None = None
    launch_timeout: float = 60.0


@dataclass
class MediaPayload:
    mimetype: str
    data: str                      # base64
    filename: str | None = None


@dataclass
class ChatInfo:
    id: str
    name: str = ""
    is_group: bool = False
    participants: int = 1
    last_message: str = ""
    timestamp: int | None = None


@dataclass
class MessageRef:
    id: str
    chat_id: str
    body: str = ""
    from_me: bool = False


@dataclass
class RawMessage:
    """Inbound message as reported by a backend, before the relay sees it."""
    id: str
    from_id: str
    to_id: str
    body: str = ""
    author: str | None = None
    quoted_id: str | None = None
    timestamp: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


Handler = Callable[..., Any]


class Backend(ABC):
    """A single automation-driven client instance.

    Lifecycle handlers registered with ``on`` are invoked synchronously and in
    emission order. Coroutine handlers (used for messages) are scheduled as
    tasks and carry no ordering guarantee.
    """

    def __init__(self, session_id: str, options: BackendOptions):
        self.session_id = session_id
        self.options = options
        self.info: dict[str, Any] | None = None
        self._handlers: dict[str, list[Handler]] = {}
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown backend event: {event}")
        self._handlers.setdefault(event, []).append(handler)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
            except Exception as e:
                logger.error(f"Backend {self.session_id}: {event} handler failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    @abstractmethod
    async def initialize(self) -> None:
        """Launch the client. Returns once startup has been kicked off."""

    @abstractmethod
    async def get_state(self) -> str | None:
        pass

    @abstractmethod
    async def send_message(
        self,
        chat_id: str,
        content: str | MediaPayload,
        quoted_message_id: str | None = None,
        caption: str | None = None,
    ) -> str:
        """Send text or media, returning the new message id."""

    @abstractmethod
    async def get_message_by_id(self, message_id: str) -> MessageRef | None:
        pass

    @abstractmethod
    async def forward_message(self, message_id: str, to_chat_id: str) -> None:
        pass

    @abstractmethod
    async def get_chats(self) -> list[ChatInfo]:
        pass

    @abstractmethod
    async def clear_chat(self, chat_id: str) -> None:
        pass

    @abstractmethod
    async def logout(self) -> None:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        pass

    async def restrict_navigation(self, origin: str) -> None:
        """Abort cross-origin top-level navigations. Optional for backends."""
        return None


class BackendFactory(Protocol):
    def __call__(self, session_id: str, options: BackendOptions) -> Backend: ...
