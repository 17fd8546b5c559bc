"""WhatsApp Web backend driven by Playwright (headless Chromium).

One persistent browser context per session; the context's user data
directory doubles as the session's credential store, so a restarted backend
comes back logged in without a new QR scan.
"""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any
from urllib.parse import urlsplit

from loguru import logger
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from wagate.backend import base as ev
from wagate.backend.base import Backend, BackendOptions, ChatInfo, MediaPayload, MessageRef, RawMessage
from wagate.backend.bridge import BINDING_NAME, BRIDGE_SCRIPT, LOGGED_IN_SELECTORS, QR_SELECTOR, STORE_READY_CHECK
from wagate.errors import BackendFault, NotFound

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
    "--no-first-run",
    "--disable-extensions",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-blink-features=AutomationControlled",
]

ATTACH_SELECTORS = [
    '[data-testid="clip"]',
    'span[data-icon="plus"]',
    'span[data-icon="clip"]',
    'div[title="Attach"]',
    'button[aria-label="Attach"]',
]
CAPTION_SELECTORS = [
    'div[aria-label="Add a caption"][contenteditable="true"]',
    '[data-testid="media-caption-input-container"] div[contenteditable="true"]',
]
SEND_SELECTORS = [
    '[data-testid="send"]',
    'span[data-icon="send"]',
    'div[role="button"][aria-label="Send"]',
]
MESSAGE_MENU_SELECTORS = [
    '[data-testid="icon-down-context"]',
    'span[data-icon="down-context"]',
    'div[aria-label="Context menu"]',
]
REPLY_SELECTORS = [
    'li[data-testid="mi-msg-reply"]',
    'div[aria-label="Reply"]',
    'li[role="button"]:has-text("Reply")',
]

POLL_INTERVAL = 2.0
MEDIA_CONFIRM_POLLS = 600
DEFAULT_PORTS = {"http": 80, "https": 443}


def _origin_key(parts) -> tuple:
    return parts.scheme, parts.hostname, parts.port or DEFAULT_PORTS.get(parts.scheme)


def same_origin(url: str, origin: str) -> bool:
    """True when ``url`` has exactly the scheme, host and port of ``origin``."""
    try:
        target, allowed = urlsplit(url), urlsplit(origin)
        if target.username is not None or target.password is not None:
            return False
        return _origin_key(target) == _origin_key(allowed)
    except ValueError:
        return False


class PlaywrightBackend(Backend):
    """Drives web.whatsapp.com in a persistent Chromium context."""

    def __init__(self, session_id: str, options: BackendOptions):
        super().__init__(session_id, options)
        self._playwright = None
        self._context = None
        self._page = None
        self._monitor_task: asyncio.Task | None = None
        self._closing = False
        self._last_qr: str | None = None

    async def initialize(self) -> None:
        opts = self.options
        await asyncio.to_thread(opts.auth_path.mkdir, parents=True, exist_ok=True)
        logger.info(f"Backend {self.session_id}: profile at {opts.auth_path}")

        self._playwright = await async_playwright().start()
        launch: dict[str, Any] = {
            "user_data_dir": str(opts.auth_path),
            "headless": opts.headless,
            "args": LAUNCH_ARGS,
            "viewport": {"width": 1280, "height": 800},
            "locale": "en-US",
        }
        if opts.user_agent:
            launch["user_agent"] = opts.user_agent
        if opts.executable_path:
            launch["executable_path"] = opts.executable_path
        if opts.proxy:
            launch["proxy"] = opts.proxy.as_playwright()

        self._context = await self._playwright.chromium.launch_persistent_context(**launch)
        self._context.on("close", lambda _: self._fault("browser context closed"))

        page = self._context.pages[0] if self._context.pages else await self._context.new_page()
        self._page = page
        page.on("crash", lambda _: self._fault("page crashed"))
        page.on("close", lambda _: self._fault("page closed"))
        await page.expose_binding(BINDING_NAME, self._on_binding)

        logger.info(f"Backend {self.session_id}: navigating to {opts.web_url}")
        await page.goto(opts.web_url, wait_until="domcontentloaded", timeout=opts.launch_timeout * 1000)
        self._monitor_task = asyncio.create_task(self._monitor(), name=f"wa-monitor:{self.session_id}")

    def _fault(self, reason: str) -> None:
        if self._closing:
            return
        self.emit(ev.DISCONNECTED, reason)

    async def _is_logged_in(self) -> bool:
        for selector in LOGGED_IN_SELECTORS:
            if await self._page.locator(selector).count() > 0:
                return True
        return False

    async def _monitor(self) -> None:
        """Poll the page until it shows either a pairing QR or the chat list."""
        try:
            while not self._closing:
                if await self._is_logged_in():
                    self.emit(ev.AUTHENTICATED)
                    self.emit(ev.LOADING_SCREEN, 0, "waiting for client store")
                    await self._page.wait_for_function(STORE_READY_CHECK, timeout=self.options.launch_timeout * 1000)
                    await self._page.evaluate(BRIDGE_SCRIPT)
                    self.info = await self._page.evaluate("() => window.WAGate.info()")
                    self.emit(ev.LOADING_SCREEN, 100, "client store ready")
                    self.emit(ev.READY)
                    return

                qr = self._page.locator(QR_SELECTOR).first
                if await qr.count() > 0:
                    code = await qr.get_attribute("data-ref")
                    if code and code != self._last_qr:
                        self._last_qr = code
                        self.emit(ev.QR, code)
                await asyncio.sleep(POLL_INTERVAL)
        except asyncio.CancelledError:
            raise
        except PlaywrightError as e:
            self._fault(f"monitor failed: {e}")

    def _on_binding(self, _source: Any, name: str, payload: Any) -> None:
        if name == "message" and isinstance(payload, dict):
            self.emit(ev.MESSAGE, RawMessage(
                id=payload.get("id") or "",
                from_id=payload.get("from") or "",
                to_id=payload.get("to") or "",
                body=payload.get("body") or "",
                author=payload.get("author"),
                quoted_id=payload.get("quotedId"),
                timestamp=payload.get("timestamp"),
            ))
        elif name == "change_state":
            self.emit(ev.CHANGE_STATE, payload)

    async def _eval(self, expression: str, arg: Any = None) -> Any:
        page = self._page
        if page is None or page.is_closed():
            raise BackendFault("page is not available")
        try:
            return await page.evaluate(expression, arg)
        except PlaywrightError as e:
            if page.is_closed() or "Target closed" in str(e) or "crashed" in str(e):
                raise BackendFault(str(e)) from e
            raise

    async def get_state(self) -> str | None:
        return await self._eval("() => window.WAGate ? window.WAGate.state() : null")

    async def send_message(
        self,
        chat_id: str,
        content: str | MediaPayload,
        quoted_message_id: str | None = None,
        caption: str | None = None,
    ) -> str:
        if isinstance(content, MediaPayload):
            return await self._send_media(chat_id, content, caption, quoted_message_id)
        message_id = await self._eval(
            "([chatId, text, quotedId]) => window.WAGate.sendText(chatId, text, quotedId)",
            [chat_id, content, quoted_message_id],
        )
        if not message_id:
            raise RuntimeError("message was not registered by the client")
        return message_id

    async def _click_first(self, selectors: list[str], scope: Any = None) -> bool:
        scope = scope if scope is not None else self._page
        for selector in selectors:
            target = scope.locator(selector)
            if await target.count() > 0:
                await target.first.click()
                return True
        return False

    async def _quote(self, message_id: str) -> None:
        """Put ``message_id`` in the compose box as the message being replied to."""
        if not await self._eval("(id) => !!window.WAGate.getMessage(id)", message_id):
            raise NotFound("Quoted message not found", details={"messageId": message_id})
        row = self._page.locator(f"[data-id={json.dumps(message_id)}]")
        if await row.count() == 0:
            raise RuntimeError(f"quoted message {message_id} is not shown in the open chat")
        await row.first.hover()
        if not await self._click_first(MESSAGE_MENU_SELECTORS, scope=row.first):
            raise RuntimeError("message menu not found")
        if not await self._click_first(REPLY_SELECTORS):
            raise RuntimeError("reply action not found")

    async def _send_media(
        self, chat_id: str, media: MediaPayload, caption: str | None, quoted_message_id: str | None = None
    ) -> str:
        await self._eval("(chatId) => window.WAGate.openChat(chatId)", chat_id)
        if quoted_message_id:
            await self._quote(quoted_message_id)
        before = await self._eval("(chatId) => window.WAGate.lastOwnMessage(chatId)", chat_id)

        if not await self._click_first(ATTACH_SELECTORS):
            raise RuntimeError("attach button not found")
        file_input = self._page.locator('input[type="file"]').first
        await file_input.set_input_files(files=[{
            "name": media.filename or "file",
            "mimeType": media.mimetype,
            "buffer": base64.b64decode(media.data),
        }])

        if caption:
            for selector in CAPTION_SELECTORS:
                box = self._page.locator(selector)
                if await box.count() > 0:
                    await box.first.fill(caption)
                    break
        await self._page.wait_for_selector(", ".join(SEND_SELECTORS), timeout=30000)
        if not await self._click_first(SEND_SELECTORS):
            raise RuntimeError("send button not found")

        # The new id shows up once the upload has been queued by the client.
        for _ in range(MEDIA_CONFIRM_POLLS):
            latest = await self._eval("(chatId) => window.WAGate.lastOwnMessage(chatId)", chat_id)
            if latest and latest != before:
                return latest
            await asyncio.sleep(0.5)
        raise RuntimeError("media message was not confirmed by the client")

    async def get_message_by_id(self, message_id: str) -> MessageRef | None:
        data = await self._eval("(id) => window.WAGate.getMessage(id)", message_id)
        if not data:
            return None
        return MessageRef(id=data["id"], chat_id=data.get("from") or "", body=data.get("body") or "", from_me=data.get("fromMe", False))

    async def forward_message(self, message_id: str, to_chat_id: str) -> None:
        await self._eval("([id, to]) => window.WAGate.forward(id, to)", [message_id, to_chat_id])

    async def get_chats(self) -> list[ChatInfo]:
        rows = await self._eval("() => window.WAGate.chats()") or []
        return [
            ChatInfo(
                id=row["id"],
                name=row.get("name") or "No Name",
                is_group=row.get("isGroup", False),
                participants=row.get("participants", 1),
                last_message=row.get("lastMessage") or "No messages",
                timestamp=row.get("timestamp"),
            )
            for row in rows
        ]

    async def clear_chat(self, chat_id: str) -> None:
        await self._eval("(chatId) => window.WAGate.clearChat(chatId)", chat_id)

    async def logout(self) -> None:
        await self._eval("() => window.WAGate ? window.WAGate.logout() : null")

    async def restrict_navigation(self, origin: str) -> None:
        page = self._page
        if page is None:
            return

        async def _route(route, request):
            main_frame_navigation = request.is_navigation_request() and request.frame == page.main_frame
            if main_frame_navigation and not same_origin(request.url, origin):
                logger.warning(f"Backend {self.session_id}: blocked navigation to {request.url}")
                await route.abort()
                return
            await route.continue_()

        await page.route("**/*", _route)

    async def destroy(self) -> None:
        self._closing = True
        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
        try:
            if self._context is not None:
                await self._context.close()
        finally:
            self._context = None
            self._page = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


def create_backend(session_id: str, options: BackendOptions) -> Backend:
    return PlaywrightBackend(session_id, options)
