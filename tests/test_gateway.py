from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from wagate.backend.base import RawMessage
from wagate.config import MessagesConfig
from wagate.relay.dedup import SeenMessages
from wagate.relay.events import InboundMessageEvent, WebhookPayload
from wagate.relay.gateway import MessageGateway

GROUP = "120363000000000001@g.us"
BOT = "972500000000@c.us"


class Recorder:
    def __init__(self, status: int = 200):
        self.status = status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": True})

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


def event(message_id="M1", chat_id=GROUP, recipient=BOT, body="hello", quoted=None) -> InboundMessageEvent:
    raw = RawMessage(id=message_id, from_id=chat_id, to_id=recipient, body=body, author="111@c.us", quoted_id=quoted)
    return InboundMessageEvent.from_raw("main", raw)


def make_gateway(config, recorder: Recorder) -> MessageGateway:
    return MessageGateway(config, transport=httpx.MockTransport(recorder))


@pytest.mark.asyncio
async def test_allowed_group_message_is_delivered(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)

    assert await gateway.handle(event()) is True

    request = recorder.requests[0]
    assert str(request.url) == config.messages.webhook_url
    assert request.headers["X-API-Key"] == "hook-key"
    assert recorder.bodies[0] == {
        "message_id": "M1",
        "chat_id": GROUP,
        "replied_message_id": None,
        "is_group": True,
        "message_text": "hello",
    }
    assert gateway.stats() == {"delivered": 1, "filtered": 0, "failed": 0}
    await gateway.aclose()


@pytest.mark.asyncio
async def test_replied_message_id_is_forwarded(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)

    await gateway.handle(event(quoted="QUOTED1"))

    assert recorder.bodies[0]["replied_message_id"] == "QUOTED1"
    await gateway.aclose()


@pytest.mark.asyncio
async def test_private_messages_dropped_unless_enabled(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)
    private = event(message_id="P1", chat_id="111@c.us")

    assert await gateway.handle(private) is False
    assert recorder.requests == []

    config.messages.allow_private_messages = True
    assert await gateway.handle(event(message_id="P2", chat_id="111@c.us")) is True
    assert recorder.bodies[0]["is_group"] is False
    await gateway.aclose()


@pytest.mark.asyncio
async def test_group_not_in_allowlist_dropped(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)

    assert await gateway.handle(event(chat_id="999@g.us")) is False
    assert gateway.rejection_reason(event(message_id="M9", chat_id="999@g.us")).startswith("group 999@g.us")
    assert recorder.requests == []
    await gateway.aclose()


@pytest.mark.asyncio
async def test_message_not_addressed_to_bot_dropped(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)

    assert await gateway.handle(event(recipient="555@c.us")) is False
    assert recorder.requests == []
    await gateway.aclose()


@pytest.mark.asyncio
async def test_missing_identity_or_key_drops(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)

    config.messages.bot_phone_number = ""
    assert await gateway.handle(event(message_id="A")) is False
    config.messages.bot_phone_number = BOT
    config.messages.webhook_api_key = ""
    assert await gateway.handle(event(message_id="B")) is False
    assert recorder.requests == []
    await gateway.aclose()


@pytest.mark.asyncio
async def test_reemitted_event_delivered_once(config) -> None:
    recorder = Recorder()
    gateway = make_gateway(config, recorder)

    assert await gateway.handle(event()) is True
    assert await gateway.handle(event()) is False
    assert len(recorder.requests) == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_non_2xx_is_logged_and_dropped(config) -> None:
    recorder = Recorder(status=500)
    gateway = make_gateway(config, recorder)

    assert await gateway.handle(event()) is False
    assert len(recorder.requests) == 1
    assert gateway.failed == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_network_error_is_dropped_without_retry(config) -> None:
    calls = []

    def refuse(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    gateway = MessageGateway(config, transport=httpx.MockTransport(refuse))

    assert await gateway.handle(event()) is False
    assert len(calls) == 1
    assert gateway.failed == 1
    await gateway.aclose()


@pytest.mark.asyncio
async def test_slow_webhook_times_out(config) -> None:
    config.messages.webhook_timeout_seconds = 0.01

    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        return httpx.Response(200)

    gateway = MessageGateway(config, transport=httpx.MockTransport(slow))

    assert await gateway.handle(event()) is False
    assert gateway.failed == 1
    await gateway.aclose()


def test_disabled_gateway_registers_no_handler(config) -> None:
    config.messages.handle_messages = False
    gateway = MessageGateway(config)
    assert gateway.handler() is None


def test_reload_replaces_filters_but_not_enable_switch(config) -> None:
    gateway = MessageGateway(config)
    gateway.reload(MessagesConfig(handle_messages=False, allowed_groups=["x@g.us"], allow_private_messages=True))

    assert gateway.enabled is True
    assert config.messages.handle_messages is True
    assert config.messages.allowed_groups == ["x@g.us"]
    assert config.messages.allow_private_messages is True


def test_group_sender_is_author() -> None:
    ev = event()
    assert ev.is_group is True
    assert ev.sender_id == "111@c.us"
    assert WebhookPayload.from_event(ev).to_dict()["replied_message_id"] is None


def test_seen_messages_is_bounded() -> None:
    seen = SeenMessages(2)
    assert seen.check_and_add("main", "a") is True
    assert seen.check_and_add("main", "a") is False
    assert seen.check_and_add("other", "a") is True
    assert seen.check_and_add("main", "b") is True
    assert len(seen) == 2
    # Oldest entry was evicted.
    assert seen.check_and_add("main", "a") is True
