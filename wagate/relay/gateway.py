"""Inbound message filter and best-effort webhook relay.

Each accepted event is POSTed at most once. Failed deliveries are logged and
dropped: there is no retry and no queue.
"""

import httpx
from loguru import logger

from wagate.config import Config, MessagesConfig
from wagate.errors import GatewayError
from wagate.guard import guard
from wagate.relay.dedup import SeenMessages
from wagate.relay.events import InboundMessageEvent, WebhookPayload


class MessageGateway:
    """Filters inbound events and forwards the accepted ones to the webhook."""

    def __init__(self, config: Config, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        # Fixed at startup; a disabled gateway never registers a handler.
        self.enabled = config.messages.handle_messages
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._seen = SeenMessages(config.messages.dedup_size)
        self.delivered = 0
        self.dropped = 0
        self.failed = 0
        if self.enabled:
            logger.info("Message handling enabled")
        else:
            logger.info("Message handling disabled - no event handlers registered")

    @property
    def rules(self) -> MessagesConfig:
        # Read per event so a config reload applies without restart.
        return self.config.messages

    def handler(self):
        """Return the coroutine to register on backends, or None when disabled."""
        return self.handle if self.enabled else None

    def reload(self, messages: MessagesConfig) -> None:
        if messages.handle_messages != self.enabled:
            logger.warning("Relay: handle_messages changed; takes effect after restart")
        messages = messages.model_copy(update={"handle_messages": self.enabled})
        self.config.messages = messages
        logger.info(
            f"Relay: filters reloaded (private={messages.allow_private_messages}, "
            f"groups={len(messages.allowed_groups)})"
        )

    def rejection_reason(self, event: InboundMessageEvent) -> str | None:
        """Return why ``event`` must not be relayed, or None to relay it."""
        rules = self.rules

        if not self._seen.check_and_add(event.session_id, event.message_id):
            return "duplicate event"

        if not event.is_group and not rules.allow_private_messages:
            return "private messages not enabled"

        if event.is_group and event.chat_id not in rules.allowed_groups:
            return f"group {event.chat_id} not in allowed groups list"

        if not rules.bot_phone_number:
            logger.error("Relay: bot_phone_number (BOT_PHONE_NUMBER) not set")
            return "target identity not configured"

        if not rules.webhook_api_key:
            logger.error("Relay: webhook_api_key (WHATSAPP_API_KEY) not set")
            return "webhook api key not configured"

        if event.recipient_id != rules.bot_phone_number:
            return f"addressed to {event.recipient_id}, not {rules.bot_phone_number}"

        return None

    async def handle(self, event: InboundMessageEvent) -> bool:
        """Run one event through the pipeline. Returns True if delivered."""
        logger.debug(
            f"Relay <- [{event.session_id}] {event.message_id} from {event.chat_id} "
            f"(group={event.is_group}, {len(event.body)} chars)"
        )
        reason = self.rejection_reason(event)
        if reason:
            self.dropped += 1
            logger.info(f"Relay: message {event.message_id} filtered - {reason}")
            return False
        return await self.deliver(event)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def deliver(self, event: InboundMessageEvent) -> bool:
        rules = self.rules
        payload = WebhookPayload.from_event(event).to_dict()
        headers = {"Content-Type": "application/json", "X-API-Key": rules.webhook_api_key}
        budget = rules.webhook_timeout_seconds
        logger.info(f"Webhook: forwarding {event.message_id} to {rules.webhook_url}")

        try:
            response = await guard(
                self._get_client().post(rules.webhook_url, json=payload, headers=headers, timeout=budget),
                budget,
                "webhook delivery",
            )
        except GatewayError as e:
            self.failed += 1
            logger.error(f"Webhook: delivery of {event.message_id} failed: {e.message} {e.details or ''}".rstrip())
            return False

        if response.is_success:
            self.delivered += 1
            logger.info(f"Webhook: call successful ({response.status_code})")
            return True

        self.failed += 1
        logger.error(f"Webhook: call failed: {response.status_code} {response.reason_phrase}")
        return False

    def stats(self) -> dict[str, int]:
        return {"delivered": self.delivered, "filtered": self.dropped, "failed": self.failed}

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
