"""Event types for the inbound relay."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from wagate.backend.base import RawMessage

GROUP_SUFFIX = "@g.us"


def is_group_id(chat_id: str) -> bool:
    return chat_id.endswith(GROUP_SUFFIX)


@dataclass
class InboundMessageEvent:
    """Message observed by a session, consumed once by the relay."""
    message_id: str
    chat_id: str
    sender_id: str
    recipient_id: str
    is_group: bool
    body: str
    quoted_message_id: str | None = None
    session_id: str = ""
    received_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_raw(cls, session_id: str, raw: RawMessage) -> "InboundMessageEvent":
        is_group = is_group_id(raw.from_id)
        return cls(
            message_id=raw.id,
            chat_id=raw.from_id,
            sender_id=(raw.author or raw.from_id) if is_group else raw.from_id,
            recipient_id=raw.to_id,
            is_group=is_group,
            body=raw.body,
            quoted_message_id=raw.quoted_id or None,
            session_id=session_id,
        )


@dataclass
class WebhookPayload:
    message_id: str
    chat_id: str
    replied_message_id: str | None
    is_group: bool
    message_text: str

    @classmethod
    def from_event(cls, event: InboundMessageEvent) -> "WebhookPayload":
        return cls(
            message_id=event.message_id,
            chat_id=event.chat_id,
            replied_message_id=event.quoted_message_id,
            is_group=event.is_group,
            message_text=event.body,
        )

    def to_dict(self) -> dict[str, Any]:
        # replied_message_id is always present, as null when there is no quote
        return asdict(self)
