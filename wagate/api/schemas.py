"""Request bodies for the HTTP API."""

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class SendTextRequest(_Body):
    phone: str = Field(min_length=1)
    message: str = Field(min_length=1, max_length=4096)
    message_id_to_reply: str | None = None
    session_id: str | None = None


class SendMediaRequest(_Body):
    phone: str = Field(min_length=1)
    media: str = Field(min_length=1)     # URL, data URI, local path or raw base64
    caption: str | None = Field(default=None, max_length=1024)
    filename: str | None = Field(default=None, max_length=255)
    mimetype: str | None = None
    message_id_to_reply: str | None = None
    session_id: str | None = None


class ForwardMessageRequest(_Body):
    message_id: str = Field(alias="messageId", min_length=1)
    to_chat_id: str = Field(alias="toChatId", min_length=1)
    session_id: str | None = None


class ClearGroupRequest(_Body):
    chat_id: str = Field(alias="chatId", min_length=1)
    session_id: str | None = None


class TriggerMessageRequest(_Body):
    """Synthetic inbound message for exercising the relay end to end."""
    message: str = "Debug test message"
    from_id: str = Field(default="debug-group@g.us", alias="from")
    to_id: str = Field(default="debug@c.us", alias="to")
    author: str | None = None
    quoted_message_id: str | None = Field(default=None, alias="quotedStanzaID")
    session_id: str | None = None
