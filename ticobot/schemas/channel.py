from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field

from ticobot.services.phone import is_broadcast


class InboundMessage(BaseModel):
    id: str
    conversation_id: str = Field(validation_alias=AliasChoices("conversation_id", "from", "chat_id"))
    sender_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sender_id", "author"))
    text: str = Field(default="", validation_alias=AliasChoices("text", "body"))
    has_attachment: bool = Field(default=False, validation_alias=AliasChoices("has_attachment", "hasMedia"))
    attachment_ref: Optional[str] = None
    is_from_self: bool = Field(default=False, validation_alias=AliasChoices("is_from_self", "fromMe"))
    timestamp: Optional[Union[datetime, float]] = None

    model_config = {"populate_by_name": True}

    @property
    def is_broadcast(self) -> bool:
        return is_broadcast(self.conversation_id)


class ChatSummary(BaseModel):
    id: str
    unread_count: int = Field(default=0, validation_alias=AliasChoices("unread_count", "unreadCount"))
    is_group: bool = Field(default=False, validation_alias=AliasChoices("is_group", "isGroup"))
    name: Optional[str] = None

    model_config = {"populate_by_name": True}


class MediaPayload(BaseModel):
    data: bytes
    mime_type: str = "application/octet-stream"
    filename: Optional[str] = None


ChannelEventType = Literal[
    "scan_required",
    "authenticated",
    "ready",
    "disconnected",
    "auth_failure",
    "inbound_message",
]


class ChannelEvent(BaseModel):
    event: ChannelEventType
    qr: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[InboundMessage] = None


class ChannelEventResponse(BaseModel):
    success: bool
    event: str
