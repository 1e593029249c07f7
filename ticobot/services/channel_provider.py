"""Messaging channel capability and the HTTP gateway implementation.

The bot never speaks the WhatsApp protocol itself. A gateway process owns the
session and exposes it over HTTP; lifecycle and inbound events come back to us
through ``POST /channel/events`` and are re-emitted here to registered handlers.
"""

import asyncio
import base64
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import httpx

from ticobot.logging_config import get_logger
from ticobot.schemas.channel import ChatSummary, InboundMessage, MediaPayload

logger = get_logger("channel_provider")

EVENT_TYPES = (
    "scan_required",
    "authenticated",
    "ready",
    "disconnected",
    "auth_failure",
    "inbound_message",
)

EventHandler = Callable[..., Awaitable[None]]


class ChannelError(Exception):
    pass


class ChannelNotReadyError(ChannelError):
    pass


class ChannelSendError(ChannelError):
    pass


class ChannelProvider(ABC):
    """Connect, send and receive on one messaging account."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {name: [] for name in EVENT_TYPES}
        self._send_lock = asyncio.Lock()

    def on(self, event: str, handler: EventHandler) -> None:
        if event not in self._handlers:
            raise ValueError(f"Unknown channel event: {event}")
        self._handlers[event].append(handler)

    async def emit(self, event: str, *args: Any) -> None:
        """Run every handler for an event; a failing handler does not stop the others."""
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(*args)
            except Exception as exc:
                logger.error(
                    f"Channel event handler failed: {event}",
                    exc_info=True,
                    extra={"context": {"event": event, "error": str(exc)}},
                )

    async def send_text(self, conversation_id: str, text: str) -> None:
        async with self._send_lock:
            await self._send_text(conversation_id, text)

    async def send_media(
        self, conversation_id: str, media: MediaPayload, caption: Optional[str] = None
    ) -> None:
        async with self._send_lock:
            await self._send_media(conversation_id, media, caption)

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def query_state(self) -> Optional[str]: ...

    @abstractmethod
    async def _send_text(self, conversation_id: str, text: str) -> None: ...

    @abstractmethod
    async def _send_media(self, conversation_id: str, media: MediaPayload, caption: Optional[str]) -> None: ...

    @abstractmethod
    async def list_chats(self, limit: Optional[int] = None) -> list[ChatSummary]: ...

    @abstractmethod
    async def list_unread_conversations(self, limit: int) -> list[ChatSummary]: ...

    @abstractmethod
    async def fetch_recent_messages(self, conversation_id: str, limit: int) -> list[InboundMessage]: ...

    @abstractmethod
    async def mark_read(self, conversation_id: str) -> None: ...

    @abstractmethod
    async def download_media(self, attachment_ref: str) -> Optional[MediaPayload]: ...

    @abstractmethod
    async def delete_chat(self, conversation_id: str) -> bool: ...

    @abstractmethod
    async def clear_chat(self, conversation_id: str) -> bool: ...


class GatewayChannelProvider(ChannelProvider):
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout, transport=self._transport
        )

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ChannelError(f"Gateway {method} {path} failed: {exc}") from exc
        if response.status_code == 409:
            raise ChannelNotReadyError(f"Gateway not ready for {method} {path}")
        if response.status_code >= 400:
            raise ChannelError(f"Gateway {method} {path} returned {response.status_code}")
        if not response.content:
            return None
        return response.json()

    async def connect(self) -> None:
        await self._call("POST", "session/start")
        logger.info("Gateway session start requested")

    async def disconnect(self) -> None:
        await self._call("POST", "session/stop")
        logger.info("Gateway session stop requested")

    async def query_state(self) -> Optional[str]:
        body = await self._call("GET", "session/state")
        if isinstance(body, dict):
            return body.get("state")
        return None

    async def _send_text(self, conversation_id: str, text: str) -> None:
        try:
            await self._call("POST", "messages/text", json={"chat_id": conversation_id, "text": text})
        except ChannelNotReadyError:
            raise
        except ChannelError as exc:
            raise ChannelSendError(str(exc)) from exc

    async def _send_media(self, conversation_id: str, media: MediaPayload, caption: Optional[str]) -> None:
        payload = {
            "chat_id": conversation_id,
            "data": base64.b64encode(media.data).decode("ascii"),
            "mime_type": media.mime_type,
            "filename": media.filename,
            "caption": caption,
        }
        try:
            await self._call("POST", "messages/media", json=payload)
        except ChannelNotReadyError:
            raise
        except ChannelError as exc:
            raise ChannelSendError(str(exc)) from exc

    async def list_chats(self, limit: Optional[int] = None) -> list[ChatSummary]:
        body = await self._call("GET", "chats", params={"limit": limit} if limit else None)
        return [ChatSummary.model_validate(item) for item in body or []]

    async def list_unread_conversations(self, limit: int) -> list[ChatSummary]:
        body = await self._call("GET", "chats", params={"unread_only": "true", "limit": limit})
        chats = [ChatSummary.model_validate(item) for item in body or []]
        return [chat for chat in chats if chat.unread_count > 0][:limit]

    async def fetch_recent_messages(self, conversation_id: str, limit: int) -> list[InboundMessage]:
        body = await self._call("GET", f"chats/{conversation_id}/messages", params={"limit": limit})
        return [InboundMessage.model_validate(item) for item in body or []]

    async def mark_read(self, conversation_id: str) -> None:
        await self._call("POST", f"chats/{conversation_id}/seen")

    async def download_media(self, attachment_ref: str) -> Optional[MediaPayload]:
        body = await self._call("GET", f"media/{attachment_ref}")
        if not isinstance(body, dict) or not body.get("data"):
            return None
        return MediaPayload(
            data=base64.b64decode(body["data"]),
            mime_type=body.get("mime_type") or "application/octet-stream",
            filename=body.get("filename"),
        )

    async def delete_chat(self, conversation_id: str) -> bool:
        await self._call("DELETE", f"chats/{conversation_id}")
        return True

    async def clear_chat(self, conversation_id: str) -> bool:
        await self._call("POST", f"chats/{conversation_id}/clear")
        return True
