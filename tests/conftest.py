from typing import Optional
from unittest.mock import AsyncMock

import pytest

from ticobot.schemas.channel import ChatSummary, InboundMessage, MediaPayload
from ticobot.services.api_client import BackendClient
from ticobot.services.channel_provider import ChannelProvider


class FakeChannel(ChannelProvider):
    """In-memory channel that records everything sent through it."""

    def __init__(self):
        super().__init__()
        self.sent_texts: list[tuple[str, str]] = []
        self.sent_media: list[tuple[str, MediaPayload, Optional[str]]] = []
        self.chats: list[ChatSummary] = []
        self.unread: list[ChatSummary] = []
        self.messages: dict[str, list[InboundMessage]] = {}
        self.media: dict[str, MediaPayload] = {}
        self.state: Optional[str] = "CONNECTED"
        self.read_marks: list[str] = []
        self.deleted: list[str] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    def texts_to(self, conversation_id: str) -> list[str]:
        return [text for chat_id, text in self.sent_texts if chat_id == conversation_id]

    async def connect(self) -> None:
        self.connect_calls += 1

    async def disconnect(self) -> None:
        self.disconnect_calls += 1

    async def query_state(self) -> Optional[str]:
        return self.state

    async def _send_text(self, conversation_id: str, text: str) -> None:
        self.sent_texts.append((conversation_id, text))

    async def _send_media(self, conversation_id: str, media: MediaPayload, caption: Optional[str]) -> None:
        self.sent_media.append((conversation_id, media, caption))

    async def list_chats(self, limit: Optional[int] = None) -> list[ChatSummary]:
        return self.chats[:limit] if limit else list(self.chats)

    async def list_unread_conversations(self, limit: int) -> list[ChatSummary]:
        return self.unread[:limit]

    async def fetch_recent_messages(self, conversation_id: str, limit: int) -> list[InboundMessage]:
        return self.messages.get(conversation_id, [])[-limit:]

    async def mark_read(self, conversation_id: str) -> None:
        self.read_marks.append(conversation_id)

    async def download_media(self, attachment_ref: str) -> Optional[MediaPayload]:
        return self.media.get(attachment_ref)

    async def delete_chat(self, conversation_id: str) -> bool:
        self.deleted.append(conversation_id)
        return True

    async def clear_chat(self, conversation_id: str) -> bool:
        return True


def make_message(text: str = "", conversation_id: str = "50688887777@c.us", **kwargs) -> InboundMessage:
    counter = make_message.counter = getattr(make_message, "counter", 0) + 1
    return InboundMessage(
        id=kwargs.pop("id", f"msg-{counter}"),
        conversation_id=conversation_id,
        text=text,
        **kwargs,
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("BOT_API_BASE_URL", "http://backend.test/api")
    monkeypatch.setenv("BOT_API_TOKEN", "test-token")
    monkeypatch.setenv("BOT_GATEWAY_URL", "http://gateway.test")
    monkeypatch.setenv("BOT_ADMIN_PHONES", "50670000000")
    monkeypatch.setenv("BOT_ENABLE_MESSAGE_POLLING", "true")


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def fake_backend():
    """Backend client whose every call is an AsyncMock."""
    backend = AsyncMock(spec=BackendClient)
    backend.check_paused_contact.return_value = False
    backend.find_customer_by_phone.return_value = None
    backend.fetch_bot_menu.return_value = None
    return backend


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def runtime(fake_backend, fake_channel, data_dir):
    """Full object graph over the fake channel, installed as the process runtime, always in hours."""
    from ticobot.config import Settings
    from ticobot.runtime import BotRuntime, set_runtime

    config = Settings(_env_file=None, BOT_DATA_DIR=data_dir, BOT_ADMIN_PHONES="50670000000")
    bot = BotRuntime(config, backend=fake_backend, provider=fake_channel)
    bot.hours.is_open = lambda now=None: True
    set_runtime(bot)
    yield bot
    bot.sessions.close()
    set_runtime(None)
