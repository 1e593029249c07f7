from unittest.mock import AsyncMock

import pytest

from ticobot.schemas.channel import MediaPayload
from ticobot.services.business_hours import BusinessHours
from ticobot.services.notifier import OperatorNotifier
from ticobot.services.phone import OperatorDirectory
from ticobot.services.session_state import ChatSession

OPERATOR_CHAT = "50670000000@c.us"
CLIENT_CHAT = "50688887777@c.us"
ALWAYS_OPEN = {str(day): {"open": "00:00", "close": "23:59"} for day in range(7)}


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_notifier(fake_channel, hours=None, clock=None, phones=("70000000",)):
    return OperatorNotifier(
        fake_channel,
        OperatorDirectory(list(phones)),
        hours or BusinessHours(ALWAYS_OPEN),
        throttle_seconds=1800,
        clock=clock or FakeClock(),
    )


class TestSend:
    @pytest.mark.asyncio
    async def test_sends_to_primary_operator(self, fake_channel):
        assert await make_notifier(fake_channel).send_text("hola") is True
        assert fake_channel.texts_to(OPERATOR_CHAT) == ["hola"]

    @pytest.mark.asyncio
    async def test_no_operator_configured(self, fake_channel):
        assert await make_notifier(fake_channel, phones=()).send_text("hola") is False
        assert fake_channel.sent_texts == []

    @pytest.mark.asyncio
    async def test_send_failure_is_swallowed(self, fake_channel):
        fake_channel._send_text = AsyncMock(side_effect=Exception("down"))
        assert await make_notifier(fake_channel).send_text("hola") is False

    @pytest.mark.asyncio
    async def test_forward_media(self, fake_channel):
        media = MediaPayload(data=b"x", mime_type="image/jpeg", filename="r.jpg")
        assert await make_notifier(fake_channel).send_media(media, "Comprobante") is True
        assert fake_channel.sent_media[0][0] == OPERATOR_CHAT


class TestHandoff:
    def test_keyword_text(self, fake_channel):
        text = make_notifier(fake_channel).handoff_text("keyword", "50688887777", CLIENT_CHAT, "quiero un agente")
        assert text.startswith("🔔 Cliente 50688887777")
        assert 'Último mensaje: "quiero un agente"' in text

    def test_menu_option_text(self, fake_channel):
        text = make_notifier(fake_channel).handoff_text("menu_option", "506", CLIENT_CHAT, "5")
        assert "(opción 5)" in text

    def test_out_of_hours_prefix(self, fake_channel):
        hours = BusinessHours()
        hours.schedule = {}
        text = make_notifier(fake_channel, hours=hours).handoff_text("keyword", "506", CLIENT_CHAT, "hola")
        assert text.startswith("⚠️ FUERA DE HORARIO - ")
        assert "FUERA del horario de atención" in text

    @pytest.mark.asyncio
    async def test_throttled_per_conversation(self, fake_channel):
        clock = FakeClock()
        notifier = make_notifier(fake_channel, clock=clock)
        session = ChatSession(CLIENT_CHAT)

        assert await notifier.notify_handoff(session, trigger="keyword", phone="506", body="agente") is True
        clock.now += 60
        assert await notifier.notify_handoff(session, trigger="keyword", phone="506", body="agente") is False
        clock.now += 1800
        assert await notifier.notify_handoff(session, trigger="keyword", phone="506", body="agente") is True
        assert len(fake_channel.texts_to(OPERATOR_CHAT)) == 2

    @pytest.mark.asyncio
    async def test_failed_send_does_not_start_throttle(self, fake_channel):
        notifier = make_notifier(fake_channel)
        fake_channel._send_text = AsyncMock(side_effect=Exception("down"))
        session = ChatSession(CLIENT_CHAT)
        await notifier.notify_handoff(session, trigger="keyword", phone="506", body="agente")
        assert session.admin_notified_at is None
