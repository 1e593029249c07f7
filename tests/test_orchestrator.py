from unittest.mock import AsyncMock

import pytest
from conftest import make_message

from ticobot.schemas.channel import MediaPayload
from ticobot.services.menu_service import UNKNOWN_OPTION
from ticobot.services.orchestrator import (
    AGENT_CONNECTING,
    ATTACH_RECEIPT_NOW,
    ATTACH_RECEIPT_REMINDER,
    ATTACHMENT_DISCARDED,
    CONFIRM_ATTACHMENT,
    RECEIPT_RECEIVED,
)
from ticobot.services.payment_service import MONTHS_FAILED, MONTHS_INVALID, MONTHS_PROMPT, MONTHS_RETRY_PENDING
from ticobot.services.receipt_service import IntakeOutcome
from ticobot.services.result import Result
from ticobot.services.session_state import ChatState

CLIENT = "50688887777@c.us"
OPERATOR = "50670000000@c.us"

MENU_ROWS = [
    {"keyword": "1", "reply_message": "Información de servicios\nOfrecemos streaming."},
    {"keyword": "2", "reply_message": "Horarios\nLunes a domingo."},
    {
        "keyword": "3",
        "reply_message": "Planes disponibles, elige una letra",
        "submenu": [{"key": "a", "text": "Plan básico"}, {"key": "b", "text": "Plan premium"}],
    },
    {"keyword": "4", "reply_message": "Ubicación\nSan José."},
    {"keyword": "5", "reply_message": "Hablar con un asesor"},
    {"keyword": "6", "reply_message": "Enviar comprobante de pago"},
    {"keyword": "7", "reply_message": "Redes sociales"},
    {"keyword": "8", "reply_message": "Estado de cuenta"},
]


@pytest.fixture
def bot(runtime, fake_backend):
    fake_backend.fetch_bot_menu.return_value = MENU_ROWS
    return runtime


async def send(bot, text="", conversation_id=CLIENT, **kwargs):
    await bot.orchestrator.handle(make_message(text, conversation_id=conversation_id, **kwargs))


class TestFiltering:
    @pytest.mark.asyncio
    async def test_ignores_own_and_empty_messages(self, bot, fake_channel):
        await send(bot, "hola", is_from_self=True)
        await send(bot, "   ")
        await send(bot, "hola", conversation_id="status@broadcast")

        assert fake_channel.sent_texts == []

    @pytest.mark.asyncio
    async def test_paused_contact_gets_no_reply(self, bot, fake_channel, fake_backend):
        fake_backend.check_paused_contact.return_value = True

        await send(bot, "hola")

        assert fake_channel.sent_texts == []

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, bot, fake_channel, fake_backend):
        fake_backend.check_paused_contact.side_effect = RuntimeError("backend down")

        await send(bot, "hola")

        assert fake_channel.sent_texts == []


class TestWelcomeMenu:
    @pytest.mark.asyncio
    async def test_first_message_shows_menu(self, bot, fake_channel):
        await send(bot, "hola")

        welcome = fake_channel.texts_to(CLIENT)[-1]
        assert welcome.startswith("Hola! Bienvenido a nuestro 🤖 CHATBOT")
        assert "3 - Planes disponibles, elige una letra" in welcome
        assert bot.sessions.get(CLIENT).state == ChatState.MENU_SHOWN

    @pytest.mark.asyncio
    async def test_menu_unavailable(self, bot, fake_channel, fake_backend):
        fake_backend.fetch_bot_menu.return_value = None

        await send(bot, "hola")

        assert fake_channel.texts_to(CLIENT) == [
            "Lo siento, el menú no está disponible en este momento. Intenta más tarde."
        ]

    @pytest.mark.asyncio
    async def test_plain_reply_option_closes_menu(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "1")

        assert fake_channel.texts_to(CLIENT)[-1].startswith("Información de servicios")
        assert bot.sessions.get(CLIENT).state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_option(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "99")

        assert fake_channel.texts_to(CLIENT)[-1] == UNKNOWN_OPTION
        assert bot.sessions.get(CLIENT).state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_submenu_uses_letter_keys(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "3")

        session = bot.sessions.get(CLIENT)
        assert fake_channel.texts_to(CLIENT)[-1] == "Planes disponibles, elige una letra"
        assert session.state == ChatState.MENU_SHOWN
        assert session.submenu is True
        assert [item.keyword for item in session.menu_items] == ["a", "b"]

        await send(bot, "B")

        assert fake_channel.texts_to(CLIENT)[-1] == "Plan premium"
        assert session.state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_submenu_rejects_numbers(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "3")
        await send(bot, "1")

        assert fake_channel.texts_to(CLIENT)[-1] == UNKNOWN_OPTION

    @pytest.mark.asyncio
    async def test_account_statement(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "8")

        texts = fake_channel.texts_to(CLIENT)
        assert texts[-2] == "🔍 Consultando tu información, un momento por favor..."
        assert bot.sessions.get(CLIENT).state == ChatState.IDLE


class TestKeywords:
    @pytest.mark.asyncio
    async def test_ping(self, bot, fake_channel):
        await send(bot, "PING")

        assert fake_channel.texts_to(CLIENT) == ["pong"]

    @pytest.mark.asyncio
    async def test_exit_from_menu(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "salir")

        assert fake_channel.texts_to(CLIENT)[-1].startswith("Has salido del menú.")
        assert bot.sessions.get(CLIENT).state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_agent_keyword_hands_off(self, bot, fake_channel):
        await send(bot, "agente")

        assert fake_channel.texts_to(CLIENT) == [AGENT_CONNECTING]
        session = bot.sessions.get(CLIENT)
        assert session.state == ChatState.AGENT_MODE
        assert session.effective_timeout == 3600
        operator_texts = fake_channel.texts_to(OPERATOR)
        assert len(operator_texts) == 1
        assert "solicitó hablar con un agente" in operator_texts[0]

    @pytest.mark.asyncio
    async def test_agent_mode_stays_silent(self, bot, fake_channel):
        await send(bot, "agente")
        await send(bot, "sigo esperando")

        assert fake_channel.texts_to(CLIENT) == [AGENT_CONNECTING]

    @pytest.mark.asyncio
    async def test_exit_from_agent_mode(self, bot, fake_channel):
        await send(bot, "agente")
        await send(bot, "salir")

        assert fake_channel.texts_to(CLIENT)[-1].startswith("Has salido del modo agente.")

    @pytest.mark.asyncio
    async def test_handoff_notification_throttled(self, bot, fake_channel):
        await send(bot, "agente")
        await send(bot, "salir")
        await send(bot, "asesor")

        assert len(fake_channel.texts_to(OPERATOR)) == 1

    @pytest.mark.asyncio
    async def test_menu_option_handoff(self, bot, fake_channel):
        await send(bot, "hola")
        await send(bot, "5")

        assert bot.sessions.get(CLIENT).state == ChatState.AGENT_MODE
        assert "(opción 5)" in fake_channel.texts_to(OPERATOR)[0]


class TestAfterHours:
    @pytest.mark.asyncio
    async def test_notice_is_throttled(self, bot, fake_channel):
        bot.hours.is_open = lambda now=None: False

        await send(bot, "hola")
        await send(bot, "hola otra vez")

        texts = fake_channel.texts_to(CLIENT)
        assert len(texts) == 1
        assert texts[0].startswith("Hola. Actualmente estamos fuera del horario de atención")

    @pytest.mark.asyncio
    async def test_menu_keyword_still_works(self, bot, fake_channel):
        bot.hours.is_open = lambda now=None: False

        await send(bot, "menu")

        assert fake_channel.texts_to(CLIENT)[-1].startswith("Hola! Bienvenido")


class TestReceipts:
    @pytest.fixture
    def intake(self, bot):
        mock = AsyncMock(return_value=IntakeOutcome(entry={"id": "r-1"}, backend_payment_id=44))
        bot.orchestrator.intake.intake = mock
        return mock

    @pytest.mark.asyncio
    async def test_menu_receipt_option_then_upload(self, bot, fake_channel, intake):
        fake_channel.media["att-1"] = MediaPayload(data=b"%PDF", mime_type="application/pdf", filename="r.pdf")
        await send(bot, "hola")
        await send(bot, "6")

        session = bot.sessions.get(CLIENT)
        assert fake_channel.texts_to(CLIENT)[-1] == ATTACH_RECEIPT_NOW
        assert session.state == ChatState.AWAITING_RECEIPT_UPLOAD

        await send(bot, "ya va")
        assert fake_channel.texts_to(CLIENT)[-1] == ATTACH_RECEIPT_REMINDER

        await send(bot, "", has_attachment=True, attachment_ref="att-1")

        texts = fake_channel.texts_to(CLIENT)
        assert texts[-2:] == [MONTHS_PROMPT, RECEIPT_RECEIVED]
        assert session.state == ChatState.AWAITING_MONTHS_COUNT
        assert session.months_context.receipt_id == "r-1"
        assert session.months_context.backend_payment_id == 44
        operator_texts = fake_channel.texts_to(OPERATOR)
        assert "ID interno: r-1 | backend payment: 44" in operator_texts[-1]
        assert fake_channel.sent_media[-1][0] == OPERATOR

    @pytest.mark.asyncio
    async def test_unsolicited_attachment_confirmed(self, bot, fake_channel, intake):
        fake_channel.media["att-2"] = MediaPayload(data=b"img", mime_type="image/jpeg", filename="")

        await send(bot, "", has_attachment=True, attachment_ref="att-2")
        session = bot.sessions.get(CLIENT)
        assert fake_channel.texts_to(CLIENT) == [CONFIRM_ATTACHMENT]
        assert session.state == ChatState.PENDING_RECEIPT_CONFIRMATION
        assert session.pending_attachment.filename.startswith("receipt-50688887777-")

        await send(bot, "si")

        intake.assert_awaited_once()
        assert session.state == ChatState.AWAITING_MONTHS_COUNT

    @pytest.mark.asyncio
    async def test_unsolicited_attachment_discarded(self, bot, fake_channel, intake):
        fake_channel.media["att-3"] = MediaPayload(data=b"img", mime_type="image/jpeg")

        await send(bot, "", has_attachment=True, attachment_ref="att-3")
        await send(bot, "no")

        assert fake_channel.texts_to(CLIENT)[-1] == ATTACHMENT_DISCARDED
        intake.assert_not_awaited()
        assert bot.sessions.get(CLIENT).state == ChatState.IDLE


class TestMonths:
    @pytest.fixture
    def awaiting(self, bot, fake_channel):
        bot.orchestrator.intake.intake = AsyncMock(return_value=IntakeOutcome(entry={"id": "r-9"}))
        fake_channel.media["att"] = MediaPayload(data=b"img", mime_type="image/jpeg", filename="x.jpg")
        return bot

    @pytest.mark.asyncio
    async def test_months_applied(self, awaiting, fake_channel):
        awaiting.orchestrator.applier.apply_months = AsyncMock(return_value=Result.success({"id": 1}))
        await send(awaiting, "", has_attachment=True, attachment_ref="att")
        await send(awaiting, "si")

        await send(awaiting, "2")

        assert fake_channel.texts_to(CLIENT)[-1].startswith("✅ Gracias. He registrado que pagas 2 mes(es).")
        assert awaiting.sessions.get(CLIENT).state == ChatState.IDLE
        args = awaiting.orchestrator.applier.apply_months.await_args
        assert args.args[0].receipt_id == "r-9"
        assert args.args[1] == 2

    @pytest.mark.asyncio
    async def test_invalid_months(self, awaiting, fake_channel):
        await send(awaiting, "", has_attachment=True, attachment_ref="att")
        await send(awaiting, "si")

        await send(awaiting, "dos")

        assert fake_channel.texts_to(CLIENT)[-1] == MONTHS_INVALID
        assert awaiting.sessions.get(CLIENT).state == ChatState.AWAITING_MONTHS_COUNT

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_and_keeps_state(self, awaiting, fake_channel):
        applier = awaiting.orchestrator.applier
        applier.apply_months = AsyncMock(return_value=Result.failure("backend down"))
        applier.schedule_retry = lambda *args, **kwargs: None
        await send(awaiting, "", has_attachment=True, attachment_ref="att")
        await send(awaiting, "si")

        await send(awaiting, "3")

        assert fake_channel.texts_to(CLIENT)[-1] == MONTHS_FAILED
        assert awaiting.sessions.get(CLIENT).state == ChatState.AWAITING_MONTHS_COUNT

    @pytest.mark.asyncio
    async def test_later_replies_do_not_schedule_another_retry(self, awaiting, fake_channel):
        applier = awaiting.orchestrator.applier
        applier.apply_months = AsyncMock(return_value=Result.failure("backend down"))
        scheduled = []
        applier.schedule_retry = lambda *args, **kwargs: scheduled.append(args)
        await send(awaiting, "", has_attachment=True, attachment_ref="att")
        await send(awaiting, "si")

        await send(awaiting, "3")
        await send(awaiting, "3")
        await send(awaiting, "3")

        assert len(scheduled) == 1
        assert applier.apply_months.await_count == 1
        assert fake_channel.texts_to(CLIENT)[-1] == MONTHS_RETRY_PENDING
        assert awaiting.sessions.get(CLIENT).months_context.retry_scheduled is True

    @pytest.mark.asyncio
    async def test_exit_leaves_months_state(self, awaiting, fake_channel):
        await send(awaiting, "", has_attachment=True, attachment_ref="att")
        await send(awaiting, "si")

        await send(awaiting, "salir")

        assert awaiting.sessions.get(CLIENT).state == ChatState.IDLE


class TestOperator:
    @pytest.mark.asyncio
    async def test_admin_menu_keyword(self, bot, fake_channel):
        await send(bot, "adminmenu", conversation_id=OPERATOR)

        assert fake_channel.texts_to(OPERATOR)[-1].startswith("🔧 *MENÚ ADMIN* 🔧")
        assert bot.sessions.get(OPERATOR).admin_menu is True

    @pytest.mark.asyncio
    async def test_admin_menu_then_flow(self, bot, fake_channel, fake_backend):
        await send(bot, "adminmenu", conversation_id=OPERATOR)
        await send(bot, "12", conversation_id=OPERATOR)
        await send(bot, "88887777", conversation_id=OPERATOR)

        assert fake_channel.texts_to(OPERATOR)[-1] == "No existe un cliente con ese teléfono."
        assert bot.sessions.get(OPERATOR).state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_star_command_overrides_flow(self, bot, fake_channel):
        await send(bot, "*nuevo", conversation_id=OPERATOR)
        await send(bot, "*cancelar", conversation_id=OPERATOR)

        assert fake_channel.texts_to(OPERATOR)[-1] == "Asistente admin cancelado."

    @pytest.mark.asyncio
    async def test_operator_plain_text_gets_no_welcome(self, bot, fake_channel):
        await send(bot, "hola", conversation_id=OPERATOR)

        assert fake_channel.texts_to(OPERATOR) == []

    @pytest.mark.asyncio
    async def test_operator_skips_pause_check(self, bot, fake_backend):
        fake_backend.check_paused_contact.return_value = True

        await send(bot, "*ping", conversation_id=OPERATOR)

        fake_backend.check_paused_contact.assert_not_awaited()
