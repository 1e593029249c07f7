from unittest.mock import AsyncMock, Mock

import pytest
from conftest import make_message

from ticobot.services.admin_flows import (
    AdminFlowRunner,
    CleanupStep,
    ConfirmStep,
    FlowType,
    PaymentStep,
    SubscriptionStep,
    new_flow,
    parse_amount_crc,
    to_hhmm,
)
from ticobot.services.chat_cleanup import CleanupSummary
from ticobot.services.session_state import ChatSession, ChatState, ConversationContext

CHAT = "50670000000@c.us"


class Conversation:
    """Drives one operator chat through the runner and records replies."""

    def __init__(self, runner: AdminFlowRunner, flow_type: FlowType):
        self.runner = runner
        self.session = ChatSession(CHAT)
        self.session.start_flow(new_flow(flow_type))
        self.replies: list[str] = []

    async def _reply(self, text: str) -> None:
        self.replies.append(text)

    async def say(self, body: str) -> str:
        ctx = ConversationContext(
            message=make_message(body, conversation_id=CHAT),
            session=self.session,
            phone="50670000000",
            phone_norm="50670000000",
            is_operator=True,
            body=body,
            reply=self._reply,
        )
        await self.runner.handle(ctx)
        return self.replies[-1]

    @property
    def flow(self):
        return self.session.admin_flow


@pytest.fixture
def cleaner():
    mock = Mock()
    mock.run = AsyncMock(return_value=CleanupSummary(scanned=5, candidates=2))
    return mock


@pytest.fixture
def runner(fake_backend, cleaner):
    return AdminFlowRunner(fake_backend, cleaner, country_code="506")


class TestParsers:
    def test_parse_amount_strips_symbols(self):
        assert parse_amount_crc("₡8.000") == 8000
        assert parse_amount_crc("abc") == 0

    def test_to_hhmm(self):
        assert to_hhmm("") == "08:00"
        assert to_hhmm("7:05") == "07:05"
        assert to_hhmm("24:00") is None
        assert to_hhmm("ocho") is None

    def test_new_flow_starts_at_first_step(self):
        flow = new_flow(FlowType.CREATE_SUBSCRIPTION)
        assert flow.step == SubscriptionStep.PHONE
        assert flow.data.phone is None


class TestCreateSubscription:
    @pytest.mark.asyncio
    async def test_full_wizard(self, runner, fake_backend):
        chat = Conversation(runner, FlowType.CREATE_SUBSCRIPTION)

        assert await chat.say("88887777") == "Nombre del cliente:"
        assert chat.flow.data.phone == "50688887777"
        await chat.say("Ana Mora")
        await chat.say("8000")
        await chat.say("15")
        await chat.say("")
        summary = await chat.say("")
        assert "• Monto: ₡8000" in summary
        assert "• Hora: 08:00" in summary

        done = await chat.say("si")

        assert done.startswith("✅ Cliente y suscripción creados para Ana Mora")
        fake_backend.upsert_customer.assert_awaited_once_with({"phone": "50688887777", "name": "Ana Mora", "active": 1})
        payload = fake_backend.create_subscription.await_args.args[0]
        assert payload["day_of_month"] == 15
        assert payload["amount"] == 8000
        assert chat.session.state == ChatState.IDLE

    @pytest.mark.asyncio
    async def test_invalid_day_keeps_step(self, runner):
        chat = Conversation(runner, FlowType.CREATE_SUBSCRIPTION)
        chat.flow.step = SubscriptionStep.DAY

        assert await chat.say("40") == "Día inválido. Debe ser entre 1 y 31."
        assert chat.flow.step == SubscriptionStep.DAY

    @pytest.mark.asyncio
    async def test_yo_uses_own_phone(self, runner):
        chat = Conversation(runner, FlowType.CREATE_SUBSCRIPTION)

        await chat.say("yo")

        assert chat.flow.data.phone == "50670000000"

    @pytest.mark.asyncio
    async def test_no_cancels(self, runner, fake_backend):
        chat = Conversation(runner, FlowType.CREATE_SUBSCRIPTION)
        chat.flow.step = SubscriptionStep.CONFIRM

        assert await chat.say("no") == "Operación cancelada."
        fake_backend.create_subscription.assert_not_awaited()
        assert chat.flow is None


class TestDeleteCustomer:
    @pytest.mark.asyncio
    async def test_unknown_phone_ends_flow(self, runner, fake_backend):
        fake_backend.find_customer_by_phone.return_value = None
        chat = Conversation(runner, FlowType.DELETE_CUSTOMER)

        assert await chat.say("88887777") == "No existe un cliente con ese teléfono."
        assert chat.flow is None

    @pytest.mark.asyncio
    async def test_confirm_deletes(self, runner, fake_backend):
        fake_backend.find_customer_by_phone.return_value = {"id": 9, "name": "Ana"}
        fake_backend.delete_customer.return_value = {"deleted": 1}
        chat = Conversation(runner, FlowType.DELETE_CUSTOMER)

        prompt = await chat.say("88887777")
        assert "ELIMINAR al cliente Ana" in prompt
        assert chat.flow.step == ConfirmStep.CONFIRM

        assert (await chat.say("CONFIRMAR")).startswith("✅ Eliminado.")
        fake_backend.delete_customer.assert_awaited_once_with(9)

    @pytest.mark.asyncio
    async def test_anything_else_cancels(self, runner, fake_backend):
        fake_backend.find_customer_by_phone.return_value = {"id": 9, "name": "Ana"}
        chat = Conversation(runner, FlowType.DELETE_CUSTOMER)
        await chat.say("88887777")

        assert await chat.say("mejor no") == "Operación cancelada."
        fake_backend.delete_customer.assert_not_awaited()


class TestDeleteTransaction:
    @pytest.mark.asyncio
    async def test_input_then_confirm(self, runner, fake_backend):
        chat = Conversation(runner, FlowType.DELETE_TRANSACTION_INPUT)

        prompt = await chat.say("123")
        assert "ID: 123" in prompt
        assert chat.flow.type == FlowType.DELETE_TRANSACTION

        assert await chat.say("confirmar") == "✅ Transacción 123 eliminada correctamente"
        fake_backend.delete_transaction.assert_awaited_once_with(123)

    @pytest.mark.asyncio
    async def test_invalid_id(self, runner):
        chat = Conversation(runner, FlowType.DELETE_TRANSACTION_INPUT)

        assert await chat.say("abc") == "❌ ID inválido. Ingresa solo números."
        assert chat.flow.type == FlowType.DELETE_TRANSACTION_INPUT


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_full_wizard(self, runner, fake_backend):
        fake_backend.find_customer_by_phone.return_value = {"id": 4, "name": "Ana", "phone": "50688887777"}
        fake_backend.create_payment.return_value = {"data": {"id": 55, "status": "unverified"}}
        chat = Conversation(runner, FlowType.CREATE_PAYMENT)

        assert "Cliente: *Ana*" in await chat.say("88887777")
        await chat.say("7000")
        assert await chat.say("eur") == "❌ Moneda inválida. Escribe CRC o USD."
        await chat.say("crc")
        await chat.say("sinpe")
        await chat.say("")
        assert chat.flow.step == PaymentStep.CONFIRM

        done = await chat.say("sí")

        assert "ID: 55" in done
        payload = fake_backend.create_payment.await_args.args[0]
        assert payload["client_id"] == 4
        assert payload["currency"] == "CRC"
        assert payload["status"] == "unverified"
        assert payload["reference"] is None
        assert payload["metadata"]["registered_by"] == "admin_via_bot"

    @pytest.mark.asyncio
    async def test_unknown_client(self, runner, fake_backend):
        chat = Conversation(runner, FlowType.CREATE_PAYMENT)

        assert (await chat.say("88887777")).startswith("❌ No encontré un cliente")
        assert chat.flow is None


class TestConciliatePayment:
    @pytest.mark.asyncio
    async def test_defaults_to_verified(self, runner, fake_backend):
        fake_backend.get_payment.return_value = {"data": {"id": 8, "amount": 5000, "status": "unverified"}}
        chat = Conversation(runner, FlowType.CONCILIATE_PAYMENT)

        assert "Pago a Conciliar" in await chat.say("8")
        await chat.say("")
        done = await chat.say("")

        assert "Nuevo estado: verified" in done
        fake_backend.update_payment.assert_awaited_once_with(8, {"status": "verified"})
        conciliation = fake_backend.create_conciliation.await_args.args[0]
        assert conciliation["notes"] is None
        assert conciliation["conciliated_by"] == "50670000000"

    @pytest.mark.asyncio
    async def test_invalid_status(self, runner, fake_backend):
        fake_backend.get_payment.return_value = {"id": 8}
        chat = Conversation(runner, FlowType.CONCILIATE_PAYMENT)
        await chat.say("8")

        assert (await chat.say("aprobado")).startswith("❌ Estado inválido.")


class TestPauseContact:
    @pytest.mark.asyncio
    async def test_pause_with_known_client(self, runner, fake_backend):
        fake_backend.find_customer_by_phone.return_value = {"id": 3}
        fake_backend.check_paused_contact.return_value = True
        chat = Conversation(runner, FlowType.PAUSE_CONTACT)
        await chat.say("88887777")

        done = await chat.say("1")

        fake_backend.pause_contact.assert_awaited_once()
        assert fake_backend.pause_contact.await_args.args[0]["whatsapp_number"] == "50688887777"
        assert "⏸️ PAUSADO (silencio)" in done

    @pytest.mark.asyncio
    async def test_resume_without_client_uses_number(self, runner, fake_backend):
        chat = Conversation(runner, FlowType.PAUSE_CONTACT)
        await chat.say("88887777")

        done = await chat.say("reanudar")

        fake_backend.resume_contact_by_number.assert_awaited_once_with("50688887777")
        assert "✅ ACTIVO" in done

    @pytest.mark.asyncio
    async def test_status_only(self, runner, fake_backend):
        chat = Conversation(runner, FlowType.PAUSE_CONTACT)
        await chat.say("88887777")

        done = await chat.say("3")

        assert "Estado para 50688887777: ✅ ACTIVO" in done
        fake_backend.pause_contact.assert_not_awaited()


class TestCleanupChats:
    @pytest.mark.asyncio
    async def test_simulation(self, runner, cleaner):
        chat = Conversation(runner, FlowType.CLEANUP_CHATS)

        text = await chat.say("1")

        options = cleaner.run.await_args.args[0]
        assert options.dry_run is True
        assert "Candidatos a limpiar (no-clientes): 2" in text
        assert chat.flow is None

    @pytest.mark.asyncio
    async def test_toggles_then_execute(self, runner, cleaner):
        chat = Conversation(runner, FlowType.CLEANUP_CHATS)

        await chat.say("3")
        await chat.say("4")
        await chat.say("2")
        assert chat.flow.step == CleanupStep.CONFIRM
        await chat.say("CONFIRMAR")

        options = cleaner.run.await_args.args[0]
        assert options.dry_run is False
        assert options.include_unread is True
        assert options.include_groups is True

    @pytest.mark.asyncio
    async def test_cancel_confirmation(self, runner, cleaner):
        chat = Conversation(runner, FlowType.CLEANUP_CHATS)
        await chat.say("2")

        assert (await chat.say("cancelar")).startswith("Operación cancelada.")
        cleaner.run.assert_not_awaited()


class TestStepFailure:
    @pytest.mark.asyncio
    async def test_exception_clears_flow(self, runner, fake_backend):
        fake_backend.find_customer_by_phone.side_effect = RuntimeError("boom")
        chat = Conversation(runner, FlowType.DELETE_CUSTOMER)

        assert await chat.say("88887777") == "Error en asistente: boom"
        assert chat.flow is None
        assert chat.session.state == ChatState.IDLE
