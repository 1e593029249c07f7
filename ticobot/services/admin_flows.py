"""Operator wizards driven one message at a time.

Each flow is an ``AdminFlow`` tagged with its ``FlowType``, the current step
of that flow's own step enum and a typed data record. ``AdminFlowRunner``
dispatches through one table keyed by flow type; an exception anywhere in a
step clears the flow and answers ``Error en asistente: ...``.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Awaitable, Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.services.api_client import BackendClient
from ticobot.services.chat_cleanup import ChatCleaner, CleanupOptions
from ticobot.services.menu_service import leading_number
from ticobot.services.phone import digits_only, normalize_phone
from ticobot.services.session_state import ConversationContext
from ticobot.services.statement_service import (
    BACK_TO_ADMIN,
    BACK_TO_ADMIN_MENU,
    format_amount,
    no_transactions_text,
    render_client_details,
    render_transactions,
)

logger = get_logger("admin_flows")

INVALID_PHONE = "Ingresa un teléfono válido (8 dígitos CR o con código de país)."
INVALID_PHONE_SHORT = "❌ Teléfono inválido. Usa 8 dígitos."
INVALID_ID = "❌ ID inválido. Ingresa solo números."
CANCELLED = "Operación cancelada."
DEFAULT_CONCEPT = "Suscripción de Servicios de Entretenimiento"
CONFIRM_OR_CANCEL = 'Responde "si" para confirmar o "no" para cancelar.'
YES_WORDS = {"si", "sí", "s", "y", "yes"}
NO_WORDS = {"no", "n", "cancelar"}
CONCILIATION_STATUSES = ("verified", "rejected", "pending", "unverified")


class FlowType(str, Enum):
    CREATE_SUBSCRIPTION = "create_subscription"
    DELETE_CUSTOMER = "delete_customer"
    DELETE_SUBSCRIPTIONS = "delete_subscriptions_by_phone"
    DELETE_CONTRACTS = "delete_contracts_by_phone"
    DELETE_TRANSACTION_INPUT = "delete_transaction_input"
    DELETE_TRANSACTION = "delete_transaction"
    VIEW_DETAILS = "view_details"
    GENERATE_RECEIPT = "generate_receipt"
    SEND_RECEIPT = "send_receipt"
    LIST_TRANSACTIONS = "list_transactions"
    CREATE_PAYMENT = "create_payment"
    CONCILIATE_PAYMENT = "conciliate_payment"
    PAUSE_CONTACT = "pause_contact"
    CLEANUP_CHATS = "cleanup_chats"


class SubscriptionStep(IntEnum):
    PHONE = 1
    NAME = 2
    AMOUNT = 3
    DAY = 4
    TIME = 5
    CONCEPT = 6
    CONFIRM = 7


class ConfirmStep(IntEnum):
    PHONE = 1
    CONFIRM = 2


class InputStep(IntEnum):
    INPUT = 1


class PaymentStep(IntEnum):
    PHONE = 1
    AMOUNT = 2
    CURRENCY = 3
    CHANNEL = 4
    REFERENCE = 5
    CONFIRM = 6


class ConciliationStep(IntEnum):
    PAYMENT_ID = 1
    STATUS = 2
    NOTES = 3


class PauseStep(IntEnum):
    PHONE = 1
    ACTION = 2


class CleanupStep(IntEnum):
    CHOOSE = 1
    CONFIRM = 2


@dataclass
class SubscriptionData:
    phone: Optional[str] = None
    name: Optional[str] = None
    amount: Optional[int] = None
    day_of_month: Optional[int] = None
    due_time: Optional[str] = None
    concept: Optional[str] = None


@dataclass
class TargetData:
    phone: Optional[str] = None
    customer_id: Optional[Any] = None


@dataclass
class TransactionData:
    transaction_id: Optional[int] = None


@dataclass
class PaymentData:
    client: dict = field(default_factory=dict)
    amount: Optional[int] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class ConciliationData:
    payment: dict = field(default_factory=dict)
    new_status: Optional[str] = None


@dataclass
class CleanupData:
    include_unread: bool = False
    include_groups: bool = False


@dataclass
class AdminFlow:
    type: FlowType
    step: IntEnum
    data: Any = None


FLOW_STARTS: dict[FlowType, tuple[IntEnum, Callable[[], Any]]] = {
    FlowType.CREATE_SUBSCRIPTION: (SubscriptionStep.PHONE, SubscriptionData),
    FlowType.DELETE_CUSTOMER: (ConfirmStep.PHONE, TargetData),
    FlowType.DELETE_SUBSCRIPTIONS: (ConfirmStep.PHONE, TargetData),
    FlowType.DELETE_CONTRACTS: (ConfirmStep.PHONE, TargetData),
    FlowType.DELETE_TRANSACTION_INPUT: (InputStep.INPUT, TransactionData),
    FlowType.DELETE_TRANSACTION: (InputStep.INPUT, TransactionData),
    FlowType.VIEW_DETAILS: (InputStep.INPUT, lambda: None),
    FlowType.GENERATE_RECEIPT: (InputStep.INPUT, lambda: None),
    FlowType.SEND_RECEIPT: (InputStep.INPUT, lambda: None),
    FlowType.LIST_TRANSACTIONS: (InputStep.INPUT, lambda: None),
    FlowType.CREATE_PAYMENT: (PaymentStep.PHONE, PaymentData),
    FlowType.CONCILIATE_PAYMENT: (ConciliationStep.PAYMENT_ID, ConciliationData),
    FlowType.PAUSE_CONTACT: (PauseStep.PHONE, TargetData),
    FlowType.CLEANUP_CHATS: (CleanupStep.CHOOSE, CleanupData),
}


def new_flow(flow_type: FlowType, data: Any = None) -> AdminFlow:
    step, factory = FLOW_STARTS[flow_type]
    return AdminFlow(type=flow_type, step=step, data=data if data is not None else factory())


def parse_amount_crc(text: str) -> int:
    digits = re.sub(r"\D", "", text or "")
    return int(digits) if digits else 0


def to_hhmm(text: str, default: str = "08:00") -> Optional[str]:
    value = (text or "").strip()
    if not value:
        return default
    match = re.fullmatch(r"(\d{1,2}):(\d{2})", value)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    return body


def delete_customer_prompt(customer: dict) -> str:
    return (
        f"Vas a ELIMINAR al cliente {customer.get('name') or customer.get('phone')} y TODO su historial "
        "(pagos, recordatorios y suscripciones). Escribe CONFIRMAR para continuar o CANCELAR para abortar."
    )


def delete_subscriptions_prompt(phone: str) -> str:
    return (
        f"Vas a ELIMINAR las suscripciones de {phone} y los pagos FUTUROS asociados. "
        "Escribe CONFIRMAR para continuar o CANCELAR para abortar."
    )


def delete_transaction_prompt(transaction_id: int) -> str:
    return f"⚠️ ¿Eliminar transacción?\n\nID: {transaction_id}\n\nResponde CONFIRMAR para continuar"


FlowHandler = Callable[[ConversationContext, AdminFlow], Awaitable[None]]


class AdminFlowRunner:
    def __init__(self, backend: BackendClient, cleaner: ChatCleaner, *, country_code: str = "506"):
        self.backend = backend
        self.cleaner = cleaner
        self.country_code = country_code
        self._handlers: dict[FlowType, FlowHandler] = {
            FlowType.CREATE_SUBSCRIPTION: self._create_subscription,
            FlowType.DELETE_CUSTOMER: self._delete_customer,
            FlowType.DELETE_SUBSCRIPTIONS: self._delete_subscriptions,
            FlowType.DELETE_CONTRACTS: self._delete_contracts,
            FlowType.DELETE_TRANSACTION_INPUT: self._delete_transaction_input,
            FlowType.DELETE_TRANSACTION: self._delete_transaction,
            FlowType.VIEW_DETAILS: self._view_details,
            FlowType.GENERATE_RECEIPT: self._generate_receipt,
            FlowType.SEND_RECEIPT: self._send_receipt,
            FlowType.LIST_TRANSACTIONS: self._list_transactions,
            FlowType.CREATE_PAYMENT: self._create_payment,
            FlowType.CONCILIATE_PAYMENT: self._conciliate_payment,
            FlowType.PAUSE_CONTACT: self._pause_contact,
            FlowType.CLEANUP_CHATS: self._cleanup_chats,
        }

    async def handle(self, ctx: ConversationContext) -> None:
        flow = ctx.session.admin_flow
        if flow is None:
            return
        try:
            await self._handlers[flow.type](ctx, flow)
        except Exception as exc:
            logger.error(
                f"Admin flow step failed: {exc}",
                exc_info=True,
                extra={
                    "context": {
                        "conversation_id": ctx.conversation_id,
                        "flow": flow.type.value,
                        "step": int(flow.step),
                    }
                },
            )
            ctx.session.end_flow()
            await ctx.reply(f"Error en asistente: {exc}")

    def read_phone(self, ctx: ConversationContext, allow_self: bool = True) -> Optional[str]:
        if allow_self and ctx.lc.strip() == "yo":
            return ctx.phone_norm
        phone = normalize_phone(ctx.body, self.country_code)
        return phone if re.fullmatch(r"\d{8,15}", phone) else None

    async def _finish(self, ctx: ConversationContext, text: str) -> None:
        ctx.session.end_flow()
        await ctx.reply(text)

    async def _create_subscription(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: SubscriptionData = flow.data
        if flow.step == SubscriptionStep.PHONE:
            phone = self.read_phone(ctx)
            if not phone:
                await ctx.reply(INVALID_PHONE)
                return
            data.phone = phone
            flow.step = SubscriptionStep.NAME
            await ctx.reply("Nombre del cliente:")
        elif flow.step == SubscriptionStep.NAME:
            if not ctx.body.strip():
                await ctx.reply("Nombre inválido, intenta de nuevo:")
                return
            data.name = ctx.body.strip()
            flow.step = SubscriptionStep.AMOUNT
            await ctx.reply("Monto mensual en colones (solo números, ej: 8000):")
        elif flow.step == SubscriptionStep.AMOUNT:
            amount = parse_amount_crc(ctx.body)
            if amount <= 0:
                await ctx.reply("Monto inválido. Escribe solo números, ej: 8000")
                return
            data.amount = amount
            flow.step = SubscriptionStep.DAY
            await ctx.reply("Día de cobro (1-31):")
        elif flow.step == SubscriptionStep.DAY:
            day = parse_amount_crc(ctx.body)
            if not 1 <= day <= 31:
                await ctx.reply("Día inválido. Debe ser entre 1 y 31.")
                return
            data.day_of_month = day
            flow.step = SubscriptionStep.TIME
            await ctx.reply("Hora de recordatorio HH:MM en 24h (Enter para 08:00):")
        elif flow.step == SubscriptionStep.TIME:
            due_time = to_hhmm(ctx.body)
            if not due_time:
                await ctx.reply("Hora inválida. Usa formato HH:MM, ej: 08:00")
                return
            data.due_time = due_time
            flow.step = SubscriptionStep.CONCEPT
            await ctx.reply(f'Concepto (opcional). Enter para usar "{DEFAULT_CONCEPT}":')
        elif flow.step == SubscriptionStep.CONCEPT:
            data.concept = ctx.body.strip() or DEFAULT_CONCEPT
            flow.step = SubscriptionStep.CONFIRM
            await ctx.reply(
                "\n".join(
                    [
                        "Vas a crear:",
                        f"• Teléfono: {data.phone}",
                        f"• Nombre: {data.name}",
                        f"• Monto: ₡{format_amount(data.amount)}",
                        f"• Día: {data.day_of_month}",
                        f"• Hora: {data.due_time}",
                        f"• Concepto: {data.concept}",
                        'Confirma con "si" o "no"',
                    ]
                )
            )
        elif flow.step == SubscriptionStep.CONFIRM:
            answer = ctx.lc.strip()
            if answer not in YES_WORDS | {"confirmar"}:
                if answer in NO_WORDS | {"cancel"}:
                    await self._finish(ctx, CANCELLED)
                else:
                    await ctx.reply(CONFIRM_OR_CANCEL)
                return
            try:
                await self.backend.upsert_customer({"phone": data.phone, "name": data.name, "active": 1})
                await self.backend.create_subscription(
                    {
                        "phone": data.phone,
                        "day_of_month": data.day_of_month,
                        "due_time": data.due_time,
                        "amount": data.amount,
                        "concept": data.concept,
                        "active": 1,
                        "name": data.name,
                    }
                )
                text = f"✅ Cliente y suscripción creados para {data.name} ({data.phone})."
            except Exception as exc:
                text = f"Error creando registro: {exc}"
            await self._finish(ctx, text)

    async def _delete_customer(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: TargetData = flow.data
        if flow.step == ConfirmStep.PHONE:
            phone = self.read_phone(ctx)
            if not phone:
                await ctx.reply(INVALID_PHONE)
                return
            await self.prepare_customer_deletion(ctx, flow, phone)
            return
        if ctx.lc.strip() != "confirmar":
            await self._finish(ctx, CANCELLED)
            return
        try:
            result = await self.backend.delete_customer(data.customer_id)
            text = f"✅ Eliminado. Resultado: {json.dumps(result, ensure_ascii=False, default=str)}"
        except Exception as exc:
            text = f"Error al eliminar: {exc}"
        await self._finish(ctx, text)

    async def prepare_customer_deletion(self, ctx: ConversationContext, flow: AdminFlow, phone: str) -> None:
        flow.data.phone = phone
        customer = await self.backend.find_customer_by_phone(phone)
        if not customer:
            await self._finish(ctx, "No existe un cliente con ese teléfono.")
            return
        flow.data.customer_id = customer.get("id")
        flow.step = ConfirmStep.CONFIRM
        await ctx.reply(delete_customer_prompt(customer))

    async def _delete_subscriptions(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: TargetData = flow.data
        if flow.step == ConfirmStep.PHONE:
            phone = self.read_phone(ctx)
            if not phone:
                await ctx.reply(INVALID_PHONE)
                return
            data.phone = phone
            flow.step = ConfirmStep.CONFIRM
            await ctx.reply(delete_subscriptions_prompt(phone))
            return
        if ctx.lc.strip() != "confirmar":
            await self._finish(ctx, CANCELLED)
            return
        try:
            result = await self.backend.delete_subscriptions_by_phone(data.phone)
            text = f"✅ Eliminadas suscripciones: {json.dumps(result, ensure_ascii=False, default=str)}"
        except Exception as exc:
            text = f"Error eliminando suscripciones: {exc}"
        await self._finish(ctx, text)

    async def _delete_contracts(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: TargetData = flow.data
        if flow.step == ConfirmStep.PHONE:
            phone = self.read_phone(ctx, allow_self=False)
            if not phone:
                await ctx.reply("❌ Teléfono inválido.")
                return
            data.phone = phone
            flow.step = ConfirmStep.CONFIRM
            await ctx.reply(
                f"⚠️ Vas a ELIMINAR los contratos de {phone} y los pagos FUTUROS asociados.\n\n"
                "Escribe CONFIRMAR para continuar o CANCELAR para abortar."
            )
            return
        if ctx.lc.strip() != "confirmar":
            await self._finish(ctx, f"❌ {CANCELLED}")
            return
        try:
            result = await self.backend.delete_contracts_by_phone(data.phone)
            text = f"✅ {result.get('deleted', 0)} contrato(s) eliminado(s) correctamente."
        except Exception as exc:
            text = f"❌ Error: {exc}"
        await self._finish(ctx, text)

    async def _delete_transaction_input(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        transaction_id = leading_number(ctx.body)
        if transaction_id is None:
            await ctx.reply(INVALID_ID)
            return
        flow.type = FlowType.DELETE_TRANSACTION
        flow.step = InputStep.INPUT
        flow.data = TransactionData(transaction_id=transaction_id)
        await ctx.reply(delete_transaction_prompt(transaction_id))

    async def _delete_transaction(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: TransactionData = flow.data
        if ctx.lc.strip() != "confirmar":
            await self._finish(ctx, f"❌ {CANCELLED}")
            return
        try:
            await self.backend.delete_transaction(data.transaction_id)
            text = f"✅ Transacción {data.transaction_id} eliminada correctamente"
        except Exception as exc:
            text = f"❌ Error: {exc}"
        await self._finish(ctx, text)

    async def _view_details(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        phone = self.read_phone(ctx)
        if not phone:
            await ctx.reply(INVALID_PHONE)
            return
        try:
            client = await self.backend.find_customer_by_phone(phone)
            if not client:
                await self._finish(ctx, f"❌ No encontré un cliente con ese teléfono.\n\n{BACK_TO_ADMIN}")
                return
            contracts = await self.backend.list_contracts({"client_id": client.get("id")})
            text = render_client_details(client, contracts, phone=phone)
        except Exception as exc:
            logger.error(f"Client details lookup failed: {exc}", extra={"context": {"phone": phone}})
            text = f"❌ Error consultando detalles: {exc}\n\n{BACK_TO_ADMIN}"
        await self._finish(ctx, text)

    async def _generate_receipt(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        phone = self.read_phone(ctx, allow_self=False)
        if not phone:
            await ctx.reply(INVALID_PHONE_SHORT)
            return
        text = await self.generate_and_send_receipt(ctx, phone)
        await self._finish(ctx, f"{text}\n\n{BACK_TO_ADMIN}" if text.startswith("✅") else text)

    async def generate_and_send_receipt(self, ctx: ConversationContext, phone: str) -> str:
        try:
            await ctx.reply("⏳ Generando comprobante...")
            result = _unwrap(await self.backend.create_receipt_for_client({"phone": phone}))
            receipt_id = result.get("receipt_id") if isinstance(result, dict) else None
            if not receipt_id:
                return "Error generando comprobante (respuesta inesperada del backend)."
            await self.backend.send_receipt(receipt_id)
            return f"✅ Comprobante generado y enviado a {phone}\nID: {receipt_id}"
        except Exception as exc:
            return f"❌ Error: {exc}"

    async def _send_receipt(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        receipt_id = leading_number(ctx.body)
        if receipt_id is None:
            await ctx.reply(INVALID_ID)
            return
        try:
            await self.backend.send_receipt(receipt_id)
            text = f"✅ Comprobante {receipt_id} enviado (o solicitado envío).\n\n{BACK_TO_ADMIN}"
        except Exception as exc:
            text = f"❌ Error: {exc}"
        await self._finish(ctx, text)

    async def _list_transactions(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        filter_phone = normalize_phone(ctx.body, self.country_code) if ctx.body.strip() else None
        await self._finish(ctx, await self.transactions_text(filter_phone, footer=BACK_TO_ADMIN_MENU))

    async def transactions_text(self, filter_phone: Optional[str], footer: Optional[str] = None) -> str:
        try:
            transactions = await self.backend.list_transactions(filter_phone or None, 20)
        except Exception as exc:
            return f"❌ Error: {exc}"
        if not transactions:
            return no_transactions_text(filter_phone)
        return render_transactions(transactions, filter_phone, footer=footer)

    async def _create_payment(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: PaymentData = flow.data
        if flow.step == PaymentStep.PHONE:
            phone = self.read_phone(ctx, allow_self=False)
            if not phone:
                await ctx.reply(INVALID_PHONE_SHORT)
                return
            client = await self.backend.find_customer_by_phone(phone)
            if not client:
                await self._finish(ctx, f"❌ No encontré un cliente con ese teléfono.\n\n{BACK_TO_ADMIN}")
                return
            data.client = client
            flow.step = PaymentStep.AMOUNT
            await ctx.reply(f"Cliente: *{client.get('name')}*\n\nIngresa el monto del pago (solo números, ej: 7000):")
        elif flow.step == PaymentStep.AMOUNT:
            amount = parse_amount_crc(ctx.body)
            if amount <= 0:
                await ctx.reply("❌ Monto inválido. Escribe solo números.")
                return
            data.amount = amount
            flow.step = PaymentStep.CURRENCY
            await ctx.reply("Moneda (CRC o USD):")
        elif flow.step == PaymentStep.CURRENCY:
            currency = ctx.body.strip().upper()
            if currency not in ("CRC", "USD"):
                await ctx.reply("❌ Moneda inválida. Escribe CRC o USD.")
                return
            data.currency = currency
            flow.step = PaymentStep.CHANNEL
            await ctx.reply("Canal de pago (ej: sinpe, transferencia, efectivo):")
        elif flow.step == PaymentStep.CHANNEL:
            data.channel = ctx.body.strip() or "manual"
            flow.step = PaymentStep.REFERENCE
            await ctx.reply("Referencia (opcional, Enter para omitir):")
        elif flow.step == PaymentStep.REFERENCE:
            data.reference = ctx.body.strip() or None
            flow.step = PaymentStep.CONFIRM
            await ctx.reply(
                "\n".join(
                    [
                        "📝 *Resumen del Pago*",
                        "",
                        f"👤 Cliente: {data.client.get('name')}",
                        f"📱 Teléfono: {data.client.get('phone')}",
                        f"💵 Monto: ₡{format_amount(data.amount)} {data.currency}",
                        f"📊 Canal: {data.channel}",
                        f"🔖 Referencia: {data.reference or 'Sin referencia'}",
                        "",
                        'Confirma con "si" o "no"',
                    ]
                )
            )
        elif flow.step == PaymentStep.CONFIRM:
            answer = ctx.lc.strip()
            if answer not in YES_WORDS:
                if answer in NO_WORDS:
                    await self._finish(ctx, f"❌ Registro de pago cancelado.\n\n{BACK_TO_ADMIN}")
                else:
                    await ctx.reply(CONFIRM_OR_CANCEL)
                return
            try:
                payment = _unwrap(
                    await self.backend.create_payment(
                        {
                            "client_id": data.client.get("id"),
                            "amount": data.amount,
                            "currency": data.currency,
                            "channel": data.channel,
                            "status": "unverified",
                            "reference": data.reference,
                            "metadata": {"registered_by": "admin_via_bot", "admin_phone": ctx.phone_norm},
                        }
                    )
                ) or {}
                text = (
                    "✅ Pago registrado correctamente.\n\n"
                    f"ID: {payment.get('id')}\nEstado: {payment.get('status')}\n\n{BACK_TO_ADMIN}"
                )
            except Exception as exc:
                logger.error(f"Manual payment failed: {exc}", extra={"context": {"client_id": data.client.get("id")}})
                text = f"❌ Error registrando pago: {exc}"
            await self._finish(ctx, text)

    async def _conciliate_payment(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: ConciliationData = flow.data
        if flow.step == ConciliationStep.PAYMENT_ID:
            payment_id = leading_number(ctx.body)
            if payment_id is None:
                await ctx.reply(INVALID_ID)
                return
            try:
                payment = _unwrap(await self.backend.get_payment(payment_id))
            except Exception as exc:
                await self._finish(ctx, f"❌ Error obteniendo pago: {exc}")
                return
            if not payment:
                await self._finish(ctx, f"❌ No encontré el pago con ID {payment_id}.\n\n{BACK_TO_ADMIN}")
                return
            data.payment = payment
            flow.step = ConciliationStep.STATUS
            client = payment.get("client") or {}
            await ctx.reply(
                "\n".join(
                    [
                        "💰 *Pago a Conciliar*",
                        "",
                        f"ID: {payment.get('id')}",
                        f"Cliente: {client.get('name') or payment.get('client_id')}",
                        f"Monto: ₡{format_amount(payment.get('amount') or 0)} {payment.get('currency') or 'CRC'}",
                        f"Estado actual: {payment.get('status')}",
                        f"Referencia: {payment.get('reference') or 'Sin referencia'}",
                        "",
                        "Estado nuevo (verified, rejected, o Enter para verified):",
                    ]
                )
            )
        elif flow.step == ConciliationStep.STATUS:
            status = ctx.body.strip() or "verified"
            if status not in CONCILIATION_STATUSES:
                await ctx.reply("❌ Estado inválido. Usa: verified, rejected, pending o unverified")
                return
            data.new_status = status
            flow.step = ConciliationStep.NOTES
            await ctx.reply("Notas de conciliación (opcional, Enter para omitir):")
        elif flow.step == ConciliationStep.NOTES:
            payment_id = data.payment.get("id")
            try:
                await self.backend.update_payment(payment_id, {"status": data.new_status})
                await self.backend.create_conciliation(
                    {
                        "payment_id": payment_id,
                        "status": data.new_status,
                        "notes": ctx.body.strip() or None,
                        "conciliated_by": ctx.phone_norm,
                        "conciliated_at": datetime.now(timezone.utc).isoformat(),
                    }
                )
                text = (
                    "✅ Pago conciliado correctamente.\n\n"
                    f"ID: {payment_id}\nNuevo estado: {data.new_status}\n\n{BACK_TO_ADMIN}"
                )
            except Exception as exc:
                logger.error(f"Conciliation failed: {exc}", extra={"context": {"payment_id": payment_id}})
                text = f"❌ Error conciliando pago: {exc}"
            await self._finish(ctx, text)

    async def _pause_contact(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: TargetData = flow.data
        if flow.step == PauseStep.PHONE:
            phone = self.read_phone(ctx)
            if not phone:
                await ctx.reply(INVALID_PHONE)
                return
            data.phone = phone
            flow.step = PauseStep.ACTION
            await ctx.reply(
                "¿Qué deseas hacer? Responde con:\n1) Pausar (silenciar bot)\n2) Reanudar (activar bot)\n3) Ver estado"
            )
            return

        answer = ctx.lc.strip()
        if answer in ("1", "pausar", "pause"):
            action = "pause"
        elif answer in ("2", "reanudar", "unpause", "resume"):
            action = "resume"
        elif answer in ("3", "estado", "status"):
            action = "status"
        else:
            await ctx.reply("Responde 1 (pausar), 2 (reanudar) o 3 (estado).")
            return
        phone = digits_only(data.phone)
        if not phone:
            await self._finish(ctx, "❌ Faltó el teléfono. Escribe *adminmenu* para volver.")
            return

        if action == "status":
            paused = await self.backend.check_paused_contact(phone)
            state = "⏸️ PAUSADO (bot en silencio)" if paused else "✅ ACTIVO"
            await self._finish(ctx, f"📌 Estado para {phone}: {state}.\n\n{BACK_TO_ADMIN}")
            return

        try:
            client = await self.backend.find_customer_by_phone(phone)
        except Exception:
            client = None
        client_id = client.get("id") if client else None
        try:
            if action == "pause":
                await self.backend.pause_contact(
                    {"client_id": client_id, "whatsapp_number": phone, "reason": "paused via whatsapp admin menu"}
                )
            elif client_id:
                await self.backend.resume_contact(client_id, phone)
            else:
                await self.backend.resume_contact_by_number(phone)
        except Exception as exc:
            verb = "pausar" if action == "pause" else "reanudar"
            logger.error(f"Could not {action} contact: {exc}", extra={"context": {"phone": phone, "client_id": client_id}})
            await self._finish(ctx, f"❌ No pude {verb} el contacto {phone}.\nError: {exc}\n\n{BACK_TO_ADMIN}")
            return

        paused_now = await self.backend.check_paused_contact(phone)
        if action == "pause":
            state = "⏸️ PAUSADO (silencio)" if paused_now else "⚠️ AÚN ACTIVO"
            text = f"✅ Contacto {phone} pausado.\nEstado actual: {state}\n\n{BACK_TO_ADMIN}"
        else:
            state = "⚠️ AÚN PAUSADO" if paused_now else "✅ ACTIVO"
            text = f"✅ Contacto {phone} reanudado.\nEstado actual: {state}\n\n{BACK_TO_ADMIN}"
        await self._finish(ctx, text)

    async def _cleanup_chats(self, ctx: ConversationContext, flow: AdminFlow) -> None:
        data: CleanupData = flow.data
        answer = ctx.lc.strip()
        if flow.step == CleanupStep.CHOOSE:
            if answer in ("1", "simular", "dry", "dryrun"):
                summary = await self.cleaner.run(
                    CleanupOptions(dry_run=True, include_unread=data.include_unread, include_groups=data.include_groups)
                )
                lines = [
                    "🧹 *Limpieza de chats (SIMULACIÓN)*",
                    "",
                    f"Chats revisados: {summary.scanned}",
                    f"Candidatos a limpiar (no-clientes): {summary.candidates}",
                    f"Saltados por no leídos: {summary.skipped_unread}",
                    f"Saltados por grupos: {summary.skipped_group}",
                    f"Errores: {summary.errors}",
                    "",
                ]
                if summary.sample:
                    lines.append("*Muestra (hasta 20):*")
                    for entry in summary.sample:
                        who = entry["phone"] or entry["chat_id"]
                        reason = f" ({entry['reason']})" if entry.get("reason") else ""
                        lines.append(f"• {who}: {entry['action']}{reason}")
                lines += ["", "Escribe *adminmenu* para volver"]
                await self._finish(ctx, "\n".join(lines))
            elif answer == "3":
                data.include_unread = not data.include_unread
                await ctx.reply(
                    f"✅ includeUnread ahora es: {'SI' if data.include_unread else 'NO'}\n\n"
                    "Responde 1 (simular) o 2 (ejecutar) o 4 (grupos)."
                )
            elif answer == "4":
                data.include_groups = not data.include_groups
                await ctx.reply(
                    f"✅ includeGroups ahora es: {'SI' if data.include_groups else 'NO'}\n\n"
                    "Responde 1 (simular) o 2 (ejecutar) o 3 (no leídos)."
                )
            elif answer in ("2", "ejecutar", "run"):
                flow.step = CleanupStep.CONFIRM
                await ctx.reply(
                    "\n".join(
                        [
                            "⚠️ *Confirmación requerida*",
                            "",
                            "Esto intentará *borrar el chat* (si WhatsApp Web lo permite).",
                            "Si no se puede borrar, hará fallback a *limpiar mensajes* (sin archivar automáticamente).",
                            f"Configuración: includeUnread={'SI' if data.include_unread else 'NO'}, "
                            f"includeGroups={'SI' if data.include_groups else 'NO'}.",
                            "",
                            "Responde *CONFIRMAR* para ejecutar, o *cancelar* para salir.",
                        ]
                    )
                )
            else:
                await ctx.reply("Responde 1 (simular), 2 (ejecutar), 3 (toggle no leídos) o 4 (toggle grupos).")
            return

        if answer in ("cancelar", "salir", "no"):
            await self._finish(ctx, "Operación cancelada. Escribe *adminmenu* para volver")
            return
        if answer != "confirmar":
            await ctx.reply("Responde *CONFIRMAR* para ejecutar o *cancelar* para salir.")
            return
        summary = await self.cleaner.run(
            CleanupOptions(dry_run=False, include_unread=data.include_unread, include_groups=data.include_groups)
        )
        await self._finish(
            ctx,
            "\n".join(
                [
                    "🧹 *Limpieza de chats (EJECUTADA)*",
                    "",
                    f"Chats revisados: {summary.scanned}",
                    f"Candidatos detectados: {summary.candidates}",
                    f"Acciones ejecutadas: {summary.acted}",
                    f"Errores: {summary.errors}",
                    "",
                    "Escribe *adminmenu* para volver",
                ]
            ),
        )
