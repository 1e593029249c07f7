"""Operator surface: the numbered admin menu and the ``*`` command grammar."""

import platform
import resource
import time
from datetime import datetime
from typing import Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.services.admin_flows import (
    AdminFlowRunner,
    ConfirmStep,
    FlowType,
    delete_subscriptions_prompt,
    delete_transaction_prompt,
    new_flow,
)
from ticobot.services.api_client import BackendClient
from ticobot.services.business_hours import BusinessHours
from ticobot.services.menu_service import leading_number
from ticobot.services.phone import normalize_phone
from ticobot.services.reminder_service import ReminderScheduler
from ticobot.services.session_state import ConversationContext
from ticobot.services.statement_service import (
    BACK_TO_ADMIN,
    render_client_details,
    render_pending_payments,
    render_receipts_today,
)

logger = get_logger("admin_service")

ADMIN_MENU_KEYWORDS = {"adminmenu", "admin", "menuadmin"}

ADMIN_MENU_TEXT = "\n".join(
    [
        "🔧 *MENÚ ADMIN* 🔧",
        "",
        "Envía el número de la opción deseada:",
        "",
        "1️⃣ Crear cliente + contrato",
        "2️⃣ Ver detalles de cliente",
        "3️⃣ Ver mis detalles",
        "4️⃣ Listar comprobantes del día",
        "5️⃣ Generar comprobante para cliente",
        "6️⃣ Enviar comprobante por ID",
        "7️⃣ Listar transacciones",
        "8️⃣ Ejecutar scheduler",
        "",
        "💰 *PAGOS Y CONCILIACIÓN*",
        "9️⃣ Registrar pago manual",
        "🔟 Conciliar pago",
        "1️⃣1️⃣ Listar pagos pendientes",
        "",
        "🗑️ *ELIMINACIÓN*",
        "1️⃣2️⃣ Eliminar cliente",
        "1️⃣3️⃣ Eliminar contrato",
        "1️⃣4️⃣ Eliminar transacción",
        "",
        "1️⃣5️⃣ Estado del bot",
        "1️⃣6️⃣ Pausar / reanudar contacto (silenciar bot)",
        "1️⃣7️⃣ Limpiar chats no-clientes (borrar/limpiar)",
        "",
        "📋 Escribe *help para ver comandos de texto",
        "❌ Escribe salir para cancelar",
    ]
)

HELP_TEXT = "\n".join(
    [
        "🔧 *Comandos admin disponibles:*",
        "",
        "*adminmenu* - menú interactivo admin",
        "*ping* - healthcheck",
        "*status* - estado del bot",
        "*cancelar* - cancelar asistente admin",
        "*runscheduler* - ejecutar procesamiento de recordatorios (batch)",
        "*nuevo* - crear cliente + suscripción (asistente)",
        "*detalles <telefono>* - ver cliente y sus suscripciones",
        "*yo* - ver mis propios detalles",
        "*comprobantes* - listar comprobantes del día",
        "*comprobante <telefono>* - generar y enviar comprobante",
        "*enviar <id>* - enviar comprobante por ID",
        "*transacciones* - listar transacciones",
        "*eliminar cliente <telefono>* - eliminar cliente",
        "*eliminar suscripcion <telefono>* - eliminar suscripciones por teléfono",
        "*eliminar trans <id>* - eliminar transacción por ID",
    ]
)

CREATE_SUBSCRIPTION_PROMPT = (
    "Asistente: Crear cliente + suscripción.\n"
    'Teléfono del cliente (8 dígitos o con código de país). Escribe "yo" para usar tu número.'
)
PAUSE_CONTACT_PROMPT = (
    "Pausar/Reanudar contacto (silenciar bot).\n\n"
    "1) Enviame el teléfono del cliente (8 dígitos CR o con código de país, ej: 5067xxxxxxx).\n"
    'También puedes escribir "yo" para usar tu número.'
)
CLEANUP_PROMPT = (
    "🧹 Limpieza de chats (no-clientes)\n\n"
    "Esto revisa los chats del WhatsApp del BOT y limpia/archiva chats que NO sean clientes.\n"
    "Por seguridad primero corre en modo simulación (dry-run).\n\n"
    "Selecciona una opción:\n"
    "1) Simular (dry-run) y mostrar resumen\n"
    "2) Ejecutar limpieza REAL (requiere confirmación)\n"
    "3) Configurar: incluir chats con NO LEÍDOS (por defecto NO)\n"
    "4) Configurar: incluir GRUPOS (por defecto NO)\n\n"
    f"{BACK_TO_ADMIN}"
)

# Menu options that only open a wizard: option -> (flow, first prompt).
FLOW_OPTIONS: dict[int, tuple[FlowType, str]] = {
    1: (FlowType.CREATE_SUBSCRIPTION, CREATE_SUBSCRIPTION_PROMPT),
    2: (
        FlowType.VIEW_DETAILS,
        'Ingresa el teléfono del cliente (8 dígitos) o escribe "yo" para ver tus detalles:',
    ),
    5: (FlowType.GENERATE_RECEIPT, "Ingresa el teléfono del cliente para generar el comprobante (8 dígitos):"),
    6: (FlowType.SEND_RECEIPT, "Ingresa el ID del comprobante a enviar:"),
    7: (
        FlowType.LIST_TRANSACTIONS,
        "Ingresa el teléfono del cliente para filtrar transacciones, o presiona Enter para ver todas (últimas 20):",
    ),
    9: (FlowType.CREATE_PAYMENT, "📝 *Registrar Pago Manual*\n\nIngresa el teléfono del cliente (8 dígitos):"),
    10: (FlowType.CONCILIATE_PAYMENT, "🔄 *Conciliar Pago*\n\nIngresa el ID del pago a conciliar:"),
    12: (FlowType.DELETE_CUSTOMER, "Ingresa el teléfono del cliente a ELIMINAR (8 dígitos o con código de país):"),
    13: (FlowType.DELETE_CONTRACTS, "Ingresa el teléfono del cliente para eliminar sus contratos (8 dígitos):"),
    14: (FlowType.DELETE_TRANSACTION_INPUT, "Ingresa el ID de la transacción a eliminar:"),
    16: (FlowType.PAUSE_CONTACT, PAUSE_CONTACT_PROMPT),
    17: (FlowType.CLEANUP_CHATS, CLEANUP_PROMPT),
}


def memory_mb() -> int:
    """Peak resident memory of the process in MB (ru_maxrss is KB on Linux)."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if platform.system() == "Darwin":
        usage //= 1024
    return round(usage / 1024)


class AdminService:
    def __init__(
        self,
        backend: BackendClient,
        flows: AdminFlowRunner,
        scheduler: ReminderScheduler,
        hours: BusinessHours,
        *,
        country_code: str = "506",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.backend = backend
        self.flows = flows
        self.scheduler = scheduler
        self.hours = hours
        self.country_code = country_code
        self._clock = clock
        self.started_at = clock()

    async def open_menu(self, ctx: ConversationContext) -> None:
        ctx.session.show_menu([], admin=True)
        await ctx.reply(ADMIN_MENU_TEXT)

    def status_text(self) -> str:
        uptime = int(self._clock() - self.started_at)
        return "\n".join(
            [
                "🤖 *Estado del Bot*",
                "",
                f"⏱️ Uptime: {uptime // 3600}h {(uptime % 3600) // 60}m",
                f"📊 Memoria: {memory_mb()}MB",
                f"🐍 Python: {platform.python_version()}",
                f"⚙️ Timezone: {self.hours.timezone}",
                f"🕐 Horario: {self.hours.describe()}",
                "",
                BACK_TO_ADMIN,
            ]
        )

    async def handle_selection(self, ctx: ConversationContext) -> None:
        """Numeric choice while the admin menu is shown."""
        option = leading_number(ctx.body)
        if option in FLOW_OPTIONS:
            flow_type, prompt = FLOW_OPTIONS[option]
            ctx.session.start_flow(new_flow(flow_type))
            logger.info(
                "Admin flow started",
                extra={"context": {"conversation_id": ctx.conversation_id, "flow": flow_type.value}},
            )
            await ctx.reply(prompt)
            return

        ctx.session.clear_menu()
        if option == 3:
            await ctx.reply(await self.own_details_text(ctx, title="📇 *Tus Detalles*", footer=BACK_TO_ADMIN))
        elif option == 4:
            await ctx.reply(await self.receipts_today_text(from_command=False))
        elif option == 8:
            try:
                await self.scheduler.run_batch()
                await ctx.reply(f"✅ Scheduler ejecutado (runBatch).\n\n{BACK_TO_ADMIN}")
            except Exception as exc:
                logger.error(f"Scheduler run from admin menu failed: {exc}", exc_info=True)
                await ctx.reply(f"❌ Error ejecutando scheduler: {exc}")
        elif option == 11:
            await ctx.reply(await self.pending_payments_text())
        elif option == 15:
            await ctx.reply(self.status_text())
        else:
            await ctx.reply(
                "Opción no reconocida. Escribe *adminmenu* para ver el menú o *help para ver comandos de texto."
            )

    async def own_details_text(
        self,
        ctx: ConversationContext,
        *,
        title: Optional[str] = None,
        footer: Optional[str] = None,
    ) -> str:
        client = await self.backend.find_customer_by_phone(ctx.phone_norm)
        if not client:
            not_registered = "📇 *Tus Detalles*\n\n❌ No estás registrado como cliente."
            return f"{not_registered}\n\n{footer}" if footer else not_registered
        contracts = await self.backend.list_contracts({"client_id": client.get("id")})
        return render_client_details(
            client,
            contracts,
            phone=ctx.phone_norm,
            title=title,
            limit=3,
            show_cycle=footer is not None,
            footer=footer,
        )

    async def receipts_today_text(self, *, from_command: bool) -> str:
        today = datetime.now(self.hours.tz).date().isoformat()
        receipts = await self.backend.list_receipts_by_date(today)
        if not receipts:
            empty = "📄 No hay comprobantes generados hoy."
            return empty if from_command else f"{empty}\n\n{BACK_TO_ADMIN}"
        return render_receipts_today(receipts, self.hours.tz, from_command=from_command)

    async def pending_payments_text(self) -> str:
        payments = await self.backend.list_payments({"status": ["pending", "unverified"], "per_page": 20})
        if not payments:
            return f"📭 No hay pagos pendientes.\n\n{BACK_TO_ADMIN}"
        return render_pending_payments(payments)

    async def handle_command(self, ctx: ConversationContext) -> None:
        """``*command args`` from an operator; takes precedence over an active wizard."""
        raw = ctx.body.strip()[1:].strip()
        parts = raw.split()
        command = parts[0].lower() if parts else ""
        args = parts[1:]
        session = ctx.session

        if command in ("help", "ayuda"):
            await ctx.reply(HELP_TEXT)
        elif command in ("cancelar", "cancel"):
            if session.admin_flow is not None:
                session.end_flow()
                await ctx.reply("Asistente admin cancelado.")
            else:
                await ctx.reply("No hay asistente admin en curso.")
        elif command == "ping":
            await ctx.reply("pong")
        elif command == "status":
            await ctx.reply(self.status_text())
        elif command in ("adminmenu", "admin", "menuadmin"):
            await self.open_menu(ctx)
        elif command in ("runscheduler", "run"):
            try:
                await self.scheduler.run_batch()
                await ctx.reply("Scheduler ejecutado (runBatch).")
            except Exception as exc:
                await ctx.reply(f"Error ejecutando scheduler: {exc}")
        elif command in ("nuevo", "crear", "add"):
            session.start_flow(new_flow(FlowType.CREATE_SUBSCRIPTION))
            await ctx.reply(CREATE_SUBSCRIPTION_PROMPT)
        elif command == "eliminar" and args and args[0].lower() == "cliente":
            await self._delete_customer_command(ctx, args[1:])
        elif command == "eliminar" and args and args[0].lower() in ("suscripcion", "suscripción"):
            await self._delete_subscriptions_command(ctx, args[1:])
        elif command == "eliminar" and args and args[0].lower() == "trans":
            transaction_id = leading_number(args[1]) if len(args) > 1 else None
            if transaction_id is None:
                await ctx.reply("❌ ID inválido. Usa: *eliminar trans 123*")
                return
            session.start_flow(new_flow(FlowType.DELETE_TRANSACTION))
            session.admin_flow.data.transaction_id = transaction_id
            await ctx.reply(delete_transaction_prompt(transaction_id))
        elif command == "yo":
            await ctx.reply(await self.own_details_text(ctx))
        elif command == "detalles":
            await ctx.reply(await self._details_command(ctx, args))
        elif command == "comprobantes":
            await ctx.reply(await self.receipts_today_text(from_command=True))
        elif command == "comprobante":
            phone = normalize_phone(args[0], self.country_code) if args else ""
            if len(phone) < 8:
                await ctx.reply("❌ Teléfono inválido. Usa: *comprobante 87654321*")
                return
            await ctx.reply(await self.flows.generate_and_send_receipt(ctx, phone))
        elif command == "enviar":
            receipt_id = leading_number(args[0]) if args else None
            if receipt_id is None:
                await ctx.reply("❌ ID inválido. Usa: *enviar 123*")
                return
            try:
                await self.backend.send_receipt(receipt_id)
                await ctx.reply(f"✅ Comprobante {receipt_id} enviado (o solicitado envío).")
            except Exception as exc:
                await ctx.reply(f"❌ Error: {exc}")
        elif command in ("transacciones", "trans"):
            filter_phone = normalize_phone(args[0], self.country_code) if args else None
            await ctx.reply(await self.flows.transactions_text(filter_phone))
        else:
            await ctx.reply("Comando admin no reconocido. Escribe *help para ver los comandos disponibles.")

    async def _details_command(self, ctx: ConversationContext, args: list[str]) -> str:
        if not args:
            return "❌ Uso: *detalles <telefono>*"
        phone = normalize_phone(args[0], self.country_code)
        try:
            client = await self.backend.find_customer_by_phone(phone)
            if not client:
                return f"❌ No encontré un cliente con ese teléfono: {phone}"
            contracts = await self.backend.list_contracts({"client_id": client.get("id")})
        except Exception as exc:
            return f"❌ Error consultando detalles: {exc}"
        return render_client_details(client, contracts, phone=phone, limit=3, show_cycle=False, footer=None)

    async def _delete_customer_command(self, ctx: ConversationContext, args: list[str]) -> None:
        flow = new_flow(FlowType.DELETE_CUSTOMER)
        ctx.session.start_flow(flow)
        if not args:
            await ctx.reply(
                "Ingresa el teléfono del cliente a ELIMINAR (8 dígitos o con código de país). "
                'Puedes escribir "yo".'
            )
            return
        phone = ctx.phone_norm if args[0].lower() == "yo" else normalize_phone(args[0], self.country_code)
        try:
            await self.flows.prepare_customer_deletion(ctx, flow, phone)
        except Exception as exc:
            ctx.session.end_flow()
            await ctx.reply(f"Error preparando eliminación: {exc}")

    async def _delete_subscriptions_command(self, ctx: ConversationContext, args: list[str]) -> None:
        flow = new_flow(FlowType.DELETE_SUBSCRIPTIONS)
        ctx.session.start_flow(flow)
        if not args:
            await ctx.reply(
                "Ingresa el teléfono del cliente para eliminar sus suscripciones "
                '(8 dígitos o con código de país). Puedes escribir "yo".'
            )
            return
        phone = ctx.phone_norm if args[0].lower() == "yo" else normalize_phone(args[0], self.country_code)
        flow.data.phone = phone
        flow.step = ConfirmStep.CONFIRM
        await ctx.reply(delete_subscriptions_prompt(phone))
