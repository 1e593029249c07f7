"""Per-conversation dispatch of inbound messages.

Rules are tried in a fixed order and the first one that applies handles the
message. Events for one conversation are handled one at a time under the
session store's lock; any exception is logged here and never reaches the
channel callback.
"""

import time
from functools import partial
from typing import Callable

from ticobot.logging_config import get_logger
from ticobot.schemas.channel import InboundMessage, MediaPayload
from ticobot.schemas.menu import MenuItem
from ticobot.services.admin_flows import AdminFlowRunner
from ticobot.services.admin_service import ADMIN_MENU_KEYWORDS, AdminService
from ticobot.services.api_client import BackendClient
from ticobot.services.business_hours import BusinessHours
from ticobot.services.channel_provider import ChannelError, ChannelProvider
from ticobot.services.menu_service import (
    MENU_UNAVAILABLE,
    UNKNOWN_OPTION,
    MenuResolver,
    match_selection,
    render_welcome,
    resolve_action,
)
from ticobot.services.notifier import OperatorNotifier
from ticobot.services.payment_service import (
    MONTHS_FAILED,
    MONTHS_INVALID,
    MONTHS_PROMPT,
    MONTHS_RETRY_PENDING,
    PaymentApplier,
    months_applied_text,
    parse_months,
)
from ticobot.services.phone import OperatorDirectory, chat_id_to_phone, digits_only, normalize_phone
from ticobot.services.receipt_service import ReceiptIntake
from ticobot.services.session_state import (
    ChatState,
    ConversationContext,
    MonthsContext,
    PendingAttachment,
    SessionStore,
)
from ticobot.services.statement_service import build_account_statement, build_payment_status

logger = get_logger("orchestrator")

MENU_KEYWORDS = {"menu", "inicio", "help"}
EXIT_KEYWORDS = {"salir", "exit"}
AGENT_KEYWORDS = {"agente", "asesor", "soporte"}
PAYMENT_STATUS_KEYWORDS = {"pagos", "estado"}
UNPAUSE_KEYWORDS = {"unpause", "reanudar"}

ATTACH_RECEIPT_REMINDER = 'Por favor adjunta una foto o PDF del comprobante. Si no deseas continuar escribe "salir".'
ATTACH_RECEIPT_NOW = 'Por favor adjunta una foto o PDF del comprobante ahora. Si deseas cancelar escribe "salir".'
RECEIPT_RECEIVED = "✅ Recibimos tu comprobante. Un asesor lo revisará y te contactará si es necesario."
RECEIPT_ERROR = '❌ Ocurrió un error procesando el comprobante. Intenta de nuevo o escribe "salir" para cancelar.'
CONFIRM_ATTACHMENT = (
    'Veo que enviaste un archivo. ¿Es un comprobante de pago? Responde "si" para registrarlo y notificar '
    'a un asesor, o "no" para cancelar.'
)
ATTACHMENT_DISCARDED = (
    "He cancelado el registro del archivo. Si necesitas enviar el comprobante usa la opción 6 del menú."
)
AGENT_CONNECTING = (
    "Perfecto, te estoy conectando con un asesor. Un miembro de nuestro equipo te atenderá en breve. "
    "Por favor espera un momento."
)
AGENT_OPTION_IN_HOURS = (
    'Para hablar con un asesor, por favor comunícate con nuestro equipo de soporte o escribe "agente" para que '
    "te transferamos. Un asesor te contactará a la brevedad."
)
STATEMENT_LOOKUP = "🔍 Consultando tu información, un momento por favor..."
STATEMENT_ERROR = (
    '❌ Ocurrió un error al obtener tu estado de cuenta. Por favor intenta más tarde o escribe "agente" '
    "para hablar con un asesor."
)
PAYMENT_STATUS_ERROR = "❌ No pudimos obtener tu información de pagos. Intenta más tarde o contáctanos directamente."


class ConversationOrchestrator:
    def __init__(
        self,
        provider: ChannelProvider,
        backend: BackendClient,
        sessions: SessionStore,
        operators: OperatorDirectory,
        hours: BusinessHours,
        menus: MenuResolver,
        admin: AdminService,
        flows: AdminFlowRunner,
        intake: ReceiptIntake,
        applier: PaymentApplier,
        notifier: OperatorNotifier,
        *,
        company_name: str = "Tecno Servicios Artavia",
        country_code: str = "506",
        receipt_timeout_seconds: float = 1800.0,
        agent_timeout_seconds: float = 3600.0,
        after_hours_throttle_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.backend = backend
        self.sessions = sessions
        self.operators = operators
        self.hours = hours
        self.menus = menus
        self.admin = admin
        self.flows = flows
        self.intake = intake
        self.applier = applier
        self.notifier = notifier
        self.company_name = company_name
        self.country_code = country_code
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.agent_timeout_seconds = agent_timeout_seconds
        self.after_hours_throttle_seconds = after_hours_throttle_seconds
        self._clock = clock

    async def handle(self, message: InboundMessage) -> None:
        if message.is_from_self or message.is_broadcast:
            return
        body = (message.text or "").strip()
        if not body and not message.has_attachment:
            return

        conversation_id = message.conversation_id
        async with self.sessions.lock(conversation_id):
            phone = chat_id_to_phone(conversation_id)
            ctx = ConversationContext(
                message=message,
                session=self.sessions.get(conversation_id),
                phone=phone,
                phone_norm=normalize_phone(phone, self.country_code),
                is_operator=self.operators.is_operator_chat(conversation_id),
                body=body,
                reply=partial(self.provider.send_text, conversation_id),
            )
            try:
                await self.dispatch(ctx)
            except Exception as exc:
                flow = ctx.session.admin_flow
                logger.error(
                    f"Error handling message: {exc}",
                    exc_info=True,
                    extra={
                        "context": {
                            "conversation_id": conversation_id,
                            "state": ctx.session.state.value,
                            "flow": flow.type.value if flow else None,
                            "step": int(flow.step) if flow else None,
                        }
                    },
                )

    async def dispatch(self, ctx: ConversationContext) -> None:
        session = ctx.session
        lc = ctx.lc

        if ctx.is_operator and lc in ADMIN_MENU_KEYWORDS:
            self.sessions.touch(ctx.conversation_id)
            await self.admin.open_menu(ctx)
            return

        if not ctx.is_operator and lc not in UNPAUSE_KEYWORDS:
            if await self.backend.check_paused_contact(ctx.phone_norm):
                logger.info(
                    "Paused contact, bot stays silent",
                    extra={"context": {"conversation_id": ctx.conversation_id}},
                )
                return

        self.sessions.touch(ctx.conversation_id)

        if await self._after_hours_gate(ctx):
            return

        if session.state == ChatState.AWAITING_RECEIPT_UPLOAD:
            await self._receive_awaited_receipt(ctx)
            return

        if ctx.message.has_attachment and not session.in_agent_mode:
            if await self._stage_unsolicited_attachment(ctx):
                return

        if ctx.is_operator and session.admin_flow is not None and not ctx.body.startswith("*"):
            await self.flows.handle(ctx)
            self.sessions.touch(ctx.conversation_id)
            return

        if session.pending_attachment is not None and lc in ("si", "no"):
            await self._resolve_staged_attachment(ctx)
            return

        if session.state == ChatState.AWAITING_MONTHS_COUNT and lc not in EXIT_KEYWORDS:
            await self._apply_months(ctx)
            return

        if ctx.is_operator and session.admin_menu and session.menu_shown:
            await self.admin.handle_selection(ctx)
            self.sessions.touch(ctx.conversation_id)
            return

        if ctx.is_operator and ctx.body.startswith("*"):
            await self.admin.handle_command(ctx)
            self.sessions.touch(ctx.conversation_id)
            return

        if await self._universal_keyword(ctx):
            return

        if session.menu_shown:
            await self._menu_selection(ctx)
            return

        if session.in_agent_mode:
            logger.debug("Message in agent mode, menu not shown", extra={"context": {"conversation_id": ctx.conversation_id}})
            return
        if ctx.is_operator:
            return
        await self._show_welcome(ctx)

    async def _after_hours_gate(self, ctx: ConversationContext) -> bool:
        if ctx.is_operator or ctx.session.in_active_process or ctx.message.has_attachment:
            return False
        if ctx.lc in MENU_KEYWORDS or self.hours.is_open():
            return False
        now = self._clock()
        last = ctx.session.after_hours_notified_at
        if last is None or now - last > self.after_hours_throttle_seconds:
            ctx.session.after_hours_notified_at = now
            await ctx.reply(
                f"Hola. Actualmente estamos fuera del horario de atención ({self.hours.timezone}). "
                f"Nuestro horario: {self.hours.describe()}.\n\n"
                '💡 Puedes usar el menú escribiendo "menu" para acceder a opciones automáticas disponibles 24/7.'
            )
        return True

    async def _download_attachment(self, ctx: ConversationContext) -> PendingAttachment:
        media = None
        if ctx.message.attachment_ref:
            media = await self.provider.download_media(ctx.message.attachment_ref)
        if media is None:
            raise ChannelError(f"Attachment could not be downloaded for message {ctx.message.id}")
        filename = (media.filename or "").strip()
        if not filename:
            filename = f"receipt-{digits_only(ctx.conversation_id)}-{int(time.time() * 1000)}"
        return PendingAttachment(data=media.data, mime_type=media.mime_type, filename=filename, text=ctx.body)

    async def _intake(self, ctx: ConversationContext, attachment: PendingAttachment) -> None:
        """Save the receipt, ask for the months and forward the file to the operator."""
        outcome = await self.intake.intake(ctx.conversation_id, ctx.phone_norm, ctx.phone, attachment)
        receipt_id = outcome.entry["id"]
        ctx.session.await_months(MonthsContext(receipt_id=receipt_id, backend_payment_id=outcome.backend_payment_id))
        await ctx.reply(MONTHS_PROMPT)

        text = f"Nuevo comprobante de {ctx.phone} ({ctx.conversation_id}). ID interno: {receipt_id}"
        if outcome.backend_payment_id:
            text += f" | backend payment: {outcome.backend_payment_id}"
        if await self.notifier.send_text(text):
            await self.notifier.send_media(
                MediaPayload(data=attachment.data, mime_type=attachment.mime_type, filename=attachment.filename)
            )
            logger.info(
                "Receipt forwarded to operator",
                extra={"context": {"conversation_id": ctx.conversation_id, "receipt_id": receipt_id}},
            )

    async def _receive_awaited_receipt(self, ctx: ConversationContext) -> None:
        if not ctx.message.has_attachment:
            await ctx.reply(ATTACH_RECEIPT_REMINDER)
            return
        try:
            attachment = await self._download_attachment(ctx)
            await self._intake(ctx, attachment)
        except Exception as exc:
            logger.error(
                f"Error processing receipt: {exc}",
                exc_info=True,
                extra={"context": {"conversation_id": ctx.conversation_id}},
            )
            ctx.session.reset()
            await ctx.reply(RECEIPT_ERROR)
            return
        await ctx.reply(RECEIPT_RECEIVED)

    async def _stage_unsolicited_attachment(self, ctx: ConversationContext) -> bool:
        try:
            attachment = await self._download_attachment(ctx)
        except Exception as exc:
            logger.warning(
                f"Could not download attachment for confirmation: {exc}",
                extra={"context": {"conversation_id": ctx.conversation_id}},
            )
            return False
        ctx.session.stage_attachment(attachment)
        await ctx.reply(CONFIRM_ATTACHMENT)
        return True

    async def _resolve_staged_attachment(self, ctx: ConversationContext) -> None:
        attachment = ctx.session.pending_attachment
        if ctx.lc == "no":
            ctx.session.reset()
            await ctx.reply(ATTACHMENT_DISCARDED)
            return
        try:
            await self._intake(ctx, attachment)
        except Exception as exc:
            logger.error(
                f"Error processing confirmed receipt: {exc}",
                exc_info=True,
                extra={"context": {"conversation_id": ctx.conversation_id}},
            )
            ctx.session.reset()
            await ctx.reply(RECEIPT_ERROR)

    async def _apply_months(self, ctx: ConversationContext) -> None:
        months = parse_months(ctx.body)
        if months is None:
            await ctx.reply(MONTHS_INVALID)
            return
        context = ctx.session.months_context
        if context.retry_scheduled:
            await ctx.reply(MONTHS_RETRY_PENDING)
            return
        kwargs = {"phone_norm": ctx.phone_norm, "display_name": ctx.phone, "conversation_id": ctx.conversation_id}
        result = await self.applier.apply_months(context, months, **kwargs)
        if result:
            ctx.session.reset()
            await ctx.reply(months_applied_text(months))
            return
        await ctx.reply(MONTHS_FAILED)
        context.retry_scheduled = True
        self.applier.schedule_retry(context, months, **kwargs)

    async def _universal_keyword(self, ctx: ConversationContext) -> bool:
        lc = ctx.lc
        if lc == "ping":
            await ctx.reply("pong")
        elif lc in PAYMENT_STATUS_KEYWORDS:
            try:
                text = await build_payment_status(self.backend, ctx.phone_norm)
            except Exception as exc:
                logger.error(f"Payment status lookup failed: {exc}", extra={"context": {"phone": ctx.phone_norm}})
                text = PAYMENT_STATUS_ERROR
            await ctx.reply(text)
        elif lc in EXIT_KEYWORDS:
            was_agent = ctx.session.in_agent_mode
            self.sessions.clear(ctx.conversation_id)
            where = "del modo agente" if was_agent else "del menú"
            await ctx.reply(f'Has salido {where}. Si deseas volver a ver las opciones escribe "menu".')
        elif lc in MENU_KEYWORDS:
            await self._show_welcome(ctx)
        elif lc in AGENT_KEYWORDS:
            await ctx.reply(AGENT_CONNECTING if self.hours.is_open() else self._out_of_hours_handoff())
            await self._enter_agent_mode(ctx, trigger="keyword")
        else:
            return False
        return True

    def _out_of_hours_handoff(self) -> str:
        return (
            "⏰ Actualmente estamos fuera del horario de atención.\n\n"
            f"Nuestro horario: {self.hours.describe()}\n\n"
            "✅ He registrado tu solicitud y un asesor te contactará cuando inicie el horario de atención.\n\n"
            '💡 Mientras tanto, puedes usar el menú (escribe "menu") para acceder a opciones automáticas '
            "disponibles 24/7."
        )

    async def _enter_agent_mode(self, ctx: ConversationContext, *, trigger: str) -> None:
        ctx.session.enter_agent_mode(self.agent_timeout_seconds)
        self.sessions.touch(ctx.conversation_id)
        logger.info(
            "Chat moved to agent mode",
            extra={"context": {"conversation_id": ctx.conversation_id, "trigger": trigger}},
        )
        await self.notifier.notify_handoff(ctx.session, trigger=trigger, phone=ctx.phone, body=ctx.body)

    async def _show_welcome(self, ctx: ConversationContext) -> None:
        try:
            items = await self.menus.resolve()
        except Exception as exc:
            logger.error(f"Could not resolve menu: {exc}")
            items = []
        if not items:
            await ctx.reply(MENU_UNAVAILABLE)
            return
        await ctx.reply(render_welcome(items, self.company_name))
        ctx.session.show_menu(items)

    async def _menu_selection(self, ctx: ConversationContext) -> None:
        session = ctx.session
        items = session.menu_items or await self.menus.resolve()
        item = match_selection(items, ctx.body, submenu=session.submenu)
        if item is None:
            session.clear_menu()
            await ctx.reply(UNKNOWN_OPTION)
            return

        if item.submenu:
            await ctx.reply(item.reply_message)
            session.show_menu(
                [MenuItem(keyword=sub.key, reply_message=sub.text) for sub in item.submenu],
                submenu=True,
            )
            return

        choice = resolve_action(item, ctx.body)
        if choice.action == "agent_handoff":
            if choice.inferred:
                await ctx.reply(item.reply_message)
                await self._enter_agent_mode(ctx, trigger="menu_text")
            else:
                await ctx.reply(AGENT_OPTION_IN_HOURS if self.hours.is_open() else self._out_of_hours_handoff())
                await self._enter_agent_mode(ctx, trigger="menu_option")
        elif choice.action == "account_statement":
            session.clear_menu()
            await self._account_statement(ctx)
        elif choice.action == "await_receipt":
            if item.reply_message:
                await ctx.reply(item.reply_message)
            session.await_receipt(self.receipt_timeout_seconds)
            self.sessions.touch(ctx.conversation_id)
            await ctx.reply(ATTACH_RECEIPT_NOW)
        else:
            await ctx.reply(item.reply_message)
            session.clear_menu()

    async def _account_statement(self, ctx: ConversationContext) -> None:
        await ctx.reply(STATEMENT_LOOKUP)
        try:
            text = await build_account_statement(self.backend, ctx.phone)
        except Exception as exc:
            logger.error(
                f"Account statement failed: {exc}",
                exc_info=True,
                extra={"context": {"conversation_id": ctx.conversation_id}},
            )
            text = STATEMENT_ERROR
        await ctx.reply(text)
