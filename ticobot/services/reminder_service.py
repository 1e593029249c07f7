"""Reminder delivery: claim, format, send with retry, reconcile with the backend."""

import asyncio
import re
from datetime import date, datetime, time as dtime
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

from ticobot.logging_config import get_logger
from ticobot.schemas.reminder import Reminder, ReminderContract, ReminderResult, RunSummary
from ticobot.services.api_client import BackendClient
from ticobot.services.business_hours import BusinessHours
from ticobot.services.channel_provider import ChannelProvider
from ticobot.services.phone import InvalidPhoneError, to_chat_id
from ticobot.services.settings_sync import BillingProfile

logger = get_logger("reminder_service")

MONTHS_ES = [
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
]

RESEND_PREFIX = (
    "⚠️ RECORDATORIO ADICIONAL ⚠️\n\nNo hemos recibido su comprobante de pago del día de hoy.\n\n"
)


class MissingRecipientError(Exception):
    """The reminder has no usable phone; retrying cannot help."""


def parse_amount(value) -> float:
    cleaned = re.sub(r"[^0-9.\-]", "", str(value if value is not None else ""))
    try:
        return float(cleaned) if cleaned else 0.0
    except ValueError:
        return 0.0


def format_colones(amount: float) -> str:
    """es-CR style: digit groups only from five digits up, comma decimals."""
    if not amount:
        return "0"
    whole = int(abs(amount))
    cents = round(abs(amount) - whole, 2)
    digits = str(whole)
    if len(digits) >= 5:
        groups = []
        while digits:
            groups.insert(0, digits[-3:])
            digits = digits[:-3]
        digits = " ".join(groups)
    text = ("-" if amount < 0 else "") + digits
    if cents:
        text += "," + f"{cents:.2f}"[2:].rstrip("0")
    return text


def format_due_date(value: str) -> str:
    """Long Spanish date ('05 de marzo de 2026') for an ISO date or datetime string."""
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return str(value)
    return f"{parsed.day:02d} de {MONTHS_ES[parsed.month - 1]} de {parsed.year}"


def render_template(template: str, reminder: Reminder) -> str:
    payload = reminder.payload
    return (
        str(template)
        .replace("{client_name}", (reminder.client.name if reminder.client else None) or "")
        .replace("{amount}", "" if payload.amount is None else str(payload.amount))
        .replace("{due_date}", payload.due_date or "")
    )


def build_reminder_message(reminder: Reminder, profile: BillingProfile) -> str:
    payload = reminder.payload
    service_name = payload.service_name or profile.display_service_name

    due_date = payload.due_date or ""
    if not due_date and reminder.contract and reminder.contract.next_due_date:
        due_date = format_due_date(reminder.contract.next_due_date)

    raw_amount = None
    if reminder.contract and reminder.contract.amount is not None:
        raw_amount = reminder.contract.amount
    elif payload.amount is not None:
        raw_amount = payload.amount
    amount = format_colones(parse_amount(raw_amount))

    lines = [f"{service_name}, le informa que su Suscripción de Servicios de Entretenimiento:\n"]
    if due_date:
        lines.append(f"Ha Vencido {due_date}")
    lines.append(f"Total: ₡{amount}")
    lines += [
        "",
        "En caso de no recibir respuesta, nos vemos en la necesidad de Liberar el Perfil de su Suscripción.",
        "",
        "Si desea volver a disfrutar de nuestros servicios, puede realizar el pago correspondiente "
        "y con gusto le proporcionaremos una Cuenta Nueva.",
        "",
        "Renovarla es fácil!, solo realice el pago y envíenos el comprobante.",
        "",
    ]
    if profile.payment_contact and profile.payment_contact.strip():
        lines.append(f"Sinpemóvil: {profile.payment_contact.strip()}")
    lines += ["", "Para depósitos:", ""]
    lines.extend(profile.bank_accounts)
    lines.append("")
    if profile.beneficiary_name and profile.beneficiary_name.strip():
        lines.append(f"Todas a nombre de {profile.beneficiary_name.strip()}")
    lines += ["", "Si ya canceló, omita el mensaje"]

    if payload.message:
        lines += ["", render_template(payload.message, reminder)]
    if payload.options:
        lines.append("Responda con una de las siguientes opciones:")
        lines.extend(f"{option.key}. {option.label}" for option in payload.options)
    return "\n".join(lines)


class ReminderScheduler:
    def __init__(
        self,
        backend: BackendClient,
        provider: ChannelProvider,
        profile: BillingProfile,
        hours: BusinessHours,
        *,
        look_ahead_minutes: int = 30,
        max_batch: int = 20,
        country_code: str = "506",
        retries: int = 3,
        backoff_factor: float = 2.0,
        min_backoff_seconds: float = 1.0,
        resend_hour: int = 17,
        resend_spacing_seconds: float = 2.0,
        is_ready: Callable[[], bool] = lambda: True,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now_func: Optional[Callable[[], datetime]] = None,
    ):
        self.backend = backend
        self.provider = provider
        self.profile = profile
        self.hours = hours
        self.look_ahead_minutes = look_ahead_minutes
        self.max_batch = max_batch
        self.country_code = country_code
        self.retries = retries
        self.backoff_factor = backoff_factor
        self.min_backoff_seconds = min_backoff_seconds
        self.resend_hour = resend_hour
        self.resend_spacing_seconds = resend_spacing_seconds
        self.is_ready = is_ready
        self._sleep = sleep_func
        self._now = now_func or (lambda: self.hours.local_now())
        self._run_lock = asyncio.Lock()
        self.last_summary: Optional[RunSummary] = None
        self.last_resend_check: Optional[date] = None

    async def run_batch(self) -> RunSummary:
        """One scheduler cycle. Overlapping cycles are skipped, not queued."""
        if self._run_lock.locked():
            logger.info("Reminder cycle already running, skipping")
            return RunSummary(skipped=True)
        async with self._run_lock:
            summary = await self._run_batch()
            self.last_summary = summary
            return summary

    async def _run_batch(self) -> RunSummary:
        summary = RunSummary()
        if not self.is_ready():
            logger.info("Channel not ready, reminder cycle skipped")
            summary.skipped = True
            return summary

        try:
            rows = await self.backend.fetch_pending_reminders(self.look_ahead_minutes, self.max_batch)
        except Exception as exc:
            logger.error(f"Could not fetch pending reminders: {exc}")
            return summary

        if not rows:
            logger.debug("No pending reminders to send")
        for row in rows:
            try:
                reminder = Reminder.model_validate(row)
            except ValidationError as exc:
                logger.warning(f"Skipping malformed reminder: {exc}", extra={"context": {"row_id": row.get("id")}})
                continue
            result = await self.process_reminder(reminder)
            summary.total += 1
            summary.details.append(result)
            if result.status == "sent":
                summary.sent += 1
            else:
                summary.failed += 1

        if summary.total:
            logger.info(
                f"Reminder cycle done: {summary.sent} sent, {summary.failed} failed",
                extra={"context": {"total": summary.total}},
            )
        await self.check_and_resend_unpaid()
        return summary

    async def process_reminder(self, reminder: Reminder) -> ReminderResult:
        context = {"reminder_id": reminder.id}
        try:
            claimed_attempts = await self.backend.mark_reminder_queued(reminder.id, reminder.attempts)
        except Exception as exc:
            logger.error(f"Could not claim reminder: {exc}", extra={"context": context})
            return ReminderResult(reminder_id=reminder.id, status="failed", error=str(exc))

        try:
            sends = await self._send_with_retry(reminder)
            await self.backend.mark_reminder_sent(reminder.id)
            logger.info("Reminder sent", extra={"context": {**context, "send_attempts": sends}})
            return ReminderResult(reminder_id=reminder.id, status="sent", attempts=sends)
        except Exception as exc:
            if isinstance(exc, MissingRecipientError):
                logger.error(f"Reminder has no recipient: {exc}", extra={"context": context})
            else:
                logger.error(f"Could not send reminder: {exc}", extra={"context": context})
            try:
                await self.backend.mark_reminder_pending(reminder.id, claimed_attempts)
                logger.info("Reminder reverted to pending for a later retry", extra={"context": context})
            except Exception as revert_exc:
                logger.error(f"Could not revert reminder to pending: {revert_exc}", extra={"context": context})
            return ReminderResult(reminder_id=reminder.id, status="failed", error=str(exc))

    async def _send_with_retry(self, reminder: Reminder) -> int:
        """Returns the number of send attempts made; re-raises after the last retry."""
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.send_reminder(reminder)
                return attempt
            except MissingRecipientError:
                raise
            except Exception as exc:
                retries_left = self.retries - (attempt - 1)
                logger.warning(
                    "Reminder send failed, retrying" if retries_left else "Reminder send failed, no retries left",
                    extra={
                        "context": {
                            "reminder_id": reminder.id,
                            "attempt": attempt,
                            "retries_left": retries_left,
                            "error": str(exc),
                        }
                    },
                )
                if not retries_left:
                    raise
                await self._sleep(self.min_backoff_seconds * self.backoff_factor ** (attempt - 1))

    async def _ensure_contract(self, reminder: Reminder) -> None:
        if reminder.contract is not None or not reminder.contract_id:
            return
        try:
            contract = await self.backend.get_contract(reminder.contract_id)
        except Exception as exc:
            logger.warning(
                f"Could not load contract for reminder: {exc}",
                extra={"context": {"reminder_id": reminder.id, "contract_id": reminder.contract_id}},
            )
            return
        if isinstance(contract, dict):
            reminder.contract = ReminderContract.model_validate(contract.get("data", contract))

    async def send_reminder(self, reminder: Reminder, text: Optional[str] = None) -> None:
        phone = reminder.client.phone if reminder.client else None
        if not phone:
            name = (reminder.client.name if reminder.client else None) or reminder.client_id
            raise MissingRecipientError(f"El cliente {name} no tiene teléfono configurado.")
        try:
            chat_id = to_chat_id(phone, self.country_code)
        except InvalidPhoneError as exc:
            raise MissingRecipientError(str(exc)) from exc
        if text is None:
            await self._ensure_contract(reminder)
            text = build_reminder_message(reminder, self.profile)
        await self.provider.send_text(chat_id, text)

    async def check_and_resend_unpaid(self, now: Optional[datetime] = None) -> int:
        """Once per day after the resend hour, re-send today's reminders still unpaid."""
        now = now or self._now()
        if now.hour < self.resend_hour:
            return 0
        if self.last_resend_check == now.date():
            return 0

        start = datetime.combine(now.date(), dtime(0, 0, 0), tzinfo=now.tzinfo)
        end = datetime.combine(now.date(), dtime(23, 59, 59), tzinfo=now.tzinfo)
        try:
            rows = await self.backend.fetch_sent_reminders_without_payment(start.isoformat(), end.isoformat())
        except Exception as exc:
            logger.error(f"Could not check unpaid reminders: {exc}")
            return 0

        resent = 0
        if rows:
            logger.info(f"Re-sending {len(rows)} unpaid reminders from today")
        for row in rows:
            try:
                reminder = Reminder.model_validate(row)
                reminder.payload.message = RESEND_PREFIX + (reminder.payload.message or "")
                await self._ensure_contract(reminder)
                await self.send_reminder(reminder, build_reminder_message(reminder, self.profile))
                resent += 1
                logger.info("Reminder re-sent", extra={"context": {"reminder_id": reminder.id}})
                await self._sleep(self.resend_spacing_seconds)
            except Exception as exc:
                logger.error(f"Error re-sending reminder: {exc}", extra={"context": {"row_id": row.get("id")}})
        self.last_resend_check = now.date()
        return resent
