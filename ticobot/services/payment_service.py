"""Months application for an intaken receipt, with one deferred retry on failure."""

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.services import background
from ticobot.services.api_client import BackendClient
from ticobot.services.notifier import OperatorNotifier
from ticobot.services.receipt_service import ReceiptStore, find_or_create_client, payment_id_of
from ticobot.services.result import Result
from ticobot.services.session_state import MonthsContext

logger = get_logger("payment_service")

MONTHS_PROMPT = "Gracias. ¿Cuántos meses estás pagando con este comprobante? Responde con un número, por ejemplo: 1"
MONTHS_INVALID = 'Por favor responde con un número entero de meses (ej: 1). Escribe "salir" para cancelar.'
MONTHS_FAILED = (
    "❌ No pude registrar el número de meses en este momento. Intentaré de nuevo automáticamente en unos "
    'minutos y, si sigue fallando, un asesor te ayudará. Mientras tanto puedes escribir "salir" para cancelar.'
)
MONTHS_RETRY_PENDING = '⏳ Ya hay un reintento en curso para registrar tus meses. Escribe "salir" para cancelar.'


def parse_months(body: str) -> Optional[int]:
    digits = re.sub(r"\D", "", body or "")
    months = int(digits) if digits else 0
    return months if months > 0 else None


def months_applied_text(months: int) -> str:
    return f"✅ Gracias. He registrado que pagas {months} mes(es). Un asesor validará y conciliará el pago."


class PaymentApplier:
    def __init__(
        self,
        backend: BackendClient,
        store: ReceiptStore,
        notifier: OperatorNotifier,
        *,
        retry_delay_seconds: float = 60.0,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.backend = backend
        self.store = store
        self.notifier = notifier
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep_func

    async def monthly_amount(self, phone_norm: str, display_name: str) -> Optional[float]:
        """Amount of the client's first contract, None when it cannot be determined."""
        try:
            client = await find_or_create_client(self.backend, phone_norm, display_name)
            if not client or not client.get("id"):
                return None
            contracts = await self.backend.list_contracts({"client_id": client["id"]})
        except Exception as exc:
            logger.debug(f"Could not load contract for monthly amount: {exc}")
            return None
        if not contracts:
            return None
        raw = contracts[0].get("amount") or contracts[0].get("monto")
        try:
            return float(raw) or None
        except (TypeError, ValueError):
            return None

    async def apply_months(
        self,
        context: MonthsContext,
        months: int,
        *,
        phone_norm: str,
        display_name: str,
        conversation_id: str,
    ) -> Result:
        log_context = {"conversation_id": conversation_id, "receipt_id": context.receipt_id, "months": months}
        monthly = await self.monthly_amount(phone_norm, display_name)
        total = monthly * months if monthly else 0
        metadata = {
            "months": months,
            "backend_receipt_id": context.backend_payment_id,
            "local_receipt_id": context.receipt_id,
        }
        try:
            if context.backend_payment_id:
                response = await self.backend.update_payment(
                    context.backend_payment_id, {"amount": total, "currency": "CRC", "metadata": metadata}
                )
                payment_id = payment_id_of(response) or context.backend_payment_id
            else:
                client = await find_or_create_client(self.backend, phone_norm, display_name)
                response = await self.backend.create_payment(
                    self._payment_payload(client, total, context, metadata)
                )
                payment_id = payment_id_of(response)
        except Exception as exc:
            logger.warning(f"Could not apply months to payment: {exc}", extra={"context": log_context})
            self.store.update(context.receipt_id, status="apply_failed", apply_error=str(exc), attempted_months=months)
            return Result.from_exception(exc, code="apply_failed")

        self.store.update(
            context.receipt_id,
            months=months,
            status="applied",
            backend_payment_id=payment_id,
            monthly_amount=monthly,
            total_amount=total,
        )
        logger.info("Months applied to receipt", extra={"context": {**log_context, "total": total}})
        await self.notifier.send_text(
            f"El cliente {display_name} ({conversation_id}) indicó que paga {months} mes(es) "
            f"para el comprobante {context.receipt_id}"
        )
        return Result.success(payment_id, total_amount=total, monthly_amount=monthly)

    @staticmethod
    def _payment_payload(client: Optional[dict], total: float, context: MonthsContext, metadata: dict) -> dict:
        return {
            "client_id": client.get("id") if client else None,
            "amount": total,
            "currency": "CRC",
            "channel": "whatsapp",
            "status": "unverified",
            "reference": f"bot:{context.receipt_id}",
            "metadata": metadata,
        }

    def schedule_retry(
        self,
        context: MonthsContext,
        months: int,
        *,
        phone_norm: str,
        display_name: str,
        conversation_id: str,
    ) -> asyncio.Task:
        """One detached retry after the configured delay; never awaited by the handler."""
        return background.spawn_deferred(
            self.retry_delay_seconds,
            lambda: self._retry(
                context, months, phone_norm=phone_norm, display_name=display_name, conversation_id=conversation_id
            ),
            name=f"months-retry-{context.receipt_id}",
            sleep_func=self._sleep,
        )

    async def _retry(
        self,
        context: MonthsContext,
        months: int,
        *,
        phone_norm: str,
        display_name: str,
        conversation_id: str,
    ) -> Optional[Any]:
        log_context = {"conversation_id": conversation_id, "receipt_id": context.receipt_id, "months": months}
        try:
            monthly = await self.monthly_amount(phone_norm, display_name)
            total = monthly * months if monthly else 0
            client = await find_or_create_client(self.backend, phone_norm, display_name)
            metadata = {"months": months, "local_receipt_id": context.receipt_id}
            response = await self.backend.create_payment(self._payment_payload(client, total, context, metadata))
        except Exception as exc:
            logger.warning(f"Months retry failed: {exc}", extra={"context": log_context})
            self.store.update(context.receipt_id, status="apply_failed", apply_error_retry=str(exc))
            return None

        payment_id = payment_id_of(response)
        self.store.update(
            context.receipt_id,
            months=months,
            status="applied",
            backend_payment_id=payment_id,
            monthly_amount=monthly,
            total_amount=total,
        )
        logger.info("Months retry succeeded", extra={"context": log_context})
        await self.notifier.send_text(
            f"Reintento exitoso: aplicados {months} mes(es) para el comprobante {context.receipt_id} "
            f"del cliente {display_name} ({conversation_id})."
        )
        return payment_id
