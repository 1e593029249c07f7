"""Read-only account texts: statements, payment status, client details and listings."""

from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from ticobot.logging_config import get_logger
from ticobot.services.api_client import BackendClient
from ticobot.services.reminder_service import format_colones, parse_amount

logger = get_logger("statement_service")

BACK_TO_ADMIN = "Escribe *adminmenu* para volver"
BACK_TO_ADMIN_MENU = "Escribe *adminmenu* para volver al menú admin"

CONTRACT_STATUS = {
    "active": "✅ Activo",
    "paused": "⏸️ Pausado",
    "cancelled": "❌ Cancelado",
}


def format_amount(value, decimals: Optional[int] = None) -> str:
    """es-CR amount text; ``decimals`` forces a fixed number of fraction digits."""
    amount = parse_amount(value)
    if decimals is None:
        return format_colones(amount)
    whole = format_colones(float(int(amount)))
    cents = f"{abs(amount) % 1:.{decimals}f}"[2:]
    return f"{whole},{cents}" if decimals else whole


def _parse_date(value) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            return None


def due_band(next_due_date, today: date) -> Optional[str]:
    due = _parse_date(next_due_date)
    if due is None:
        return None
    diff = (due - today).days
    if diff < 0:
        return f"⚠️ Próximo pago: VENCIDO ({abs(diff)} días de retraso)"
    if diff == 0:
        return "⚠️ Próximo pago: HOY"
    if diff <= 7:
        return f"⏰ Próximo pago: En {diff} día{'s' if diff != 1 else ''}"
    return f"📅 Próximo pago: {due.day}/{due.month}/{due.year}"


def render_account_statement(client: dict, contracts: list[dict], phone: str, today: date) -> str:
    lines = [
        "📊 *ESTADO DE CUENTA*",
        "",
        f"👤 Cliente: {client.get('name') or 'N/A'}",
        f"📱 Teléfono: {client.get('phone') or phone}",
        "",
        "📋 *Tus Contratos:*",
        "",
    ]
    for contract in contracts:
        status = contract.get("status")
        status_text = CONTRACT_STATUS.get(status) or f"⚪ {status or 'Desconocido'}"
        contract_type = contract.get("contract_type") or {}
        service = contract.get("service_description") or contract_type.get("name") or "N/A"
        lines.append(f"🔹 *Contrato #{contract.get('id')}*")
        lines.append(f"   Servicio: {service}")
        lines.append(f"   Estado: {status_text}")
        lines.append(f"   Monto: {contract.get('currency') or 'CRC'} {format_amount(contract.get('amount') or 0, 2)}")
        band = due_band(contract.get("next_due_date"), today)
        if band:
            lines.append(f"   {band}")
        notes = (contract.get("notes") or "").strip()
        if notes:
            suffix = "..." if len(contract["notes"]) > 100 else ""
            lines.append(f"   📝 Nota: {contract['notes'][:100]}{suffix}")
        lines.append("")
    lines += [
        "━" * 17,
        "",
        "💡 *Opciones:*",
        "• Escribe *6* para enviar comprobante de pago",
        "• Escribe *menu* para volver al menú principal",
        "• Escribe *agente* para hablar con un asesor",
    ]
    return "\n".join(lines)


async def build_account_statement(backend: BackendClient, phone: str, today: Optional[date] = None) -> str:
    client = await backend.find_customer_by_phone(phone)
    if not client or not client.get("id"):
        return '❌ No encontramos tu información en nuestro sistema. Por favor contacta con un asesor escribiendo "agente".'
    contracts = await backend.list_contracts({"client_id": client["id"]})
    if not contracts:
        return (
            "ℹ️ No tienes contratos activos en este momento.\n\n"
            'Para más información, escribe "agente" para hablar con un asesor.'
        )
    logger.info(
        "Account statement built",
        extra={"context": {"client_id": client["id"], "contracts": len(contracts)}},
    )
    return render_account_statement(client, contracts, phone, today or date.today())


PAYMENT_ICONS = {"completed": "✅", "pending": "⏳"}


def render_payment_status(status: dict) -> str:
    client = status.get("client") or {}
    summary = status.get("summary") or {}
    payments = status.get("payments") or []
    lines = [
        "📊 *Estado de Pagos*",
        f"👤 {client.get('name')}",
        f"📱 {client.get('phone')}",
        "",
        "📈 *Resumen:*",
        f"  • Total de pagos: {summary.get('total_payments', 0)}",
        f"  • Completados: {summary.get('completed', 0)}",
        f"  • Pendientes: {summary.get('pending', 0)}",
    ]
    if payments:
        lines += ["", "📋 *Últimos pagos:*"]
        for index, payment in enumerate(payments[:5], start=1):
            paid_at = payment.get("paid_at")
            when = str(paid_at).split("T")[0] if paid_at else "❓ Sin fecha"
            icon = PAYMENT_ICONS.get(payment.get("status"), "❌")
            lines.append(
                f"{index}. {icon} ₡{format_amount(payment.get('amount'))} {payment.get('currency') or ''} ({when})"
            )
        if len(payments) > 5:
            lines.append(f"...y {len(payments) - 5} pagos más")
    lines += ["", 'Para más información contáctanos o escribe "menu" para volver al menú principal.']
    return "\n".join(lines)


async def build_payment_status(backend: BackendClient, phone: str) -> str:
    status = await backend.get_payment_status(phone)
    if not isinstance(status, dict) or not status.get("success"):
        return "❌ No encontramos información sobre tu cuenta. Por favor contáctanos directamente."
    return render_payment_status(status)


def render_client_details(
    client: dict,
    contracts: list[dict],
    *,
    phone: str,
    title: Optional[str] = None,
    limit: int = 5,
    show_cycle: bool = True,
    footer: Optional[str] = BACK_TO_ADMIN_MENU,
) -> str:
    lines = [title or f"📇 *Detalles de {client.get('name') or phone}*"]
    if title:
        lines.append(f"👤 {client.get('name') or phone}")
    lines += [f"📱 {client.get('phone')}", ""]
    if contracts:
        lines.append(f"💼 *Contratos*: {len(contracts)}")
        for contract in contracts[:limit]:
            lines.append(f"  • {contract.get('name') or 'Sin nombre'}")
            lines.append(f"    ₡{format_amount(contract.get('amount') or 0)} {contract.get('currency') or 'CRC'}")
            if show_cycle:
                lines.append(f"    Ciclo: {contract.get('billing_cycle') or 'N/A'}")
            if contract.get("next_due_date"):
                lines.append(f"    Próximo: {str(contract['next_due_date']).split('T')[0]}")
        if len(contracts) > limit:
            lines.append(f"  ...y {len(contracts) - limit} más")
    else:
        lines.append("💼 Sin contratos activos")
    if footer:
        lines += ["", footer]
    return "\n".join(lines)


def render_transactions(transactions: list[dict], filter_phone: Optional[str], footer: Optional[str] = None) -> str:
    if filter_phone:
        header = f"💰 *Transacciones de {filter_phone}* ({len(transactions)})"
    else:
        header = f"💰 *Últimas transacciones* ({len(transactions)})"
    lines = [header, ""]
    for index, txn in enumerate(transactions, start=1):
        lines.append(f"*{index}.* ID: {txn.get('id')}")
        lines.append(f"   📅 {txn.get('created_at') or txn.get('txn_date')}")
        lines.append(f"   💵 ₡{format_amount(txn.get('amount') or 0)}")
        lines.append(f"   📱 {txn.get('phone') or 'N/A'}")
        lines.append(f"   👤 {txn.get('client_name') or '❓ Sin match'}")
        if txn.get("motivo"):
            lines.append(f"   📝 {txn['motivo']}")
        if txn.get("ref"):
            lines.append(f"   🔖 Ref: {str(txn['ref'])[:15]}...")
        lines.append("")
    if footer:
        lines.append(footer)
    return "\n".join(lines)


def no_transactions_text(filter_phone: Optional[str]) -> str:
    return f"📭 No hay transacciones para {filter_phone}" if filter_phone else "📭 No hay transacciones registradas"


def render_pending_payments(payments: list[dict]) -> str:
    lines = [f"💰 *Pagos Pendientes* ({len(payments)})", ""]
    for index, payment in enumerate(payments, start=1):
        client = payment.get("client") or {}
        lines.append(f"*{index}.* ID: {payment.get('id')}")
        lines.append(f"   💵 ₡{format_amount(payment.get('amount') or 0)} {payment.get('currency') or 'CRC'}")
        lines.append(f"   👤 {client.get('name') or payment.get('client_id') or 'Sin cliente'}")
        lines.append(f"   📋 Estado: {payment.get('status')}")
        if payment.get("reference"):
            lines.append(f"   🔖 Ref: {payment['reference']}")
        lines.append("")
    lines.append(BACK_TO_ADMIN)
    return "\n".join(lines)


def _local_time(value, tz: ZoneInfo) -> str:
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return "--:--"
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz)
    return parsed.strftime("%H:%M")


def render_receipts_today(receipts: list[dict], tz: ZoneInfo, *, from_command: bool = False) -> str:
    if from_command:
        lines = [f"📄 *Comprobantes de hoy ({len(receipts)})*", ""]
    else:
        lines = [f"📄 *Comprobantes de hoy* ({len(receipts)})", ""]
    for index, receipt in enumerate(receipts, start=1):
        status = "✅ Enviado" if receipt.get("sent_at") else "📤 Pendiente"
        lines.append(f"*{index}.* ID: {receipt.get('id')} | {status}")
        lines.append(f"   Cliente: {receipt.get('customer_name') or receipt.get('customer_phone')}")
        lines.append(f"   Hora: {_local_time(receipt.get('created_at'), tz)}")
        if from_command:
            lines.append(f"   Para enviar: *enviar {receipt.get('id')}*")
        lines.append("")
    if not from_command:
        lines.append(BACK_TO_ADMIN_MENU)
    return "\n".join(lines)
