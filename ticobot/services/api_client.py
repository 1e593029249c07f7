"""HTTP client for the billing backend API.

All calls share one base URL and bearer token. Transport problems, 5xx and
unexpected statuses surface as ``BackendTransportError``; 404 and 400/422
get their own subclasses so callers can branch on "missing" and "rejected"
without inspecting status codes.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from ticobot.logging_config import get_logger
from ticobot.services.phone import digits_only

logger = get_logger("api_client")

MAX_REMINDER_ATTEMPTS = 100
RECEIPT_ENDPOINTS = ("receipts/for-client", "receipts", "payments/receipts", "receipts/create")


class BackendError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        self.message = message
        self.status_code = status_code
        self.payload = payload
        super().__init__(message)


class BackendNotFoundError(BackendError):
    pass


class BackendValidationError(BackendError):
    pass


class BackendTransportError(BackendError):
    pass


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_list(body: Any) -> list:
    """Backend list endpoints answer either a bare list or a paginated {data: [...]}."""
    if isinstance(body, list):
        return body
    if isinstance(body, dict) and isinstance(body.get("data"), list):
        return body["data"]
    return []


class BackendClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep_func

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", "Authorization": f"Bearer {self.token}"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
    ) -> Any:
        path = path.lstrip("/")
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            async with self._client() as client:
                response = await client.request(method, path, params=params, json=json, data=data, files=files)
        except httpx.HTTPError as exc:
            raise BackendTransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            message = f"{method} {path} returned {response.status_code}"
            if response.status_code == 404:
                raise BackendNotFoundError(message, response.status_code, payload)
            if response.status_code in (400, 422):
                raise BackendValidationError(message, response.status_code, payload)
            raise BackendTransportError(message, response.status_code, payload)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # --- reminders ---

    async def fetch_pending_reminders(self, look_ahead_minutes: int, limit: int) -> list[dict]:
        body = await self.request("GET", "reminders/pending", params={"look_ahead": look_ahead_minutes, "limit": limit})
        return _as_list(body)

    async def mark_reminder_queued(self, reminder_id: int, attempts: int) -> int:
        """Claim a reminder; returns the attempt count written."""
        next_attempts = min((attempts or 0) + 1, MAX_REMINDER_ATTEMPTS)
        await self.request(
            "PATCH",
            f"reminders/{reminder_id}",
            json={"status": "queued", "attempts": next_attempts, "queued_at": _utcnow_iso()},
        )
        return next_attempts

    async def mark_reminder_pending(self, reminder_id: int, attempts: Optional[int] = None) -> None:
        payload: dict = {"status": "pending", "queued_at": None}
        if attempts is not None:
            payload["attempts"] = attempts
        await self.request("PATCH", f"reminders/{reminder_id}", json=payload)

    async def mark_reminder_sent(self, reminder_id: int, retries: int = 2) -> None:
        attempt = 0
        while True:
            try:
                await self.request(
                    "PATCH", f"reminders/{reminder_id}", json={"status": "sent", "sent_at": _utcnow_iso()}
                )
                return
            except BackendError as exc:
                attempt += 1
                logger.warning(
                    "Failed to mark reminder as sent, retrying",
                    extra={"context": {"reminder_id": reminder_id, "attempt": attempt, "error": str(exc)}},
                )
                if attempt > retries:
                    raise
                await self._sleep(float(2 ** (attempt - 1)))

    async def fetch_sent_reminders_without_payment(self, start_date: str, end_date: str) -> list[dict]:
        body = await self.request(
            "GET", "reminders/sent-without-payment", params={"start_date": start_date, "end_date": end_date}
        )
        return _as_list(body)

    # --- channel lifecycle ---

    async def report_qr(self, qr: str) -> None:
        await self.request("POST", "whatsapp/qr", json={"qr": qr})

    async def report_ready(self) -> None:
        await self.request("POST", "whatsapp/ready")

    async def report_disconnected(self, reason: Optional[str] = None) -> None:
        payload = {"reason": reason} if reason and reason.strip() else {}
        await self.request("POST", "whatsapp/disconnected", json=payload)

    async def fetch_bot_menu(self) -> Any:
        return await self.request("GET", "whatsapp/menu")

    async def get_settings(self) -> dict:
        return await self.request("GET", "settings") or {}

    # --- clients ---

    async def find_customer_by_phone(self, phone: str) -> Optional[dict]:
        """Search by last 8 digits, all digits and raw input; prefer exact, then suffix matches."""
        wanted = digits_only(phone)
        last8 = wanted[-8:]
        candidates: list[dict] = []
        seen: set = set()

        terms = []
        if len(last8) >= 4:
            terms.append(last8)
        terms.extend([wanted, phone])
        for term in terms:
            try:
                body = await self.request("GET", "clients", params={"search": term, "per_page": 50})
            except BackendError as exc:
                logger.debug(f"Client search failed for term {term}: {exc}")
                continue
            for item in _as_list(body):
                key = item.get("id") if isinstance(item, dict) else None
                if key is None:
                    key = repr(item)
                if key in seen:
                    continue
                seen.add(key)
                candidates.append(item)

        for candidate in candidates:
            if digits_only(candidate.get("phone")) == wanted:
                return candidate
        for candidate in candidates:
            if last8 and digits_only(candidate.get("phone")).endswith(last8):
                return candidate
        return candidates[0] if candidates else None

    async def upsert_customer(self, payload: dict) -> dict:
        body = dict(payload)
        if not body.get("name"):
            body["name"] = str(body.get("phone") or "")
        body.setdefault("status", "active")
        return await self.request("POST", "clients", json=body)

    async def delete_customer(self, client_id) -> Any:
        return await self.request("DELETE", f"clients/{client_id}")

    # --- subscriptions and contracts ---

    async def create_subscription(self, payload: dict) -> Any:
        return await self.request("POST", "subscriptions", json=payload)

    async def list_subscriptions(self, phone: Optional[str] = None) -> Any:
        return await self.request("GET", "subscriptions", params={"phone": phone} if phone else None)

    async def delete_subscriptions_by_phone(self, phone: str) -> Any:
        return await self.request("DELETE", "subscriptions", params={"phone": phone})

    async def list_contracts(self, params: Optional[dict] = None) -> list[dict]:
        return _as_list(await self.request("GET", "contracts", params=params or {}))

    async def get_contract(self, contract_id) -> dict:
        return await self.request("GET", f"contracts/{contract_id}")

    async def delete_contract(self, contract_id) -> Any:
        return await self.request("DELETE", f"contracts/{contract_id}")

    async def delete_contracts_by_phone(self, phone: str) -> dict:
        client = await self.find_customer_by_phone(phone)
        if not client:
            raise BackendNotFoundError("Cliente no encontrado", 404)
        contracts = await self.list_contracts({"client_id": client["id"]})
        for contract in contracts:
            await self.delete_contract(contract["id"])
        return {"deleted": len(contracts)}

    # --- payments, transactions and receipts ---

    async def fetch_upcoming_payments(self, phone: str, days: int) -> Any:
        return await self.request("GET", "payments/upcoming", params={"phone": phone, "days": days})

    async def list_transactions(self, phone: Optional[str] = None, limit: int = 20) -> list:
        return _as_list(await self.request("GET", "transactions", params={"phone": phone, "limit": limit}))

    async def delete_transaction(self, transaction_id) -> Any:
        return await self.request("DELETE", f"transactions/{transaction_id}")

    async def create_payment(self, payload: dict) -> dict:
        return await self.request("POST", "payments", json=payload)

    async def update_payment(self, payment_id, payload: dict) -> dict:
        return await self.request("PATCH", f"payments/{payment_id}", json=payload)

    async def get_payment(self, payment_id) -> dict:
        return await self.request("GET", f"payments/{payment_id}")

    async def list_payments(self, params: Optional[dict] = None) -> list[dict]:
        return _as_list(await self.request("GET", "payments", params=params or {}))

    async def store_receipt_from_bot(self, payload: dict) -> Any:
        return await self.request("POST", "payments/receipts/bot", json=payload)

    async def attach_payment_receipt(
        self, payment_id, content: bytes, filename: str, mime_type: str = "application/pdf"
    ) -> Any:
        return await self.request(
            "POST",
            f"payments/{payment_id}/receipts",
            data={"received_at": _utcnow_iso(), "metadata": "[]"},
            files={"file": (filename, content, mime_type)},
        )

    async def list_receipts_by_date(self, date: str) -> list:
        return _as_list(await self.request("GET", "receipts", params={"date": date}))

    async def create_receipt_for_client(self, payload: dict) -> Any:
        """Try the known receipt endpoints in order, moving on only when one is missing."""
        last_error: Optional[BackendNotFoundError] = None
        for index, endpoint in enumerate(RECEIPT_ENDPOINTS):
            try:
                result = await self.request("POST", endpoint, json=payload)
            except BackendNotFoundError as exc:
                logger.debug(f"Receipt endpoint {endpoint} not available, trying next")
                last_error = exc
                continue
            if index:
                logger.info("Receipt created through fallback endpoint", extra={"context": {"endpoint": endpoint}})
            return result
        logger.warning("No receipt endpoint available", extra={"context": {"payload": payload}})
        raise BackendNotFoundError(
            "createReceiptForClient failed: no endpoint available",
            404,
            last_error.payload if last_error else None,
        )

    async def send_receipt(self, receipt_id) -> Any:
        return await self.request("POST", f"receipts/{receipt_id}/send")

    async def create_conciliation(self, payload: dict) -> Any:
        return await self.request("POST", "conciliations", json=payload)

    async def get_payment_status(self, phone: str) -> dict:
        return await self.request("GET", f"payment-status/{digits_only(phone)}")

    # --- paused contacts ---

    async def check_paused_contact(self, phone: str) -> bool:
        try:
            body = await self.request("GET", f"paused-contacts/check/{digits_only(phone)}")
        except BackendError as exc:
            logger.debug(f"Paused contact check failed: {exc}")
            return False
        return isinstance(body, dict) and body.get("is_paused") is True

    async def pause_contact(self, payload: dict) -> Any:
        return await self.request("POST", "paused-contacts", json=payload)

    async def resume_contact(self, client_id, phone: str) -> Any:
        return await self.request("DELETE", f"paused-contacts/{client_id}/{digits_only(phone)}")

    async def resume_contact_by_number(self, phone: str) -> Any:
        return await self.request("DELETE", f"paused-contacts/by-number/{digits_only(phone)}")

    async def list_paused_contacts(self) -> Any:
        return await self.request("GET", "paused-contacts")
