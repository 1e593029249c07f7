"""Receipt intake: local storage and index, backend placeholder payment, PDF attachment.

Every step after the local save is best-effort: a failing backend call is
logged and the client still gets the months question.
"""

import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Optional

from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ticobot.logging_config import get_logger
from ticobot.services.api_client import BackendClient
from ticobot.services.phone import digits_only
from ticobot.services.result import Result
from ticobot.services.session_state import PendingAttachment

logger = get_logger("receipt_service")

PDF_MIME = "application/pdf"


class ReceiptStore:
    """Binary files under ``<data_dir>/receipts`` plus a JSON index of entries."""

    def __init__(self, data_dir: str = "data", clock: Callable[[], float] = time.time):
        self.directory = Path(data_dir) / "receipts"
        self.index_path = self.directory / "index.json"
        self._clock = clock

    def _ensure(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            self.index_path.write_text("[]", encoding="utf-8")

    def load(self) -> list[dict]:
        self._ensure()
        try:
            entries = json.loads(self.index_path.read_text(encoding="utf-8") or "[]")
        except ValueError as exc:
            logger.warning(f"Receipt index unreadable, starting empty: {exc}")
            return []
        return entries if isinstance(entries, list) else []

    def _write(self, entries: list[dict]) -> None:
        self.index_path.write_text(json.dumps(entries, indent=2, ensure_ascii=False, default=str), encoding="utf-8")

    def save(self, chat_id: str, filename: str, content: bytes, mime_type: str, text: str = "") -> dict:
        self._ensure()
        now_ms = int(self._clock() * 1000)
        receipt_id = f"{digits_only(chat_id)}-{now_ms}"
        filepath = self.directory / Path(filename).name
        filepath.write_bytes(content)
        entry = {
            "id": receipt_id,
            "chat_id": chat_id,
            "filename": filepath.name,
            "filepath": str(filepath),
            "mime": mime_type,
            "text": text or "",
            "ts": now_ms,
            "status": "pending",
        }
        entries = self.load()
        entries.append(entry)
        self._write(entries)
        return entry

    def update(self, receipt_id: str, **patch) -> bool:
        try:
            entries = self.load()
            for entry in entries:
                if entry.get("id") == receipt_id:
                    entry.update(patch)
                    self._write(entries)
                    return True
        except OSError as exc:
            logger.warning(f"Could not update receipt index: {exc}", extra={"context": {"receipt_id": receipt_id}})
        return False

    def get(self, receipt_id: str) -> Optional[dict]:
        return next((e for e in self.load() if e.get("id") == receipt_id), None)

    def find(self, local_id: Optional[str] = None, backend_id: Any = None) -> Optional[dict]:
        """Match on the local id, or on the backend id the entry was linked to."""
        for entry in self.load():
            if local_id and entry.get("id") == local_id:
                return entry
            if backend_id is not None and str(backend_id) in (
                str(entry.get("backend_id")),
                str(entry.get("backend_payment_id")),
            ):
                return entry
        return None


def image_to_pdf(image_bytes: bytes) -> bytes:
    """Single-page PDF sized to the image."""
    image = ImageReader(BytesIO(image_bytes))
    width, height = image.getSize()
    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(width, height))
    pdf.drawImage(image, 0, 0, width=width, height=height)
    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def payment_id_of(response: Any) -> Optional[Any]:
    if not isinstance(response, dict):
        return None
    data = response.get("data") if isinstance(response.get("data"), dict) else response
    return data.get("id") or data.get("payment_id")


async def find_or_create_client(backend: BackendClient, phone_norm: str, display_name: str) -> Optional[dict]:
    try:
        client = await backend.find_customer_by_phone(phone_norm)
    except Exception as exc:
        logger.debug(f"Client lookup failed: {exc}")
        client = None
    if client:
        return client
    try:
        created = await backend.upsert_customer({"phone": phone_norm, "name": display_name})
    except Exception as exc:
        logger.warning(f"Could not upsert client, continuing without one: {exc}")
        return None
    if isinstance(created, dict) and isinstance(created.get("data"), dict):
        return created["data"]
    return created if isinstance(created, dict) else None


@dataclass
class IntakeOutcome:
    entry: dict
    backend_payment_id: Optional[Any] = None


class ReceiptIntake:
    def __init__(self, backend: BackendClient, store: ReceiptStore):
        self.backend = backend
        self.store = store

    async def intake(
        self, conversation_id: str, phone_norm: str, display_name: str, attachment: PendingAttachment
    ) -> IntakeOutcome:
        entry = self.store.save(
            conversation_id, attachment.filename, attachment.data, attachment.mime_type, attachment.text
        )
        context = {"receipt_id": entry["id"], "conversation_id": conversation_id}
        logger.info("Receipt saved locally", extra={"context": context})

        await self._store_in_backend(entry, phone_norm)

        placeholder = await self._create_placeholder(entry, phone_norm, display_name)
        backend_payment_id = placeholder.unwrap_or(None)
        if placeholder:
            self.store.update(
                entry["id"],
                status="created",
                **({"backend_payment_id": backend_payment_id} if backend_payment_id else {}),
            )
        else:
            logger.warning(f"Could not create placeholder payment: {placeholder.error}", extra={"context": context})

        if backend_payment_id:
            attached = await self._attach(backend_payment_id, attachment)
            if not attached:
                logger.debug(f"Receipt not attached to payment: {attached.error}", extra={"context": context})
        return IntakeOutcome(entry=self.store.get(entry["id"]) or entry, backend_payment_id=backend_payment_id)

    async def _store_in_backend(self, entry: dict, phone_norm: str) -> None:
        try:
            await self.backend.store_receipt_from_bot(
                {
                    "client_phone": phone_norm,
                    "file_path": entry["filepath"],
                    "file_name": entry["filename"],
                    "mime_type": entry["mime"],
                    "received_at": datetime.fromtimestamp(entry["ts"] / 1000, tz=timezone.utc).isoformat(),
                    "metadata": {
                        "bot_receipt_id": entry["id"],
                        "chat_id": entry["chat_id"],
                        "status": "pending",
                        "text": entry["text"],
                        "saved_from_bot": True,
                    },
                }
            )
            logger.info("Receipt stored in backend", extra={"context": {"receipt_id": entry["id"]}})
        except Exception as exc:
            logger.warning(
                f"Could not store receipt in backend, kept locally only: {exc}",
                extra={"context": {"receipt_id": entry["id"]}},
            )

    async def _create_placeholder(self, entry: dict, phone_norm: str, display_name: str) -> Result:
        client = await find_or_create_client(self.backend, phone_norm, display_name)
        try:
            response = await self.backend.create_payment(
                {
                    "client_id": client.get("id") if client else None,
                    "amount": 0,
                    "currency": "CRC",
                    "channel": "whatsapp",
                    "status": "unverified",
                    "reference": f"bot:{entry['id']}",
                    "metadata": {"local_receipt_id": entry["id"]},
                }
            )
        except Exception as exc:
            return Result.from_exception(exc, code="placeholder_failed")
        return Result.success(payment_id_of(response))

    async def _attach(self, payment_id: Any, attachment: PendingAttachment) -> Result:
        if attachment.mime_type == PDF_MIME:
            content, filename = attachment.data, attachment.filename
        elif attachment.mime_type.startswith("image/"):
            try:
                content = image_to_pdf(attachment.data)
            except Exception as exc:
                return Result.from_exception(exc, code="conversion_failed")
            filename = attachment.filename if attachment.filename.endswith(".pdf") else f"{attachment.filename}.pdf"
        else:
            return Result.failure(f"unsupported attachment type {attachment.mime_type}", code="unsupported")
        try:
            await self.backend.attach_payment_receipt(payment_id, content, filename, PDF_MIME)
        except Exception as exc:
            return Result.from_exception(exc, code="attach_failed")
        return Result.success()
