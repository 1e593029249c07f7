import base64
import binascii
import time
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, HTTPException

from ticobot.logging_config import get_logger
from ticobot.runtime import get_runtime
from ticobot.schemas.callback import (
    ReceiptReconciledRequest,
    ReceiptReconciledResponse,
    SendPdfRequest,
    SendPdfResponse,
)
from ticobot.schemas.channel import MediaPayload
from ticobot.services.phone import normalize_to_chat_id

logger = get_logger("callback")

router = APIRouter()

DATA_URL_PREFIX = "data:application/pdf;base64,"


def _decode_base64(value: str) -> Optional[bytes]:
    if value.startswith(DATA_URL_PREFIX):
        value = value[len(DATA_URL_PREFIX):]
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError):
        logger.warning("Invalid base64 PDF payload")
        return None


def _read_path(path: str) -> Optional[bytes]:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        logger.warning(f"Could not read PDF from path: {exc}", extra={"context": {"pdf_path": path}})
        return None


async def _download(url: str) -> Optional[bytes]:
    try:
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(url)
            response.raise_for_status()
            return response.content
    except httpx.HTTPError as exc:
        logger.warning(f"Could not download PDF: {exc}", extra={"context": {"pdf_url": url}})
        return None


async def _send_pdf(chat_id: str, data: bytes, filename: str, message: Optional[str]) -> None:
    provider = get_runtime().provider
    await provider.send_media(chat_id, MediaPayload(data=data, mime_type="application/pdf", filename=filename))
    if message and message.strip():
        await provider.send_text(chat_id, message)


@router.post("/webhook/receipt_reconciled", response_model=ReceiptReconciledResponse)
async def receipt_reconciled(request: ReceiptReconciledRequest):
    """Deliver the reconciled receipt PDF to the chat that sent the original receipt."""
    if request.backend_id is None and not request.receipt_local_id:
        raise HTTPException(status_code=400, detail="backend_id or receipt_local_id required")

    receipts = get_runtime().receipts
    entry = receipts.find(local_id=request.receipt_local_id, backend_id=request.backend_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="receipt not found")

    receipt_id = entry["id"]
    filename = f"reconciled-{receipt_id}.pdf"
    data = None
    if request.pdf_base64:
        data = _decode_base64(request.pdf_base64)
    elif request.pdf_path:
        data = _read_path(request.pdf_path)
        filename = Path(request.pdf_path).name
    elif request.pdf_url:
        data = await _download(request.pdf_url)
        filename = Path(urlparse(request.pdf_url).path).name or filename
    elif entry.get("reconciled_pdf"):
        data = _read_path(entry["reconciled_pdf"])
        filename = Path(entry["reconciled_pdf"]).name

    if not data:
        receipts.update(receipt_id, reconciled=True, reconciled_sent=False)
        return ReceiptReconciledResponse(
            ok=True, receipt_id=receipt_id, sent=False, note="marked reconciled, no pdf to send"
        )

    chat_id = entry.get("chat_id")
    try:
        if not chat_id:
            raise ValueError("chatId missing")
        await _send_pdf(chat_id, data, filename, request.message)
    except Exception as exc:
        logger.warning(
            f"Error sending reconciled PDF: {exc}",
            extra={"context": {"receipt_id": receipt_id, "chat_id": chat_id}},
        )
        receipts.update(receipt_id, reconciled=True, reconciled_sent=False)
        raise HTTPException(status_code=500, detail=str(exc))

    receipts.update(receipt_id, reconciled=True, reconciled_sent=True, reconciled_sent_ts=int(time.time() * 1000))
    logger.info("Reconciled receipt delivered", extra={"context": {"receipt_id": receipt_id, "chat_id": chat_id}})
    return ReceiptReconciledResponse(ok=True, receipt_id=receipt_id, sent=True)


@router.post("/webhook/send_pdf", response_model=SendPdfResponse)
async def send_pdf(request: SendPdfRequest):
    """Send a manually registered payment's PDF to a phone number."""
    if not request.phone:
        raise HTTPException(status_code=400, detail="phone required")
    chat_id = normalize_to_chat_id(request.phone, get_runtime().config.default_country_code)
    if not chat_id:
        raise HTTPException(status_code=400, detail="invalid phone format")

    filename = f"payment-{request.payment_id or int(time.time() * 1000)}.pdf"
    data = None
    if request.pdf_base64:
        data = _decode_base64(request.pdf_base64)
    elif request.pdf_path:
        data = _read_path(request.pdf_path)
        filename = Path(request.pdf_path).name
    if not data:
        raise HTTPException(status_code=400, detail="no pdf data provided")

    try:
        await _send_pdf(chat_id, data, filename, request.message)
    except Exception as exc:
        logger.warning(
            f"Error sending payment PDF: {exc}",
            extra={"context": {"chat_id": chat_id, "payment_id": request.payment_id}},
        )
        raise HTTPException(status_code=500, detail=str(exc))

    logger.info(
        "Payment PDF sent",
        extra={"context": {"chat_id": chat_id, "payment_id": request.payment_id, "filename": filename}},
    )
    return SendPdfResponse(ok=True, chat_id=chat_id)
