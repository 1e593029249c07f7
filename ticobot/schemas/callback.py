from typing import Optional, Union

from pydantic import AliasChoices, BaseModel, Field


class ReceiptReconciledRequest(BaseModel):
    backend_id: Optional[Union[int, str]] = Field(
        default=None, validation_alias=AliasChoices("backend_id", "receipt_id", "backend_payment_id")
    )
    receipt_local_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("receipt_local_id", "receipt_id_local")
    )
    pdf_base64: Optional[str] = None
    pdf_path: Optional[str] = None
    pdf_url: Optional[str] = None
    message: Optional[str] = None


class ReceiptReconciledResponse(BaseModel):
    ok: bool
    receipt_id: str
    sent: bool
    note: Optional[str] = None


class SendPdfRequest(BaseModel):
    phone: Optional[str] = None
    pdf_base64: Optional[str] = None
    pdf_path: Optional[str] = None
    message: Optional[str] = None
    payment_id: Optional[Union[int, str]] = None


class SendPdfResponse(BaseModel):
    ok: bool
    chat_id: str
