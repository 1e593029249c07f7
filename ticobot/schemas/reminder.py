from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class ReminderOption(BaseModel):
    key: Union[int, str]
    label: str = ""


class ReminderPayload(BaseModel):
    due_date: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    message: Optional[str] = None
    options: list[ReminderOption] = Field(default_factory=list)
    service_name: Optional[str] = None


class ReminderClient(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    phone: Optional[str] = None


class ReminderContract(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    next_due_date: Optional[str] = None
    billing_cycle: Optional[str] = None


class Reminder(BaseModel):
    id: int
    client_id: Optional[int] = None
    contract_id: Optional[int] = None
    channel: str = "whatsapp"
    scheduled_for: Optional[datetime] = None
    status: Literal["pending", "queued", "sent"] = "pending"
    attempts: int = Field(default=0, ge=0, le=100)
    payload: ReminderPayload = Field(default_factory=ReminderPayload)
    client: Optional[ReminderClient] = None
    contract: Optional[ReminderContract] = None


class ReminderResult(BaseModel):
    reminder_id: int
    status: Literal["sent", "failed", "skipped"]
    attempts: int = 0
    error: Optional[str] = None


class RunSummary(BaseModel):
    total: int = 0
    sent: int = 0
    failed: int = 0
    skipped: bool = False
    details: list[ReminderResult] = Field(default_factory=list)
