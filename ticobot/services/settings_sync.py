"""Payment instructions and hours that the backend can override at runtime."""

from dataclasses import dataclass, field
from typing import Optional

from ticobot.config import Settings, parse_bank_accounts
from ticobot.logging_config import get_logger
from ticobot.services.api_client import BackendClient
from ticobot.services.business_hours import BusinessHours

logger = get_logger("settings_sync")

DEFAULT_SERVICE_NAME = "TicoCast"


@dataclass
class BillingProfile:
    payment_contact: Optional[str] = None
    bank_accounts: list[str] = field(default_factory=list)
    beneficiary_name: Optional[str] = None
    service_name: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingProfile":
        return cls(
            payment_contact=settings.payment_contact,
            bank_accounts=settings.bank_accounts,
            beneficiary_name=settings.beneficiary_name,
            service_name=settings.service_name,
        )

    @property
    def display_service_name(self) -> str:
        return self.service_name or DEFAULT_SERVICE_NAME


def apply_remote_settings(remote: dict, profile: BillingProfile, hours: BusinessHours) -> list[str]:
    """Copy known keys from the backend settings payload; returns the names changed."""
    changed = []
    if not isinstance(remote, dict):
        return changed
    if remote.get("payment_contact"):
        profile.payment_contact = str(remote["payment_contact"])
        changed.append("payment_contact")
    if remote.get("bank_accounts"):
        accounts = parse_bank_accounts(remote["bank_accounts"])
        if accounts:
            profile.bank_accounts = accounts
            changed.append("bank_accounts")
    if remote.get("beneficiary_name"):
        profile.beneficiary_name = str(remote["beneficiary_name"])
        changed.append("beneficiary_name")
    if remote.get("service_name"):
        profile.service_name = str(remote["service_name"])
        changed.append("service_name")
    if remote.get("business_hours"):
        hours.update(schedule=remote["business_hours"])
        changed.append("business_hours")
    timezone = remote.get("bot_timezone") or remote.get("timezone")
    if timezone:
        hours.update(timezone=str(timezone))
        changed.append("timezone")
    return changed


async def refresh_settings(backend: BackendClient, profile: BillingProfile, hours: BusinessHours) -> list[str]:
    """Pull settings from the backend; failures keep the current values."""
    try:
        remote = await backend.get_settings()
    except Exception as exc:
        logger.warning(f"Could not load settings from backend: {exc}")
        return []
    changed = apply_remote_settings(remote, profile, hours)
    if changed:
        logger.info("Settings refreshed from backend", extra={"context": {"changed": changed}})
    return changed
