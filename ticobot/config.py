import json
import re
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

DEFAULT_BUSINESS_HOURS = {str(day): {"open": "08:00", "close": "19:00"} for day in range(7)}


class Settings(BaseSettings):
    api_base_url: str = Field(default="http://localhost:8000/api", validation_alias="BOT_API_BASE_URL")
    api_token: str = Field(default="", validation_alias="BOT_API_TOKEN")

    poll_interval_ms: int = Field(default=30000, ge=5000, le=600000, validation_alias="BOT_POLL_INTERVAL_MS")
    look_ahead_minutes: int = Field(default=30, ge=1, le=240, validation_alias="BOT_LOOK_AHEAD_MINUTES")
    max_batch: int = Field(default=20, ge=1, le=100, validation_alias="BOT_MAX_BATCH")
    default_country_code: str = Field(default="506", validation_alias="BOT_DEFAULT_COUNTRY_CODE")
    log_level: str = Field(default="INFO", validation_alias="BOT_LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="BOT_LOG_FORMAT")
    data_dir: str = Field(default="data", validation_alias="BOT_DATA_DIR")
    menu_path: Optional[str] = Field(default=None, validation_alias="BOT_MENU_PATH")
    menu_cache_ttl_ms: int = Field(default=300000, ge=0, validation_alias="BOT_MENU_CACHE_TTL_MS")

    payment_contact: Optional[str] = Field(default=None, validation_alias="BOT_PAYMENT_CONTACT")
    bank_accounts_raw: Optional[str] = Field(default=None, validation_alias="BOT_BANK_ACCOUNTS")
    beneficiary_name: Optional[str] = Field(default=None, validation_alias="BOT_BENEFICIARY_NAME")
    service_name: Optional[str] = Field(default=None, validation_alias="BOT_SERVICE_NAME")
    company_name: str = Field(default="Tecno Servicios Artavia", validation_alias="BOT_COMPANY_NAME")
    admin_phones_raw: Optional[str] = Field(default=None, validation_alias="BOT_ADMIN_PHONES")

    enable_message_polling: bool = Field(default=False, validation_alias="BOT_ENABLE_MESSAGE_POLLING")
    mark_messages_read: bool = Field(default=True, validation_alias="BOT_MARK_MESSAGES_READ")
    auto_restart_on_stuck: bool = Field(default=False, validation_alias="BOT_AUTO_RESTART_ON_STUCK")
    message_poll_idle_ms: int = Field(default=3000, ge=250, validation_alias="BOT_MESSAGE_POLL_IDLE_MS")
    message_poll_active_ms: int = Field(default=2000, ge=250, validation_alias="BOT_MESSAGE_POLL_ACTIVE_MS")
    message_poll_max_chats: int = Field(default=5, ge=1, le=50, validation_alias="BOT_MESSAGE_POLL_MAX_CHATS")
    message_poll_max_per_chat: int = Field(
        default=15, ge=1, le=100, validation_alias="BOT_MESSAGE_POLL_MAX_PER_CHAT"
    )

    bot_timeout_ms: int = Field(default=10 * 60 * 1000, ge=1000, validation_alias="BOT_TIMEOUT_MS")
    receipt_timeout_ms: int = Field(default=30 * 60 * 1000, ge=1000, validation_alias="BOT_RECEIPT_TIMEOUT_MS")
    agent_timeout_ms: int = Field(default=60 * 60 * 1000, ge=1000, validation_alias="AGENT_TIMEOUT_MS")
    agent_notify_throttle_ms: int = Field(
        default=30 * 60 * 1000, ge=0, validation_alias="AGENT_NOTIFY_THROTTLE_MS"
    )
    business_hours_raw: Optional[str] = Field(default=None, validation_alias="BOT_BUSINESS_HOURS")
    timezone: str = Field(default="America/Costa_Rica", validation_alias="TIMEZONE")
    resend_hour: int = Field(default=17, ge=0, le=23, validation_alias="BOT_RESEND_HOUR")
    settings_poll_ms: int = Field(default=5 * 60 * 1000, ge=10000, validation_alias="BOT_SETTINGS_POLL_MS")
    payment_retry_delay_ms: int = Field(default=60000, ge=0, validation_alias="BOT_PAYMENT_RETRY_DELAY_MS")

    gateway_url: str = Field(default="http://localhost:3001", validation_alias="BOT_GATEWAY_URL")
    gateway_token: Optional[str] = Field(default=None, validation_alias="BOT_GATEWAY_TOKEN")

    admin_queue_backend: str = Field(default="file", validation_alias="BOT_ADMIN_QUEUE_BACKEND")
    admin_queue_interval_ms: int = Field(default=2000, ge=250, validation_alias="BOT_ADMIN_QUEUE_INTERVAL_MS")
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")

    slow_message_ms: int = Field(default=2500, ge=0, validation_alias="BOT_SLOW_MESSAGE_MS")
    inbound_log_sample_rate: float = Field(default=0.1, ge=0, le=1, validation_alias="BOT_INBOUND_LOG_SAMPLE_RATE")

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    @field_validator("admin_queue_backend")
    @classmethod
    def _check_queue_backend(cls, value: str) -> str:
        value = (value or "file").strip().lower()
        if value not in {"file", "redis"}:
            raise ValueError("BOT_ADMIN_QUEUE_BACKEND must be 'file' or 'redis'")
        return value

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def bank_accounts(self) -> list[str]:
        return parse_bank_accounts(self.bank_accounts_raw)

    @property
    def admin_phones(self) -> list[str]:
        if not self.admin_phones_raw:
            return []
        return [re.sub(r"\D", "", part) for part in self.admin_phones_raw.split(",") if re.sub(r"\D", "", part)]

    @property
    def business_hours(self) -> dict:
        return parse_business_hours(self.business_hours_raw)


def parse_bank_accounts(raw) -> list[str]:
    """Accept a list or a string separated by newlines or semicolons."""
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [part.strip() for part in re.split(r"[\n;]", str(raw)) if part.strip()]


def parse_business_hours(raw) -> dict:
    """Parse a weekday → {open, close} map; invalid input falls back to the default."""
    if not raw:
        return dict(DEFAULT_BUSINESS_HOURS)
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return dict(DEFAULT_BUSINESS_HOURS)
    if not isinstance(raw, dict):
        return dict(DEFAULT_BUSINESS_HOURS)
    return {str(day): value for day, value in raw.items() if isinstance(value, dict)}


settings = Settings()
