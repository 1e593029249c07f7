"""Phone number and chat id helpers for WhatsApp addressing."""

import re
from typing import Iterable, Optional

CHAT_SUFFIX = "@c.us"
BROADCAST_SUFFIX = "@broadcast"
GROUP_SUFFIX = "@g.us"


class InvalidPhoneError(ValueError):
    """Raised when a phone number cannot be addressed on the channel."""


def digits_only(value) -> str:
    return re.sub(r"\D", "", str(value or ""))


def normalize_phone(value, country_code: str = "506") -> str:
    """Prefix local 8-digit numbers with the country code."""
    digits = digits_only(value)
    if len(digits) == 8:
        return f"{country_code}{digits}"
    return digits


def to_chat_id(raw_phone, country_code: str = "506") -> str:
    """Build a chat id for a client phone; raises InvalidPhoneError on short numbers."""
    digits = digits_only(raw_phone)
    if len(digits) < 8:
        raise InvalidPhoneError(f"El número {raw_phone} no parece válido para WhatsApp.")
    if len(digits) < 11:
        digits = f"{country_code}{digits.lstrip('0')}"
    return f"{digits}{CHAT_SUFFIX}"


def normalize_to_chat_id(raw_phone, country_code: str = "506") -> Optional[str]:
    """Lenient variant used for operator input: None when not 8-15 digits."""
    if not raw_phone:
        return None
    phone = normalize_phone(raw_phone, country_code)
    if not re.fullmatch(r"\d{8,15}", phone):
        return None
    return f"{phone}{CHAT_SUFFIX}"


def chat_id_to_phone(chat_id: str) -> str:
    return re.sub(r"@.*$", "", chat_id or "")


def is_broadcast(chat_id: str) -> bool:
    return bool(chat_id) and chat_id.endswith(BROADCAST_SUFFIX)


def is_group(chat_id: str) -> bool:
    return bool(chat_id) and chat_id.endswith(GROUP_SUFFIX)


def phone_matches(candidate, wanted, country_code: str = "506") -> bool:
    """Exact digits match, or the same local number with or without country code."""
    a = normalize_phone(candidate, country_code)
    b = normalize_phone(wanted, country_code)
    if not a or not b:
        return False
    return a == b or (a.endswith(b[-8:]) and b.endswith(a[-8:]))


class OperatorDirectory:
    """Set of operator phones, matched with and without the country prefix."""

    def __init__(self, phones: Iterable[str], country_code: str = "506"):
        self.country_code = country_code
        raw = [digits_only(p) for p in phones if digits_only(p)]
        self._phones = set(raw) | {normalize_phone(p, country_code) for p in raw}
        self.primary = normalize_phone(raw[0], country_code) if raw else None

    def __contains__(self, phone) -> bool:
        digits = digits_only(chat_id_to_phone(str(phone or "")))
        if not digits:
            return False
        return digits in self._phones or normalize_phone(digits, self.country_code) in self._phones

    def __len__(self) -> int:
        return len(self._phones)

    def is_operator_chat(self, chat_id: str) -> bool:
        return chat_id_to_phone(chat_id) in self

    @property
    def primary_chat_id(self) -> Optional[str]:
        return f"{self.primary}{CHAT_SUFFIX}" if self.primary else None
