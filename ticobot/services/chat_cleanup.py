"""Removal of chats that belong to nobody the business knows."""

from dataclasses import dataclass, field

from ticobot.logging_config import get_logger
from ticobot.services.api_client import BackendClient
from ticobot.services.channel_provider import ChannelProvider
from ticobot.services.phone import OperatorDirectory, chat_id_to_phone, digits_only

logger = get_logger("chat_cleanup")

SAMPLE_SIZE = 20


@dataclass
class CleanupOptions:
    dry_run: bool = True
    include_unread: bool = False
    include_groups: bool = False
    limit: int = 200


@dataclass
class CleanupSummary:
    ok: bool = True
    scanned: int = 0
    candidates: int = 0
    acted: int = 0
    skipped_unread: int = 0
    skipped_group: int = 0
    errors: int = 0
    sample: list[dict] = field(default_factory=list)

    def note(self, chat_id: str, phone: str, action: str, reason: str = "") -> None:
        if len(self.sample) < SAMPLE_SIZE:
            entry = {"chat_id": chat_id, "phone": phone, "action": action}
            if reason:
                entry["reason"] = reason
            self.sample.append(entry)


class ChatCleaner:
    def __init__(self, provider: ChannelProvider, backend: BackendClient, operators: OperatorDirectory):
        self.provider = provider
        self.backend = backend
        self.operators = operators

    async def is_allowed(self, phone: str) -> bool:
        """Operators, paused contacts and known clients are kept; lookup errors keep the chat too."""
        if phone in self.operators:
            return True
        if await self.backend.check_paused_contact(phone):
            return True
        try:
            return bool(await self.backend.find_customer_by_phone(phone))
        except Exception as exc:
            logger.debug(f"Client lookup failed during cleanup, keeping chat: {exc}")
            return True

    async def run(self, options: CleanupOptions) -> CleanupSummary:
        summary = CleanupSummary()
        try:
            chats = await self.provider.list_chats(limit=max(0, options.limit))
        except Exception as exc:
            logger.error(f"Chat cleanup could not list chats: {exc}")
            summary.ok = False
            summary.errors += 1
            return summary

        for chat in chats[: max(0, options.limit)]:
            summary.scanned += 1
            if chat.is_group and not options.include_groups:
                summary.skipped_group += 1
                summary.note(chat.id, "", "skip", "group")
                continue
            if chat.unread_count > 0 and not options.include_unread:
                summary.skipped_unread += 1
                summary.note(chat.id, "", "skip", "unread")
                continue
            phone = digits_only(chat_id_to_phone(chat.id))
            if len(phone) < 8:
                summary.note(chat.id, phone, "skip", "invalid_phone")
                continue
            if await self.is_allowed(phone):
                summary.note(chat.id, phone, "none", "allowed")
                continue
            summary.candidates += 1
            if options.dry_run:
                summary.note(chat.id, phone, "none", "dry_run")
                continue
            try:
                await self._remove(chat.id, phone, summary)
            except Exception as exc:
                summary.errors += 1
                logger.warning(f"Chat cleanup failed for {chat.id}: {exc}")
                summary.note(chat.id, phone, "skip", "error")

        logger.info(
            "Chat cleanup finished",
            extra={
                "context": {
                    "dry_run": options.dry_run,
                    "scanned": summary.scanned,
                    "candidates": summary.candidates,
                    "acted": summary.acted,
                    "errors": summary.errors,
                }
            },
        )
        return summary

    async def _remove(self, chat_id: str, phone: str, summary: CleanupSummary) -> None:
        """Delete the chat, falling back to clearing its messages."""
        try:
            if await self.provider.delete_chat(chat_id):
                summary.acted += 1
                summary.note(chat_id, phone, "delete")
                return
            summary.note(chat_id, phone, "none", "delete_returned_false")
        except Exception as exc:
            summary.note(chat_id, phone, "none", f"delete_error:{exc}"[:120])
        if await self.provider.clear_chat(chat_id):
            summary.acted += 1
            summary.note(chat_id, phone, "clear")
        else:
            summary.note(chat_id, phone, "none", "clear_returned_false")
