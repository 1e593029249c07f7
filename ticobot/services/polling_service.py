"""Polling fallback for inbound messages the live event stream missed."""

import asyncio
from typing import Awaitable, Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.schemas.channel import InboundMessage
from ticobot.services import background
from ticobot.services.channel_provider import ChannelProvider
from ticobot.services.processed_cache import ProcessedMessageCache

logger = get_logger("polling_service")

MAX_CONSECUTIVE_FAILURES = 3
KICK_DELAY_SECONDS = 0.25
MIN_FETCH = 8

InboundHandler = Callable[[InboundMessage], Awaitable[None]]


class MessagePoller:
    def __init__(
        self,
        provider: ChannelProvider,
        cache: ProcessedMessageCache,
        *,
        is_ready: Callable[[], bool],
        on_repeated_failure: Optional[Callable[[str], Awaitable]] = None,
        enabled: bool = False,
        mark_read: bool = True,
        idle_seconds: float = 3.0,
        active_seconds: float = 2.0,
        max_chats: int = 5,
        max_per_chat: int = 15,
    ):
        self.provider = provider
        self.cache = cache
        self.is_ready = is_ready
        self.on_repeated_failure = on_repeated_failure
        self.enabled = enabled
        self.mark_read = mark_read
        self.idle_seconds = idle_seconds
        self.active_seconds = active_seconds
        self.max_chats = max_chats
        self.max_per_chat = max_per_chat

        self.handler: Optional[InboundHandler] = None
        self.consecutive_failures = 0
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._disabled_logged = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_handler(self, handler: InboundHandler) -> None:
        self.handler = handler
        if self.is_ready():
            self.start()

    def start(self) -> None:
        if not self.enabled:
            if not self._disabled_logged:
                self._disabled_logged = True
                logger.info("Message polling fallback disabled, set BOT_ENABLE_MESSAGE_POLLING=true to enable it")
            return
        if self.handler is None or self.running:
            return
        logger.warning(
            "Starting message polling fallback",
            extra={"context": {"idle_seconds": self.idle_seconds, "active_seconds": self.active_seconds}},
        )
        self.consecutive_failures = 0
        self._task = asyncio.create_task(self._loop(), name="message-poller")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def kick(self) -> None:
        """Bring the next tick forward after live activity."""
        if self.enabled and self.handler is not None and self.is_ready():
            self._wake.set()

    async def _loop(self) -> None:
        delay = 0.0
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            if self._wake.is_set():
                self._wake.clear()
                try:
                    await asyncio.sleep(KICK_DELAY_SECONDS)
                except asyncio.CancelledError:
                    break
            try:
                next_delay = await self.tick()
            except asyncio.CancelledError:
                break
            if next_delay is None:
                break
            delay = next_delay

    async def tick(self) -> Optional[float]:
        """Run one poll; returns the delay before the next one, or None to stop."""
        if not self.is_ready() or self.handler is None:
            return self.idle_seconds
        next_delay = self.idle_seconds
        try:
            unread = await self.provider.list_unread_conversations(self.max_chats)
            self.consecutive_failures = 0
            if unread:
                next_delay = self.active_seconds
            for chat in unread:
                await self._drain_chat(chat.id, chat.unread_count)
        except Exception as exc:
            self.consecutive_failures += 1
            failures = self.consecutive_failures
            logger.warning(f"Message polling failed: {exc}", extra={"context": {"failures": failures}})
            next_delay = max(5.0, self.idle_seconds)
            if failures >= MAX_CONSECUTIVE_FAILURES:
                logger.error(
                    "Message polling failed repeatedly, stopping polling and restarting channel",
                    extra={"context": {"failures": failures}},
                )
                self.stop()
                if self.on_repeated_failure is not None:
                    background.spawn(self.on_repeated_failure("message_polling_failed"), name="poller-restart")
                return None
        return max(KICK_DELAY_SECONDS, next_delay)

    async def _drain_chat(self, chat_id: str, unread_count: int) -> None:
        unread_count = min(unread_count, max(1, self.max_per_chat))
        if unread_count <= 0:
            return
        try:
            messages = await self.provider.fetch_recent_messages(
                chat_id, max(MIN_FETCH, min(self.max_per_chat, unread_count + 3))
            )
        except Exception as exc:
            logger.debug(f"Could not fetch messages while polling {chat_id}: {exc}")
            return
        for message in messages:
            if not message.id or message.is_from_self or message.is_broadcast:
                continue
            if not self.cache.add_if_new(message.id):
                continue
            logger.info(
                "Processing message via polling fallback",
                extra={"context": {"id": message.id, "chat_id": chat_id, "unread": unread_count}},
            )
            try:
                await self.handler(message)
            except Exception as exc:
                logger.error(f"Inbound handler failed (polling): {exc}", exc_info=True)
        await self.mark_chat_read(chat_id)

    async def mark_chat_read(self, chat_id: str) -> None:
        if not self.mark_read or not chat_id or chat_id.endswith("@broadcast"):
            return
        try:
            await self.provider.mark_read(chat_id)
        except Exception as exc:
            logger.debug(f"Could not mark chat {chat_id} as read: {exc}")
