import random
import time
from typing import Awaitable, Callable

from ticobot.logging_config import get_logger
from ticobot.schemas.channel import InboundMessage
from ticobot.services.polling_service import MessagePoller
from ticobot.services.processed_cache import ProcessedMessageCache

logger = get_logger("inbound_service")


class InboundPipeline:
    """Live inbound path: dedup, dispatch, mark read, then nudge the poller."""

    def __init__(
        self,
        cache: ProcessedMessageCache,
        poller: MessagePoller,
        handler: Callable[[InboundMessage], Awaitable[None]],
        *,
        log_sample_rate: float = 0.1,
        slow_message_ms: int = 2500,
    ):
        self.cache = cache
        self.poller = poller
        self.handler = handler
        self.log_sample_rate = log_sample_rate
        self.slow_message_ms = slow_message_ms

    async def on_live_message(self, message: InboundMessage) -> None:
        if not self.cache.add_if_new(message.id):
            logger.debug(f"Duplicate inbound message skipped: {message.id}")
            return
        if random.random() < self.log_sample_rate:
            logger.info(
                "Inbound message",
                extra={
                    "context": {
                        "id": message.id,
                        "from": message.conversation_id,
                        "has_attachment": message.has_attachment,
                        "length": len(message.text or ""),
                    }
                },
            )
        started = time.monotonic()
        try:
            await self.handler(message)
        except Exception as exc:
            logger.error(f"Error handling inbound message: {exc}", exc_info=True)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        if self.slow_message_ms and elapsed_ms > self.slow_message_ms:
            logger.warning(
                "Slow inbound message handling",
                extra={"context": {"id": message.id, "elapsed_ms": elapsed_ms}},
            )
        if not message.is_from_self and not message.is_broadcast:
            await self.poller.mark_chat_read(message.conversation_id)
        self.poller.kick()
