from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_message
from ticobot.schemas.channel import ChatSummary
from ticobot.services.inbound_service import InboundPipeline
from ticobot.services.polling_service import MessagePoller
from ticobot.services.processed_cache import ProcessedMessageCache

CHAT = "50688887777@c.us"


def make_poller(fake_channel, ready=True, **kwargs):
    return MessagePoller(
        fake_channel,
        ProcessedMessageCache(),
        is_ready=lambda: ready,
        enabled=kwargs.pop("enabled", True),
        **kwargs,
    )


class TestStartStop:
    @pytest.mark.asyncio
    async def test_register_handler_while_ready_starts(self, fake_channel):
        poller = make_poller(fake_channel)
        poller.register_handler(AsyncMock())
        assert poller.running is True
        poller.stop()
        assert poller.running is False

    @pytest.mark.asyncio
    async def test_disabled_never_starts(self, fake_channel):
        poller = make_poller(fake_channel, enabled=False)
        poller.register_handler(AsyncMock())
        assert poller.running is False

    @pytest.mark.asyncio
    async def test_not_ready_waits_for_start(self, fake_channel):
        poller = make_poller(fake_channel, ready=False)
        poller.register_handler(AsyncMock())
        assert poller.running is False


class TestTick:
    @pytest.mark.asyncio
    async def test_dispatches_unread_messages_and_marks_read(self, fake_channel):
        handler = AsyncMock()
        poller = make_poller(fake_channel)
        poller.handler = handler
        fake_channel.unread = [ChatSummary(id=CHAT, unread_count=2)]
        fake_channel.messages[CHAT] = [make_message("hola", CHAT, id="a"), make_message("menu", CHAT, id="b")]

        delay = await poller.tick()

        assert handler.await_count == 2
        assert fake_channel.read_marks == [CHAT]
        assert delay == poller.active_seconds

    @pytest.mark.asyncio
    async def test_skips_own_and_seen_messages(self, fake_channel):
        handler = AsyncMock()
        poller = make_poller(fake_channel)
        poller.handler = handler
        poller.cache.add_if_new("seen")
        fake_channel.unread = [ChatSummary(id=CHAT, unread_count=3)]
        fake_channel.messages[CHAT] = [
            make_message("x", CHAT, id="seen"),
            make_message("y", CHAT, id="mine", is_from_self=True),
            make_message("z", CHAT, id="new"),
        ]

        await poller.tick()

        handler.assert_awaited_once()
        assert handler.await_args[0][0].id == "new"

    @pytest.mark.asyncio
    async def test_idle_delay_without_unread(self, fake_channel):
        poller = make_poller(fake_channel)
        poller.handler = AsyncMock()
        assert await poller.tick() == poller.idle_seconds

    @pytest.mark.asyncio
    async def test_repeated_failures_stop_and_restart(self, fake_channel):
        restart = AsyncMock()
        poller = make_poller(fake_channel, on_repeated_failure=restart)
        poller.handler = AsyncMock()
        fake_channel.list_unread_conversations = AsyncMock(side_effect=Exception("gateway down"))

        with patch("ticobot.services.polling_service.background.spawn") as mock_spawn:
            assert await poller.tick() == 5.0
            assert await poller.tick() == 5.0
            assert await poller.tick() is None

        mock_spawn.assert_called_once()
        restart.assert_called_once_with("message_polling_failed")
        mock_spawn.call_args[0][0].close()


class TestInboundPipeline:
    @pytest.mark.asyncio
    async def test_live_and_polled_copies_dispatch_once(self, fake_channel):
        handler = AsyncMock()
        cache = ProcessedMessageCache()
        poller = MessagePoller(fake_channel, cache, is_ready=lambda: True, enabled=True)
        poller.handler = handler
        pipeline = InboundPipeline(cache, poller, handler, log_sample_rate=0)

        message = make_message("hola", CHAT, id="dup-1")
        await pipeline.on_live_message(message)
        fake_channel.unread = [ChatSummary(id=CHAT, unread_count=1)]
        fake_channel.messages[CHAT] = [make_message("hola", CHAT, id="dup-1")]
        await poller.tick()

        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self, fake_channel):
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        cache = ProcessedMessageCache()
        poller = MessagePoller(fake_channel, cache, is_ready=lambda: True, enabled=True)
        pipeline = InboundPipeline(cache, poller, handler, log_sample_rate=0)

        await pipeline.on_live_message(make_message("hola", CHAT))

        assert fake_channel.read_marks == [CHAT]
