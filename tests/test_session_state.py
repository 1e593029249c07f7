import asyncio

import pytest

from ticobot.services.session_state import (
    ChatSession,
    ChatState,
    MonthsContext,
    PendingAttachment,
    SessionStore,
)

CHAT_A = "50611111111@c.us"
CHAT_B = "50622222222@c.us"


class TestChatSession:
    def test_starts_idle(self):
        session = ChatSession(CHAT_A)
        assert session.state == ChatState.IDLE
        assert session.in_active_process is False

    def test_entering_a_state_clears_the_previous_one(self):
        session = ChatSession(CHAT_A)
        session.stage_attachment(PendingAttachment(b"img", "image/jpeg", "r.jpg"))
        session.await_months(MonthsContext(receipt_id="r-1"))
        assert session.state == ChatState.AWAITING_MONTHS_COUNT
        assert session.pending_attachment is None
        assert session.months_context.receipt_id == "r-1"

    def test_agent_mode_timeout(self):
        session = ChatSession(CHAT_A, default_timeout_seconds=600)
        session.enter_agent_mode(3600)
        assert session.in_agent_mode is True
        assert session.effective_timeout == 3600

    def test_reset_keeps_notification_throttles(self):
        session = ChatSession(CHAT_A)
        session.admin_notified_at = 10.0
        session.after_hours_notified_at = 20.0
        session.enter_agent_mode(3600)
        session.reset()
        assert session.state == ChatState.IDLE
        assert session.effective_timeout == 600
        assert session.admin_notified_at == 10.0
        assert session.after_hours_notified_at == 20.0

    def test_clear_menu_only_from_menu(self):
        session = ChatSession(CHAT_A)
        session.await_receipt()
        session.clear_menu()
        assert session.state == ChatState.AWAITING_RECEIPT_UPLOAD

    def test_end_flow_only_from_flow(self):
        session = ChatSession(CHAT_A)
        session.enter_agent_mode(60)
        session.end_flow()
        assert session.in_agent_mode is True


class TestSessionStore:
    def test_get_creates_lazily(self):
        store = SessionStore(default_timeout_seconds=42)
        session = store.get(CHAT_A)
        assert store.get(CHAT_A) is session
        assert session.default_timeout_seconds == 42
        assert store.peek(CHAT_B) is None
        assert len(store) == 1

    def test_lock_per_conversation(self):
        store = SessionStore()
        assert store.lock(CHAT_A) is store.lock(CHAT_A)
        assert store.lock(CHAT_A) is not store.lock(CHAT_B)

    @pytest.mark.asyncio
    async def test_timeout_resets_only_its_own_conversation(self):
        store = SessionStore(default_timeout_seconds=0.05)
        store.get(CHAT_A).await_receipt()
        store.get(CHAT_B).enter_agent_mode(60)
        store.touch(CHAT_A)
        store.touch(CHAT_B)

        await asyncio.sleep(0.15)

        assert store.get(CHAT_A).state == ChatState.IDLE
        assert store.get(CHAT_B).state == ChatState.AGENT_MODE
        assert store.has_timer(CHAT_A) is False
        assert store.has_timer(CHAT_B) is True
        store.close()

    @pytest.mark.asyncio
    async def test_touch_restarts_the_timer(self):
        store = SessionStore(default_timeout_seconds=0.1)
        store.get(CHAT_A).await_receipt()
        store.touch(CHAT_A)
        await asyncio.sleep(0.06)
        store.touch(CHAT_A)
        await asyncio.sleep(0.06)
        assert store.get(CHAT_A).state == ChatState.AWAITING_RECEIPT_UPLOAD
        store.close()

    @pytest.mark.asyncio
    async def test_clear_cancels_timer(self):
        store = SessionStore()
        store.get(CHAT_A).await_receipt()
        store.touch(CHAT_A)
        store.clear(CHAT_A)
        assert store.has_timer(CHAT_A) is False
        assert store.get(CHAT_A).state == ChatState.IDLE

    def test_expire_forgets_idle_conversation(self):
        store = SessionStore()
        store.get(CHAT_A).await_receipt()
        lock = store.lock(CHAT_A)

        store.expire(CHAT_A)

        assert store.peek(CHAT_A) is None
        assert len(store) == 0
        assert store.lock(CHAT_A) is not lock

    @pytest.mark.asyncio
    async def test_held_lock_keeps_conversation(self):
        store = SessionStore()
        session = store.get(CHAT_A)
        lock = store.lock(CHAT_A)

        async with lock:
            store.clear(CHAT_A)

        assert store.peek(CHAT_A) is session
        assert store.lock(CHAT_A) is lock

    @pytest.mark.asyncio
    async def test_recent_notification_keeps_session_until_window_ends(self):
        now = [1000.0]
        store = SessionStore(clock=lambda: now[0], retain_seconds=60)
        session = store.get(CHAT_A)
        session.admin_notified_at = 990.0

        store.expire(CHAT_A)

        assert store.peek(CHAT_A) is session
        assert store.has_timer(CHAT_A) is True
        store.close()

    def test_old_notification_does_not_keep_session(self):
        store = SessionStore(clock=lambda: 1000.0, retain_seconds=60)
        store.get(CHAT_A).after_hours_notified_at = 900.0

        store.clear(CHAT_A)

        assert store.peek(CHAT_A) is None
