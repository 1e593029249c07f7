"""Per-conversation session state, idle timers and handler locks."""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.schemas.channel import InboundMessage
from ticobot.schemas.menu import MenuItem

if TYPE_CHECKING:
    from ticobot.services.admin_flows import AdminFlow

logger = get_logger("session_state")


class ChatState(str, Enum):
    IDLE = "idle"
    MENU_SHOWN = "menu_shown"
    AWAITING_RECEIPT_UPLOAD = "awaiting_receipt_upload"
    PENDING_RECEIPT_CONFIRMATION = "pending_receipt_confirmation"
    AWAITING_MONTHS_COUNT = "awaiting_months_count"
    AGENT_MODE = "agent_mode"
    ADMIN_FLOW = "admin_flow"


@dataclass
class PendingAttachment:
    data: bytes
    mime_type: str
    filename: str
    text: str = ""


@dataclass
class MonthsContext:
    receipt_id: str
    backend_payment_id: Optional[Any] = None
    retry_scheduled: bool = False


@dataclass
class ChatSession:
    conversation_id: str
    default_timeout_seconds: float = 600.0
    state: ChatState = ChatState.IDLE
    last_activity_at: float = 0.0
    timeout_seconds: Optional[float] = None
    menu_items: list[MenuItem] = field(default_factory=list)
    admin_menu: bool = False
    submenu: bool = False
    pending_attachment: Optional[PendingAttachment] = None
    months_context: Optional[MonthsContext] = None
    admin_flow: Optional["AdminFlow"] = None
    admin_notified_at: Optional[float] = None
    after_hours_notified_at: Optional[float] = None

    @property
    def effective_timeout(self) -> float:
        return self.timeout_seconds or self.default_timeout_seconds

    @property
    def in_agent_mode(self) -> bool:
        return self.state == ChatState.AGENT_MODE

    @property
    def menu_shown(self) -> bool:
        return self.state == ChatState.MENU_SHOWN

    @property
    def in_active_process(self) -> bool:
        return self.state != ChatState.IDLE

    def reset(self) -> None:
        """Back to IDLE with nothing staged. Notification throttles are kept."""
        self.state = ChatState.IDLE
        self.timeout_seconds = None
        self.menu_items = []
        self.admin_menu = False
        self.submenu = False
        self.pending_attachment = None
        self.months_context = None
        self.admin_flow = None

    def _enter(self, state: ChatState, timeout_seconds: Optional[float] = None) -> None:
        self.reset()
        self.state = state
        self.timeout_seconds = timeout_seconds

    def show_menu(self, items: list[MenuItem], *, admin: bool = False, submenu: bool = False) -> None:
        self._enter(ChatState.MENU_SHOWN)
        self.menu_items = list(items)
        self.admin_menu = admin
        self.submenu = submenu

    def clear_menu(self) -> None:
        if self.state == ChatState.MENU_SHOWN:
            self.reset()

    def enter_agent_mode(self, timeout_seconds: float) -> None:
        self._enter(ChatState.AGENT_MODE, timeout_seconds)

    def await_receipt(self, timeout_seconds: Optional[float] = None) -> None:
        self._enter(ChatState.AWAITING_RECEIPT_UPLOAD, timeout_seconds)

    def stage_attachment(self, attachment: PendingAttachment) -> None:
        self._enter(ChatState.PENDING_RECEIPT_CONFIRMATION)
        self.pending_attachment = attachment

    def await_months(self, context: MonthsContext) -> None:
        self._enter(ChatState.AWAITING_MONTHS_COUNT)
        self.months_context = context

    def start_flow(self, flow: "AdminFlow") -> None:
        self._enter(ChatState.ADMIN_FLOW)
        self.admin_flow = flow

    def end_flow(self) -> None:
        if self.state == ChatState.ADMIN_FLOW:
            self.reset()


class SessionStore:
    """Lazily created sessions keyed by conversation, with one idle timer each.

    A timer firing resets only its own conversation. Locks are handed out per
    conversation so inbound events for one chat are handled one at a time.
    Expired or cleared conversations are forgotten once no handler holds their
    lock and their notification throttles are older than ``retain_seconds``.
    """

    def __init__(
        self,
        default_timeout_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        retain_seconds: float = 1800.0,
    ):
        self.default_timeout_seconds = default_timeout_seconds
        self.retain_seconds = retain_seconds
        self._clock = clock
        self._sessions: dict[str, ChatSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self):
        return iter(list(self._sessions.values()))

    def get(self, conversation_id: str) -> ChatSession:
        session = self._sessions.get(conversation_id)
        if session is None:
            session = ChatSession(conversation_id, default_timeout_seconds=self.default_timeout_seconds)
            self._sessions[conversation_id] = session
        return session

    def peek(self, conversation_id: str) -> Optional[ChatSession]:
        return self._sessions.get(conversation_id)

    def lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def touch(self, conversation_id: str) -> None:
        """Restart the idle timer using the session's current timeout."""
        session = self.get(conversation_id)
        session.last_activity_at = self._clock()
        self._cancel_timer(conversation_id)
        loop = asyncio.get_running_loop()
        self._timers[conversation_id] = loop.call_later(
            session.effective_timeout, self.expire, conversation_id
        )

    def has_timer(self, conversation_id: str) -> bool:
        return conversation_id in self._timers

    def _cancel_timer(self, conversation_id: str) -> None:
        handle = self._timers.pop(conversation_id, None)
        if handle is not None:
            handle.cancel()

    def expire(self, conversation_id: str) -> None:
        self._timers.pop(conversation_id, None)
        session = self._sessions.get(conversation_id)
        if session is None:
            return
        logger.info(
            "Chat timeout: session cleared after inactivity",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "state": session.state.value,
                    "timeout_seconds": session.effective_timeout,
                }
            },
        )
        session.reset()
        self._discard(conversation_id)

    def clear(self, conversation_id: str) -> None:
        self._cancel_timer(conversation_id)
        session = self._sessions.get(conversation_id)
        if session is not None:
            session.reset()
        self._discard(conversation_id)

    def _retention_left(self, session: ChatSession) -> float:
        marks = [mark for mark in (session.admin_notified_at, session.after_hours_notified_at) if mark is not None]
        if not marks:
            return 0.0
        return max(0.0, max(marks) + self.retain_seconds - self._clock())

    def _discard(self, conversation_id: str) -> None:
        lock = self._locks.get(conversation_id)
        if lock is not None and lock.locked():
            return
        session = self._sessions.get(conversation_id)
        if session is not None and session.state != ChatState.IDLE:
            return
        remaining = self._retention_left(session) if session is not None else 0.0
        if remaining > 0:
            loop = asyncio.get_running_loop()
            self._timers[conversation_id] = loop.call_later(remaining, self._discard, conversation_id)
            return
        self._timers.pop(conversation_id, None)
        self._sessions.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)

    def close(self) -> None:
        for conversation_id in list(self._timers):
            self._cancel_timer(conversation_id)


ReplyFunc = Callable[[str], Awaitable[None]]


@dataclass
class ConversationContext:
    """What a handler needs about the message currently being handled."""

    message: InboundMessage
    session: ChatSession
    phone: str
    phone_norm: str
    is_operator: bool
    body: str
    reply: ReplyFunc

    @property
    def conversation_id(self) -> str:
        return self.message.conversation_id

    @property
    def lc(self) -> str:
        return self.body.lower()
