import time
from typing import Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.schemas.channel import MediaPayload
from ticobot.services.business_hours import BusinessHours
from ticobot.services.channel_provider import ChannelProvider
from ticobot.services.phone import OperatorDirectory
from ticobot.services.session_state import ChatSession

logger = get_logger("notifier")

OUT_OF_HOURS_PREFIX = "⚠️ FUERA DE HORARIO - "


class OperatorNotifier:
    """Messages to the primary operator chat. Failures are logged, never raised."""

    def __init__(
        self,
        provider: ChannelProvider,
        operators: OperatorDirectory,
        hours: BusinessHours,
        *,
        throttle_seconds: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.operators = operators
        self.hours = hours
        self.throttle_seconds = throttle_seconds
        self._clock = clock

    @property
    def chat_id(self) -> Optional[str]:
        return self.operators.primary_chat_id

    async def send_text(self, text: str) -> bool:
        if not self.chat_id:
            logger.debug("No operator phone configured, notification dropped")
            return False
        try:
            await self.provider.send_text(self.chat_id, text)
            return True
        except Exception as exc:
            logger.warning(f"Could not notify operator: {exc}")
            return False

    async def send_media(self, media: MediaPayload, caption: Optional[str] = None) -> bool:
        if not self.chat_id:
            return False
        try:
            await self.provider.send_media(self.chat_id, media, caption)
            return True
        except Exception as exc:
            logger.warning(f"Could not forward media to operator: {exc}")
            return False

    def _out_of_hours_suffix(self) -> str:
        return (
            "\n\n⏰ Nota: Esta solicitud se realizó FUERA del horario de atención "
            f"({self.hours.describe()}). El cliente será atendido cuando inicien las operaciones."
        )

    def handoff_text(self, trigger: str, phone: str, conversation_id: str, body: str) -> str:
        outside = not self.hours.is_open()
        prefix = OUT_OF_HOURS_PREFIX if outside else ""
        suffix = self._out_of_hours_suffix() if outside else ""
        excerpt = str(body)[:200]
        if trigger == "keyword":
            return (
                f"{prefix}🔔 Cliente {phone} ({conversation_id}) solicitó hablar con un agente.\n\n"
                f'Último mensaje: "{excerpt}"{suffix}\n\n'
                "Por favor responde directamente a este chat para atender al cliente."
            )
        option = " (opción 5)" if trigger == "menu_option" else ""
        return f'{prefix}Cliente {phone} ({conversation_id}) solicita atención de un asesor{option}. Mensaje: "{excerpt}"{suffix}'

    async def notify_handoff(self, session: ChatSession, *, trigger: str, phone: str, body: str) -> bool:
        """At most one handoff notification per conversation inside the throttle window."""
        now = self._clock()
        last = session.admin_notified_at
        if last is not None and now - last <= self.throttle_seconds:
            logger.debug(
                "Operator handoff notification throttled",
                extra={"context": {"conversation_id": session.conversation_id, "trigger": trigger}},
            )
            return False
        sent = await self.send_text(self.handoff_text(trigger, phone, session.conversation_id, body))
        if sent:
            session.admin_notified_at = now
            logger.info(
                "Operator notified about handoff request",
                extra={"context": {"conversation_id": session.conversation_id, "trigger": trigger}},
            )
        return sent
