"""Connection supervision: lifecycle events, stuck detection and bounded restarts."""

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from ticobot.logging_config import get_logger
from ticobot.services import background
from ticobot.services.alert_service import alert_critical, alert_warning
from ticobot.services.api_client import BackendClient
from ticobot.services.channel_provider import ChannelProvider
from ticobot.services.connection_state import (
    ConnectionState,
    InvalidTransitionError,
    ReadinessSource,
    authenticate,
    disconnect,
    infer_ready,
    mark_ready,
    require_scan,
)

if TYPE_CHECKING:
    from ticobot.services.polling_service import MessagePoller

logger = get_logger("watchdog")

GATEWAY_CONNECTED = "CONNECTED"


@dataclass
class RestartPolicy:
    window_seconds: float = 600.0
    max_restarts: int = 3
    cooldown_seconds: float = 15.0
    clock: Callable[[], float] = time.monotonic
    timestamps: list[float] = field(default_factory=list)

    def _prune(self, now: float) -> None:
        self.timestamps = [t for t in self.timestamps if now - t < self.window_seconds]

    @property
    def last_restart_at(self) -> Optional[float]:
        return self.timestamps[-1] if self.timestamps else None

    def rejection_reason(self) -> Optional[str]:
        """None when a restart may proceed now."""
        now = self.clock()
        self._prune(now)
        if len(self.timestamps) >= self.max_restarts:
            return "window_cap_reached"
        last = self.last_restart_at
        if last is not None and now - last < self.cooldown_seconds:
            return "cooldown"
        return None

    def record(self) -> None:
        self.timestamps.append(self.clock())


class ConnectionWatchdog:
    def __init__(
        self,
        provider: ChannelProvider,
        backend: BackendClient,
        policy: Optional[RestartPolicy] = None,
        *,
        auto_restart_on_stuck: bool = False,
        stuck_wait_seconds: float = 30.0,
        probe_timeout_seconds: float = 10.0,
        settle_seconds: float = 5.0,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.backend = backend
        self.policy = policy or RestartPolicy()
        self.auto_restart_on_stuck = auto_restart_on_stuck
        self.stuck_wait_seconds = stuck_wait_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self.settle_seconds = settle_seconds
        self._sleep = sleep_func

        self.poller: Optional["MessagePoller"] = None
        self.state = ConnectionState.DISCONNECTED
        self.readiness_source: Optional[ReadinessSource] = None
        self.restart_in_progress = False
        self.authenticated_at: Optional[float] = None
        self._stuck_restarted = False
        self._stuck_task: Optional[asyncio.Task] = None

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    def attach(self) -> None:
        self.provider.on("scan_required", self.on_scan_required)
        self.provider.on("authenticated", self.on_authenticated)
        self.provider.on("ready", self.on_ready)
        self.provider.on("auth_failure", self.on_auth_failure)
        self.provider.on("disconnected", self.on_disconnected)

    def _move(self, step, target: ConnectionState) -> None:
        try:
            self.state = step(self.state)
        except InvalidTransitionError as exc:
            logger.warning(f"Unexpected connection transition: {exc}")
            self.state = target

    def _cancel_stuck_timer(self) -> None:
        if self._stuck_task is not None and self._stuck_task is not asyncio.current_task():
            self._stuck_task.cancel()
        self._stuck_task = None

    def _stop_polling(self) -> None:
        if self.poller is not None:
            self.poller.stop()

    def _start_polling(self) -> None:
        if self.poller is not None:
            self.poller.start()

    async def _report(self, coro: Awaitable, what: str) -> None:
        try:
            await coro
        except Exception as exc:
            logger.error(f"Could not report {what} to backend: {exc}")

    async def on_scan_required(self, qr: Optional[str] = None) -> None:
        logger.info("Scan the QR code to log in")
        self._move(require_scan, ConnectionState.AWAITING_SCAN)
        self.readiness_source = None
        self._stop_polling()
        self.authenticated_at = None
        self._stuck_restarted = False
        self._cancel_stuck_timer()
        if qr:
            await self._report(self.backend.report_qr(qr), "QR code")

    async def on_authenticated(self) -> None:
        if self.is_ready:
            logger.debug("Authenticated event while ready, ignoring")
            return
        if self.authenticated_at is None:
            self.authenticated_at = time.monotonic()
        if self.state != ConnectionState.AUTHENTICATED:
            self._move(authenticate, ConnectionState.AUTHENTICATED)
        logger.info("Channel authenticated, waiting for ready")
        self._cancel_stuck_timer()
        self._stuck_task = background.spawn(self._stuck_timer(), name="watchdog-stuck-timer")

    async def _stuck_timer(self) -> None:
        await self._sleep(self.stuck_wait_seconds)
        await self.check_stuck()

    async def check_stuck(self) -> None:
        """Resolve an AUTHENTICATED session that never reported ready."""
        if self.is_ready:
            return
        state = None
        try:
            state = await self.provider.query_state()
        except Exception as exc:
            logger.debug(f"Could not query channel state: {exc}")

        waited = round(time.monotonic() - self.authenticated_at) if self.authenticated_at else None
        logger.warning(
            "Channel authenticated but not ready (possible stall)",
            extra={"context": {"state": state, "seconds": waited, "already_restarted": self._stuck_restarted}},
        )

        if state == GATEWAY_CONNECTED:
            try:
                chats = await asyncio.wait_for(self.provider.list_chats(limit=1), timeout=self.probe_timeout_seconds)
            except Exception as exc:
                logger.warning(f"Channel reports connected but liveness probe failed: {exc}")
            else:
                logger.info(
                    "Channel usable without ready event (ready inferred)",
                    extra={"context": {"chats": len(chats)}},
                )
                self._become_ready(ReadinessSource.INFERRED)
                await self._report(self.backend.report_ready(), "inferred ready")
                return

        if self._stuck_restarted:
            return
        if not self.auto_restart_on_stuck:
            logger.warning("Auto-restart on stall disabled, leaving session as is")
            return
        self._stuck_restarted = True
        await self.safe_restart("stuck_after_authenticated")

    def _become_ready(self, source: ReadinessSource) -> None:
        if source == ReadinessSource.INFERRED:
            self._move(infer_ready, ConnectionState.READY)
        elif self.state != ConnectionState.READY:
            self._move(mark_ready, ConnectionState.READY)
        self.readiness_source = source
        self.authenticated_at = None
        self._stuck_restarted = False
        self._cancel_stuck_timer()
        self._start_polling()

    async def on_ready(self) -> None:
        logger.info("Channel client ready")
        self._become_ready(ReadinessSource.SIGNAL)
        await self._report(self.backend.report_ready(), "ready")

    async def on_auth_failure(self, message: Optional[str] = None) -> None:
        logger.error("Channel authentication failed", extra={"context": {"message": message}})
        await self._report(self.backend.report_disconnected(message), "auth failure")
        await alert_critical("WhatsApp authentication failed, manual re-scan required", {"message": message})

    async def on_disconnected(self, reason: Optional[str] = None) -> None:
        logger.warning("Channel disconnected", extra={"context": {"reason": reason}})
        if self.state != ConnectionState.DISCONNECTED:
            self._move(disconnect, ConnectionState.DISCONNECTED)
        self.readiness_source = None
        self._cancel_stuck_timer()
        self._stop_polling()
        await self._report(self.backend.report_disconnected(reason), "disconnect")
        if self.restart_in_progress:
            logger.warning("Restart already in progress, skipping extra restart")
            return
        await self.safe_restart(reason or "disconnected")

    async def safe_restart(self, reason: str) -> bool:
        """Tear down and reconnect the channel if the restart policy allows it."""
        rejection = self.policy.rejection_reason()
        if rejection == "window_cap_reached":
            logger.error(
                "Too many restarts in window, not restarting automatically",
                extra={"context": {"reason": reason, "restarts_in_window": len(self.policy.timestamps)}},
            )
            await alert_warning(
                "WhatsApp restart cap reached, manual intervention needed",
                {"reason": reason, "restarts_in_window": len(self.policy.timestamps)},
            )
            return False
        if self.restart_in_progress:
            logger.warning(f"Restart already in progress, skipping ({reason})")
            return False
        if rejection == "cooldown":
            logger.warning(f"Restart in cooldown, skipping ({reason})")
            return False

        self.restart_in_progress = True
        self.policy.record()
        try:
            await self._sleep(self.settle_seconds)
            logger.warning(f"Restarting channel client ({reason})")
            try:
                await self.provider.disconnect()
            except Exception as exc:
                logger.warning(f"Could not tear down channel before restart: {exc}")
            if self.state != ConnectionState.DISCONNECTED:
                self._move(disconnect, ConnectionState.DISCONNECTED)
            self.readiness_source = None
            self._stop_polling()
            self.authenticated_at = None
            await self.provider.connect()
            logger.info(f"Channel restart started ({reason})")
            return True
        except Exception as exc:
            logger.error(f"Channel restart failed ({reason}): {exc}", exc_info=True)
            return False
        finally:
            self.restart_in_progress = False
