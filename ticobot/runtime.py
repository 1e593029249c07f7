"""Object graph of one bot process, built from settings."""

from typing import Optional

from ticobot.config import Settings, settings
from ticobot.logging_config import get_logger
from ticobot.services.admin_flows import AdminFlowRunner
from ticobot.services.admin_queue import AdminQueueProcessor, build_job_store
from ticobot.services.admin_service import AdminService
from ticobot.services.api_client import BackendClient
from ticobot.services.business_hours import BusinessHours
from ticobot.services.channel_provider import ChannelProvider, GatewayChannelProvider
from ticobot.services.chat_cleanup import ChatCleaner
from ticobot.services.inbound_service import InboundPipeline
from ticobot.services.menu_service import MenuResolver
from ticobot.services.notifier import OperatorNotifier
from ticobot.services.orchestrator import ConversationOrchestrator
from ticobot.services.payment_service import PaymentApplier
from ticobot.services.phone import OperatorDirectory
from ticobot.services.polling_service import MessagePoller
from ticobot.services.processed_cache import ProcessedMessageCache
from ticobot.services.receipt_service import ReceiptIntake, ReceiptStore
from ticobot.services.reminder_service import ReminderScheduler
from ticobot.services.session_state import SessionStore
from ticobot.services.settings_sync import BillingProfile
from ticobot.services.watchdog import ConnectionWatchdog

logger = get_logger("runtime")


class BotRuntime:
    def __init__(
        self,
        config: Settings,
        backend: Optional[BackendClient] = None,
        provider: Optional[ChannelProvider] = None,
    ):
        self.config = config
        country_code = config.default_country_code

        self.backend = backend or BackendClient(config.api_base_url, config.api_token)
        self.provider = provider or GatewayChannelProvider(config.gateway_url, config.gateway_token)
        self.hours = BusinessHours(config.business_hours, config.timezone)
        self.profile = BillingProfile.from_settings(config)
        self.operators = OperatorDirectory(config.admin_phones, country_code)
        self.cache = ProcessedMessageCache()

        self.watchdog = ConnectionWatchdog(
            self.provider,
            self.backend,
            auto_restart_on_stuck=config.auto_restart_on_stuck,
        )
        self.poller = MessagePoller(
            self.provider,
            self.cache,
            is_ready=lambda: self.watchdog.is_ready,
            on_repeated_failure=self.watchdog.safe_restart,
            enabled=config.enable_message_polling,
            mark_read=config.mark_messages_read,
            idle_seconds=config.message_poll_idle_ms / 1000,
            active_seconds=config.message_poll_active_ms / 1000,
            max_chats=config.message_poll_max_chats,
            max_per_chat=config.message_poll_max_per_chat,
        )
        self.watchdog.poller = self.poller

        self.scheduler = ReminderScheduler(
            self.backend,
            self.provider,
            self.profile,
            self.hours,
            look_ahead_minutes=config.look_ahead_minutes,
            max_batch=config.max_batch,
            country_code=country_code,
            resend_hour=config.resend_hour,
            is_ready=lambda: self.watchdog.is_ready,
        )

        self.sessions = SessionStore(
            default_timeout_seconds=config.bot_timeout_ms / 1000,
            retain_seconds=max(config.agent_notify_throttle_ms / 1000, 1800.0),
        )
        self.receipts = ReceiptStore(config.data_dir)
        self.notifier = OperatorNotifier(
            self.provider,
            self.operators,
            self.hours,
            throttle_seconds=config.agent_notify_throttle_ms / 1000,
        )
        self.cleaner = ChatCleaner(self.provider, self.backend, self.operators)
        self.flows = AdminFlowRunner(self.backend, self.cleaner, country_code=country_code)
        self.admin = AdminService(self.backend, self.flows, self.scheduler, self.hours, country_code=country_code)
        self.menus = MenuResolver(
            self.backend,
            data_dir=config.data_dir,
            menu_path=config.menu_path,
            ttl_seconds=config.menu_cache_ttl_ms / 1000,
        )
        self.orchestrator = ConversationOrchestrator(
            self.provider,
            self.backend,
            self.sessions,
            self.operators,
            self.hours,
            self.menus,
            self.admin,
            self.flows,
            ReceiptIntake(self.backend, self.receipts),
            PaymentApplier(
                self.backend,
                self.receipts,
                self.notifier,
                retry_delay_seconds=config.payment_retry_delay_ms / 1000,
            ),
            self.notifier,
            company_name=config.company_name,
            country_code=country_code,
            receipt_timeout_seconds=config.receipt_timeout_ms / 1000,
            agent_timeout_seconds=config.agent_timeout_ms / 1000,
        )
        self.inbound = InboundPipeline(
            self.cache,
            self.poller,
            self.orchestrator.handle,
            log_sample_rate=config.inbound_log_sample_rate,
            slow_message_ms=config.slow_message_ms,
        )
        self.admin_queue = AdminQueueProcessor(
            build_job_store(config.admin_queue_backend, data_dir=config.data_dir, redis_url=config.redis_url),
            self.provider,
            self.scheduler,
            state_func=self.state,
            country_code=country_code,
        )
        self._wired = False

    def wire(self) -> None:
        """Attach lifecycle and inbound handlers to the provider; idempotent."""
        if self._wired:
            return
        self._wired = True
        self.watchdog.attach()
        self.provider.on("inbound_message", self.inbound.on_live_message)
        self.poller.register_handler(self.orchestrator.handle)

    async def state(self) -> dict:
        provider_state = None
        try:
            provider_state = await self.provider.query_state()
        except Exception as exc:
            logger.debug(f"Could not query provider state: {exc}")
        return {
            "state": provider_state,
            "connection": self.watchdog.state.value,
            "is_ready": self.watchdog.is_ready,
            "readiness_source": self.watchdog.readiness_source.value if self.watchdog.readiness_source else None,
            "restart_in_progress": self.watchdog.restart_in_progress,
            "restarts_in_window": len(self.watchdog.policy.timestamps),
            "polling": self.poller.running,
            "sessions": len(self.sessions),
            "processed_cache": len(self.cache),
        }


_runtime: Optional[BotRuntime] = None


def get_runtime() -> BotRuntime:
    global _runtime
    if _runtime is None:
        _runtime = BotRuntime(settings)
    return _runtime


def set_runtime(runtime: Optional[BotRuntime]) -> None:
    global _runtime
    _runtime = runtime
