import asyncio
import os

from fastapi import FastAPI

from ticobot.config import settings
from ticobot.logging_config import get_logger, setup_logging
from ticobot.routers import callback, channel_events, debug, reminders
from ticobot.runtime import get_runtime
from ticobot.services import background
from ticobot.services.settings_sync import refresh_settings

setup_logging(settings.log_level, settings.log_format)

app = FastAPI(
    title="ticobot",
    description="WhatsApp billing assistant: payment reminders, receipts and operator tools",
    version="0.1.0",
)

app.include_router(channel_events.router)
app.include_router(callback.router)
app.include_router(reminders.router)
app.include_router(debug.router)

logger = get_logger("main")
scheduler_logger = get_logger("scheduler_worker")
admin_queue_logger = get_logger("admin_queue_worker")
settings_logger = get_logger("settings_worker")

_scheduler_task: asyncio.Task | None = None
_admin_queue_task: asyncio.Task | None = None
_settings_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_worker_enabled(env_name: str) -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get(env_name), default=True)


def _is_scheduler_enabled() -> bool:
    return _is_worker_enabled("BOT_SCHEDULER_ENABLED")


def _is_admin_queue_enabled() -> bool:
    return _is_worker_enabled("BOT_ADMIN_QUEUE_ENABLED")


def _is_settings_sync_enabled() -> bool:
    return _is_worker_enabled("BOT_SETTINGS_SYNC_ENABLED")


async def _scheduler_loop() -> None:
    runtime = get_runtime()
    interval_seconds = settings.poll_interval_seconds
    while True:
        try:
            summary = await runtime.scheduler.run_batch()
            if summary.total:
                scheduler_logger.info(
                    "Scheduler cycle finished",
                    extra={"context": {"total": summary.total, "sent": summary.sent, "failed": summary.failed}},
                )
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            scheduler_logger.error(
                "Scheduler loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.sleep(interval_seconds)


async def _admin_queue_loop() -> None:
    runtime = get_runtime()
    interval_seconds = settings.admin_queue_interval_ms / 1000
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await runtime.admin_queue.process_once()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            admin_queue_logger.error(
                "Admin queue loop failed",
                extra={"context": {"error": str(exc)}},
            )


async def _settings_loop() -> None:
    runtime = get_runtime()
    interval_seconds = settings.settings_poll_ms / 1000
    while True:
        try:
            changed = await refresh_settings(runtime.backend, runtime.profile, runtime.hours)
            if changed:
                settings_logger.info("Remote settings applied", extra={"context": {"changed": changed}})
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            settings_logger.error(
                "Settings sync loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.sleep(interval_seconds)


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@app.on_event("startup")
async def start_bot() -> None:
    global _scheduler_task, _admin_queue_task, _settings_task
    runtime = get_runtime()
    runtime.wire()
    if _is_worker_enabled("BOT_CHANNEL_CONNECT_ENABLED"):
        try:
            await runtime.provider.connect()
        except Exception as exc:
            logger.error("Channel connect failed", extra={"context": {"error": str(exc)}})

    if _is_scheduler_enabled() and (_scheduler_task is None or _scheduler_task.done()):
        _scheduler_task = asyncio.create_task(_scheduler_loop())
        scheduler_logger.info(
            "Scheduler started",
            extra={"context": {"interval_seconds": settings.poll_interval_seconds}},
        )
    if _is_admin_queue_enabled() and (_admin_queue_task is None or _admin_queue_task.done()):
        _admin_queue_task = asyncio.create_task(_admin_queue_loop())
        admin_queue_logger.info(
            "Admin queue worker started",
            extra={"context": {"backend": settings.admin_queue_backend}},
        )
    if _is_settings_sync_enabled() and (_settings_task is None or _settings_task.done()):
        _settings_task = asyncio.create_task(_settings_loop())
        settings_logger.info("Settings sync started")


@app.on_event("shutdown")
async def stop_bot() -> None:
    global _scheduler_task, _admin_queue_task, _settings_task
    for task in (_scheduler_task, _admin_queue_task, _settings_task):
        await _cancel(task)
    _scheduler_task = _admin_queue_task = _settings_task = None

    runtime = get_runtime()
    runtime.poller.stop()
    runtime.sessions.close()
    await background.cancel_all()
    close = getattr(runtime.admin_queue.store, "close", None)
    if close is not None:
        await close()
    try:
        await runtime.provider.disconnect()
    except Exception as exc:
        logger.warning("Channel disconnect failed", extra={"context": {"error": str(exc)}})


@app.get("/health")
async def health():
    return {"status": "ok"}
