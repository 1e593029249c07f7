"""Side-channel job queue for local administration (ping, test sends, scheduler runs).

Jobs are dicts ``{id, type, phone?, text?}``; each one is executed once and
its result stored under its id. The queue lives either in two JSON files
under the data directory or in Redis.
"""

import json
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis_async
from pydantic import ValidationError

from ticobot.logging_config import get_logger
from ticobot.schemas.admin_job import AdminJob
from ticobot.services.channel_provider import ChannelProvider
from ticobot.services.phone import normalize_to_chat_id
from ticobot.services.reminder_service import ReminderScheduler

logger = get_logger("admin_queue")

REDIS_QUEUE_KEY = "ticobot:admin:queue"
REDIS_RESULTS_KEY = "ticobot:admin:results"


class AdminJobStore(ABC):
    @abstractmethod
    async def fetch(self) -> list[dict]: ...

    @abstractmethod
    async def get_result(self, job_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def put_result(self, job_id: str, result: dict) -> None: ...

    @abstractmethod
    async def ack(self, count: int) -> None:
        """Drop the first ``count`` jobs returned by the last fetch."""

    @abstractmethod
    async def enqueue(self, job: dict) -> None: ...


class FileJobStore(AdminJobStore):
    def __init__(self, data_dir: str = "data"):
        self.queue_path = Path(data_dir) / "admin_queue.json"
        self.results_path = Path(data_dir) / "admin_results.json"

    @staticmethod
    def _load(path: Path, fallback: Any) -> Any:
        try:
            data = json.loads(path.read_text(encoding="utf-8") or "null")
        except FileNotFoundError:
            return fallback
        except (OSError, ValueError) as exc:
            logger.warning(f"Could not read {path.name}: {exc}")
            return fallback
        return fallback if data is None else data

    @staticmethod
    def _save(path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False, default=str), encoding="utf-8")

    async def fetch(self) -> list[dict]:
        queue = self._load(self.queue_path, {"queue": []})
        return list(queue.get("queue") or []) if isinstance(queue, dict) else []

    async def get_result(self, job_id: str) -> Optional[dict]:
        return self._load(self.results_path, {}).get(job_id)

    async def put_result(self, job_id: str, result: dict) -> None:
        results = self._load(self.results_path, {})
        results[job_id] = result
        self._save(self.results_path, results)

    async def ack(self, count: int) -> None:
        jobs = await self.fetch()
        self._save(self.queue_path, {"queue": jobs[count:]})

    async def enqueue(self, job: dict) -> None:
        jobs = await self.fetch()
        jobs.append(job)
        self._save(self.queue_path, {"queue": jobs})


class RedisJobStore(AdminJobStore):
    def __init__(self, redis_url: str, socket_timeout_seconds: float = 2.0, client=None):
        self._client = client or redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )

    async def fetch(self) -> list[dict]:
        jobs = []
        for raw in await self._client.lrange(REDIS_QUEUE_KEY, 0, -1):
            try:
                jobs.append(json.loads(raw))
            except ValueError:
                logger.warning("Dropping malformed admin job from Redis")
                jobs.append(None)
        return jobs

    async def get_result(self, job_id: str) -> Optional[dict]:
        raw = await self._client.hget(REDIS_RESULTS_KEY, job_id)
        return json.loads(raw) if raw else None

    async def put_result(self, job_id: str, result: dict) -> None:
        await self._client.hset(REDIS_RESULTS_KEY, job_id, json.dumps(result, ensure_ascii=False, default=str))

    async def ack(self, count: int) -> None:
        if count > 0:
            await self._client.ltrim(REDIS_QUEUE_KEY, count, -1)

    async def enqueue(self, job: dict) -> None:
        await self._client.rpush(REDIS_QUEUE_KEY, json.dumps(job, ensure_ascii=False))

    async def close(self) -> None:
        await self._client.aclose()


def build_job_store(backend: str, *, data_dir: str, redis_url: str) -> AdminJobStore:
    if backend == "redis":
        return RedisJobStore(redis_url)
    return FileJobStore(data_dir)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class AdminQueueProcessor:
    def __init__(
        self,
        store: AdminJobStore,
        provider: ChannelProvider,
        scheduler: ReminderScheduler,
        *,
        state_func: Callable[[], Awaitable[dict]],
        country_code: str = "506",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.provider = provider
        self.scheduler = scheduler
        self.state_func = state_func
        self.country_code = country_code
        self._clock = clock
        self._started_at = clock()
        self._running = False

    async def process_once(self) -> int:
        """Execute every queued job without a result; returns how many ran."""
        if self._running:
            return 0
        self._running = True
        executed = 0
        try:
            jobs = await self.store.fetch()
            for raw in jobs:
                if not isinstance(raw, dict) or not raw.get("id") or not raw.get("type"):
                    continue
                job_id = str(raw["id"])
                if await self.store.get_result(job_id):
                    continue
                result = await self.execute(raw)
                await self.store.put_result(job_id, result)
                executed += 1
                logger.info(
                    "Admin job executed",
                    extra={"context": {"job_id": job_id, "type": raw.get("type"), "ok": result.get("ok")}},
                )
            await self.store.ack(len(jobs))
        finally:
            self._running = False
        return executed

    async def execute(self, raw: dict) -> dict:
        try:
            job = AdminJob.model_validate({**raw, "id": str(raw.get("id"))})
        except ValidationError:
            return {"ok": False, "error": "tipo no soportado"}

        if job.type == "ping":
            return {"ok": True, "time": _utcnow(), "uptime_sec": int(self._clock() - self._started_at)}
        try:
            if job.type == "sendText":
                chat_id = normalize_to_chat_id(job.phone, self.country_code)
                if not chat_id:
                    raise ValueError("phone inválido")
                await self.provider.send_text(chat_id, (job.text or "").strip() or "Mensaje de prueba")
                return {"ok": True, "sent": True}
            if job.type == "runScheduler":
                await self.scheduler.run_batch()
                return {"ok": True, "ran": True, "time": _utcnow()}
            return {"ok": True, **(await self.state_func())}
        except Exception as exc:
            logger.warning(f"Admin job failed: {exc}", extra={"context": {"job_id": job.id, "type": job.type}})
            return {"ok": False, "error": str(exc)}
