"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Job Queue                                                         ║
║                                                                              ║
║  Deux implémentations, même contrat enqueue(name, payload, tenant):          ║
║  - DurableQueue: collection job_queue, worker APScheduler                    ║
║  - InlineQueue:  exécution en tâche de fond APRÈS la réponse HTTP            ║
║                                                                              ║
║  Retry: MAX_ATTEMPTS tentatives, backoff exponentiel 5s * 2^(n-1), max 300s  ║
║  Épuisé: copie dans dead_letter_jobs + fallback on_exhausted du handler      ║
║                                                                              ║
║  Statuts job_queue: pending -> processing -> completed | pending | failed    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import asyncio
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional, Callable, Awaitable
from pymongo import ReturnDocument

from config import db, now_iso
from services.config_resolver import is_queue_enabled
from services.event_logger import log_error

logger = logging.getLogger("job_queue")

MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 5
BACKOFF_CAP_SECONDS = 300
STALE_PROCESSING_MINUTES = 10

VALID_JOB_TRANSITIONS = {
    "pending": ["processing"],
    "processing": ["completed", "pending", "failed"],
    "completed": [],  # TERMINAL
    "failed": [],     # TERMINAL (copie en dead letter)
}

Handler = Callable[[Dict[str, Any], Dict[str, Any], "JobQueue"], Awaitable[Any]]
Fallback = Callable[[Dict[str, Any], Dict[str, Any], str], Awaitable[Any]]

_handlers: Dict[str, Handler] = {}
_fallbacks: Dict[str, Fallback] = {}


def register_handler(name: str, handler: Handler, on_exhausted: Optional[Fallback] = None):
    _handlers[name] = handler
    if on_exhausted:
        _fallbacks[name] = on_exhausted


def _load_handlers():
    # Import ici pour éviter les imports circulaires
    import services.post_response  # noqa: F401


def get_handler(name: str) -> Handler:
    if name not in _handlers:
        _load_handlers()
    handler = _handlers.get(name)
    if handler is None:
        raise KeyError(f"No handler registered for job '{name}'")
    return handler


def backoff_delay(attempt: int, base: float = BACKOFF_BASE_SECONDS, cap: float = BACKOFF_CAP_SECONDS) -> float:
    """Delay before the next try, attempt being the number of tries already made."""
    return min(cap, base * (2 ** max(0, attempt - 1)))


def _new_job(name: str, payload: Dict[str, Any], tenant: Optional[str], max_attempts: int) -> Dict[str, Any]:
    now = now_iso()
    return {
        "id": str(uuid.uuid4()),
        "name": name,
        "payload": payload,
        "tenant": tenant,
        "status": "pending",
        "attempts": 0,
        "max_attempts": max_attempts,
        "next_run_at": now,
        "dispatched_at": None,
        "last_error": None,
        "created_at": now,
    }


async def dead_letter(job: Dict[str, Any], error: str):
    """Persist an exhausted job and run its fallback."""
    await db.dead_letter_jobs.insert_one({
        "id": str(uuid.uuid4()),
        "originalJobId": job["id"],
        "name": job["name"],
        "tenant": job.get("tenant"),
        "data": job.get("payload"),
        "attempts": job.get("attempts"),
        "error": error,
        "failedAt": now_iso(),
    })
    logger.error(f"[DLQ] job={job['id']} name={job['name']} attempts={job.get('attempts')} error={error}")

    fallback = _fallbacks.get(job["name"])
    if fallback:
        try:
            await fallback(job.get("payload") or {}, job, error)
        except Exception as e:
            log_error("job_queue.dead_letter", f"fallback failed: {e}", {"job": job["id"]}, exc_info=True)


class JobQueue:
    """Queue contract."""

    kind = "base"

    async def enqueue(self, name: str, payload: Dict[str, Any], tenant: Optional[str] = None) -> str:
        raise NotImplementedError


# ════════════════════════════════════════════════════════════════════════
# DURABLE
# ════════════════════════════════════════════════════════════════════════

class DurableQueue(JobQueue):
    kind = "durable"

    def __init__(self, max_attempts: int = MAX_ATTEMPTS):
        self.max_attempts = max_attempts

    async def enqueue(self, name: str, payload: Dict[str, Any], tenant: Optional[str] = None) -> str:
        job = _new_job(name, payload, tenant, self.max_attempts)
        await db.job_queue.insert_one(dict(job))
        logger.info(f"[QUEUE] enqueued job={job['id']} name={name} tenant={tenant}")
        return job["id"]

    async def _claim(self) -> Optional[Dict[str, Any]]:
        now = now_iso()
        return await db.job_queue.find_one_and_update(
            {"status": "pending", "next_run_at": {"$lte": now}},
            {
                "$set": {"status": "processing", "started_at": now, "dispatched_at": now},
                "$inc": {"attempts": 1},
            },
            projection={"_id": 0},
            sort=[("next_run_at", 1)],
            return_document=ReturnDocument.AFTER,
        )

    async def process_due_jobs(self, limit: int = 20) -> Dict[str, int]:
        """Worker tick: claim and run up to `limit` due jobs."""
        stats = {"processed": 0, "completed": 0, "retried": 0, "failed": 0}
        for _ in range(limit):
            job = await self._claim()
            if not job:
                break
            stats["processed"] += 1
            try:
                await get_handler(job["name"])(job.get("payload") or {}, job, self)
            except Exception as e:
                outcome = await self._handle_failure(job, e)
                stats[outcome] += 1
                continue
            await db.job_queue.update_one(
                {"id": job["id"]},
                {"$set": {"status": "completed", "completed_at": now_iso(), "last_error": None}}
            )
            stats["completed"] += 1
        if stats["processed"]:
            logger.info(f"[QUEUE] tick {stats}")
        return stats

    async def _handle_failure(self, job: Dict[str, Any], error: Exception) -> str:
        message = f"{type(error).__name__}: {error}"
        attempts = job.get("attempts", 1)
        if attempts >= job.get("max_attempts", self.max_attempts):
            await db.job_queue.update_one(
                {"id": job["id"]},
                {"$set": {"status": "failed", "failed_at": now_iso(), "last_error": message}}
            )
            await dead_letter(job, message)
            return "failed"

        delay = backoff_delay(attempts)
        next_run = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()
        await db.job_queue.update_one(
            {"id": job["id"]},
            {"$set": {"status": "pending", "next_run_at": next_run, "last_error": message}}
        )
        logger.warning(f"[QUEUE] job={job['id']} attempt={attempts} failed, retry in {delay}s: {message}")
        return "retried"


async def release_stale_jobs(minutes: int = STALE_PROCESSING_MINUTES) -> int:
    """Jobs stuck in processing (worker crash) go back to pending."""
    cutoff = (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()
    result = await db.job_queue.update_many(
        {"status": "processing", "started_at": {"$lt": cutoff}},
        {"$set": {"status": "pending", "next_run_at": now_iso()}}
    )
    if result.modified_count:
        logger.warning(f"[QUEUE] released {result.modified_count} stale jobs")
    return result.modified_count


async def get_queue_stats() -> Dict[str, Any]:
    stats = {}
    for status in VALID_JOB_TRANSITIONS:
        stats[status] = await db.job_queue.count_documents({"status": status})
    stats["dead_letters"] = await db.dead_letter_jobs.count_documents({"requeuedAt": None})
    stats["total"] = sum(stats[s] for s in VALID_JOB_TRANSITIONS)
    return stats


async def requeue_dead_letter(dead_letter_id: str) -> Optional[str]:
    """Re-submit a dead letter as a fresh durable job."""
    entry = await db.dead_letter_jobs.find_one_and_update(
        {"id": dead_letter_id, "requeuedAt": None},
        {"$set": {"requeuedAt": now_iso()}},
        projection={"_id": 0},
    )
    if not entry:
        return None
    return await DurableQueue().enqueue(entry["name"], entry.get("data") or {}, entry.get("tenant"))


# ════════════════════════════════════════════════════════════════════════
# INLINE
# ════════════════════════════════════════════════════════════════════════

class InlineQueue(JobQueue):
    """
    Same handlers, no worker. Jobs are handed to `defer` (FastAPI
    BackgroundTasks.add_task in routes) so they run after the response
    is sent. Jobs enqueued from inside a running job run immediately.
    Never raises: failures end in the dead letter collection.
    """

    kind = "inline"

    def __init__(
        self,
        defer: Optional[Callable[..., Any]] = None,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._defer = defer or self._spawn
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._depth = 0
        self._tasks = set()

    def _spawn(self, fn, *args):
        task = asyncio.get_running_loop().create_task(fn(*args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def enqueue(self, name: str, payload: Dict[str, Any], tenant: Optional[str] = None) -> str:
        job = _new_job(name, payload, tenant, self.max_attempts)
        if self._depth > 0:
            await self.run(job)
        else:
            self._defer(self.run, job)
        return job["id"]

    async def run(self, job: Dict[str, Any]):
        self._depth += 1
        try:
            for attempt in range(1, job["max_attempts"] + 1):
                job["attempts"] = attempt
                job["dispatched_at"] = now_iso()
                try:
                    await get_handler(job["name"])(job.get("payload") or {}, job, self)
                    return
                except Exception as e:
                    message = f"{type(e).__name__}: {e}"
                    if attempt >= job["max_attempts"]:
                        await dead_letter(job, message)
                        return
                    delay = backoff_delay(attempt, base=self.base_delay)
                    logger.warning(f"[QUEUE] inline job={job['id']} attempt={attempt} failed, retry in {delay}s: {message}")
                    await self._sleep(delay)
        except Exception as e:
            log_error("job_queue.inline", str(e), {"job": job.get("id"), "name": job.get("name")}, exc_info=True)
        finally:
            self._depth -= 1


async def get_job_queue(background_tasks=None) -> JobQueue:
    """ENABLE_QUEUES=true -> durable; otherwise inline after the response."""
    if await is_queue_enabled():
        return DurableQueue()
    return InlineQueue(defer=background_tasks.add_task if background_tasks is not None else None)
