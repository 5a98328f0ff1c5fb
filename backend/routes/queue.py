"""
RatePro - Routes File d'attente (plateforme)
Statistiques, jobs, dead letters et re-soumission.
"""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone, timedelta
from typing import Optional

from config import db
from services.errors import NotFound, ValidationFailed
from services.event_logger import log_event
from services.job_queue import VALID_JOB_TRANSITIONS, DurableQueue, get_queue_stats, requeue_dead_letter, release_stale_jobs
from services.permissions import require_action

router = APIRouter(prefix="/queue", tags=["Queue"])

queue_admin = require_action("queue:manage")


@router.get("/stats")
async def queue_stats(user: dict = Depends(queue_admin)):
    stats = await get_queue_stats()

    # Stats 24h
    yesterday = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()
    stats["last_24h"] = {
        "added": await db.job_queue.count_documents({"created_at": {"$gte": yesterday}}),
        "completed": await db.job_queue.count_documents({"completed_at": {"$gte": yesterday}}),
        "dead_letters": await db.dead_letter_jobs.count_documents({"failedAt": {"$gte": yesterday}}),
    }
    return stats


@router.get("/items")
async def queue_items(status: Optional[str] = None, limit: int = 50, user: dict = Depends(queue_admin)):
    query = {}
    if status:
        if status not in VALID_JOB_TRANSITIONS:
            raise ValidationFailed(errors=[{"field": "status", "message": f"one of {list(VALID_JOB_TRANSITIONS)}"}])
        query["status"] = status
    items = await db.job_queue.find(query, {"_id": 0}).sort("created_at", -1).to_list(min(limit, 500))
    return {"items": items, "count": len(items)}


@router.post("/process")
async def queue_process(user: dict = Depends(queue_admin)):
    """Tick manuel du worker."""
    results = await DurableQueue().process_due_jobs()
    return {"success": True, "results": results}


@router.post("/release-stale")
async def queue_release_stale(minutes: int = 10, user: dict = Depends(queue_admin)):
    return {"success": True, "released": await release_stale_jobs(minutes)}


@router.get("/dead-letters")
async def dead_letters(include_requeued: bool = False, limit: int = 50, user: dict = Depends(queue_admin)):
    query = {} if include_requeued else {"requeuedAt": None}
    items = await db.dead_letter_jobs.find(query, {"_id": 0}).sort("failedAt", -1).to_list(min(limit, 500))
    return {"items": items, "count": len(items)}


@router.post("/dead-letters/{dead_letter_id}/requeue")
async def requeue(dead_letter_id: str, user: dict = Depends(queue_admin)):
    job_id = await requeue_dead_letter(dead_letter_id)
    if not job_id:
        raise NotFound("Dead letter not found or already requeued")
    await log_event("dead_letter_requeue", "job", dead_letter_id, user=user["id"], related={"jobId": job_id})
    return {"success": True, "jobId": job_id}
