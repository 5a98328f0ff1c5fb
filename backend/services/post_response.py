"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Post-response chain (handlers de la job queue)                    ║
║                                                                              ║
║  process-response:                                                           ║
║    enrichment -> (contact stats ∥ survey aggregates)                         ║
║    -> generate-action si flagged -> check plaintes répétées                  ║
║  generate-action:                                                            ║
║    action idempotente par responseId -> notification si priorité high       ║
║                                                                              ║
║  Épuisement (DLQ): analyse neutre par défaut, puis stats et agrégats         ║
║  pour que la réponse reste exploitable.                                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import logging
from typing import Dict, Any, Optional

from config import db, now_iso
from services import contact_stats, survey_aggregates, actions, notifications
from services.enrichment import enrich_response, write_fallback_analysis
from services.job_queue import register_handler

logger = logging.getLogger("post_response")

PROCESS_RESPONSE = "process-response"
GENERATE_ACTION = "generate-action"


async def _load_response(response_id: str, tenant: Optional[str]) -> Optional[Dict[str, Any]]:
    # Jobs carry the tenant: never write outside it
    if not tenant:
        logger.error(f"[JOB] response={response_id} job without tenant, dropped")
        return None
    return await db.survey_responses.find_one({"id": response_id, "tenant": tenant}, {"_id": 0})


async def _sync_derived(response: Dict[str, Any]):
    await asyncio.gather(
        contact_stats.sync_response(response),
        survey_aggregates.apply_response(response),
    )


async def process_response(payload: Dict[str, Any], job: Dict[str, Any], queue):
    response_id = payload["responseId"]
    tenant = job.get("tenant")
    if await _load_response(response_id, tenant) is None:
        return

    analysis = await enrich_response(response_id, tenant, job.get("dispatched_at"))
    if analysis is None:
        return

    response = await _load_response(response_id, tenant)
    await _sync_derived(response)

    if analysis.get("flaggedForReview"):
        await queue.enqueue(GENERATE_ACTION, {"responseId": response_id}, tenant)
        if (analysis.get("classification") or {}).get("isComplaint"):
            await notifications.check_repeated_complaints(response["survey"], tenant)


async def process_response_exhausted(payload: Dict[str, Any], job: Dict[str, Any], error: str):
    response_id = payload["responseId"]
    tenant = job.get("tenant")
    analysis = await write_fallback_analysis(response_id, tenant) if tenant else None
    if analysis is None:
        return
    response = await _load_response(response_id, tenant)
    await _sync_derived(response)
    if analysis.get("flaggedForReview"):
        await generate_action(payload, job, None)


async def generate_action(payload: Dict[str, Any], job: Dict[str, Any], queue):
    tenant = job.get("tenant")
    if not tenant:
        return
    action = await actions.generate_action_for_response(payload["responseId"], tenant)
    if not action or action.get("priority") != "high":
        return
    claim = await db.actions.update_one(
        {"id": action["id"], "notifiedAt": None},
        {"$set": {"notifiedAt": now_iso()}},
    )
    if claim.modified_count:
        await notifications.notify_urgent_action(action)


register_handler(PROCESS_RESPONSE, process_response, on_exhausted=process_response_exhausted)
register_handler(GENERATE_ACTION, generate_action)
