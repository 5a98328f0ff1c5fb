"""
RatePro - Survey Aggregate Updater

Per-survey denormalized totals. Cached values, never authoritative:
reconcile_surveys() rebuilds them from survey_responses.
"""

import logging
from typing import Optional, Dict, Any, List

from config import db, now_iso
from services.analytics import calculate_nps

logger = logging.getLogger("survey_aggregates")


def compute_survey_analytics(responses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """npsScore and avgCompletionTime over the full response set."""
    scores = [r.get("score") for r in responses if r.get("score") is not None]
    times = [r.get("completionTime") for r in responses if r.get("completionTime")]
    return {
        "npsScore": calculate_nps(scores)["score"],
        "avgCompletionTime": round(sum(times) / len(times), 2) if times else 0,
        "updatedAt": now_iso(),
    }


async def _recompute_analytics(survey_id: str, tenant: str) -> Dict[str, Any]:
    responses = await db.survey_responses.find(
        {"survey": survey_id, "tenant": tenant, "status": "submitted"},
        {"_id": 0, "score": 1, "completionTime": 1}
    ).to_list(100000)
    analytics = compute_survey_analytics(responses)
    await db.surveys.update_one(
        {"id": survey_id, "tenant": tenant},
        {"$set": {"analytics": analytics}}
    )
    return analytics


async def apply_response(response: Dict[str, Any]) -> bool:
    """
    totalResponses += 1, lastResponseAt = max(submittedAt), analytics recompute.
    Claimed once per response via aggregatesUpdatedAt.
    """
    if response.get("status") != "submitted":
        return False

    claim = await db.survey_responses.update_one(
        {"id": response["id"], "aggregatesUpdatedAt": None},
        {"$set": {"aggregatesUpdatedAt": now_iso()}},
    )
    if claim.modified_count == 0:
        logger.info(f"[AGGREGATE] response={response['id']} already applied, skipped")
        return False

    survey_id = response["survey"]
    tenant = response["tenant"]
    submitted_at = response.get("submittedAt") or now_iso()

    result = await db.surveys.update_one(
        {"id": survey_id, "tenant": tenant},
        {"$inc": {"totalResponses": 1}},
    )
    if result.matched_count == 0:
        logger.warning(f"[AGGREGATE] survey={survey_id} not found for response={response['id']}")
        return False

    await db.surveys.update_one(
        {
            "id": survey_id,
            "tenant": tenant,
            "$or": [{"lastResponseAt": None}, {"lastResponseAt": {"$lt": submitted_at}}],
        },
        {"$set": {"lastResponseAt": submitted_at}},
    )

    await _recompute_analytics(survey_id, tenant)
    logger.info(f"[AGGREGATE] survey={survey_id} response={response['id']} applied")
    return True


async def reconcile_survey(survey: Dict[str, Any]) -> Dict[str, Any]:
    """Rebuild one survey's totals from the response collection."""
    query = {"survey": survey["id"], "tenant": survey["tenant"], "status": "submitted"}
    total = await db.survey_responses.count_documents(query)
    latest = await db.survey_responses.find(query, {"_id": 0, "submittedAt": 1}) \
        .sort("submittedAt", -1).limit(1).to_list(1)
    last_at = latest[0].get("submittedAt") if latest else None

    await db.surveys.update_one(
        {"id": survey["id"]},
        {"$set": {"totalResponses": total, "lastResponseAt": last_at}}
    )
    analytics = await _recompute_analytics(survey["id"], survey["tenant"])
    return {"survey": survey["id"], "totalResponses": total, "lastResponseAt": last_at, **analytics}


async def reconcile_surveys(tenant: Optional[str] = None) -> Dict[str, Any]:
    """Invariant-restoring batch: every survey (of one tenant)."""
    query = {"tenant": tenant} if tenant else {}
    count = 0
    drift = 0
    cursor = db.surveys.find(query, {"_id": 0, "id": 1, "tenant": 1, "totalResponses": 1})
    async for survey in cursor:
        before = survey.get("totalResponses") or 0
        result = await reconcile_survey(survey)
        if result["totalResponses"] != before:
            drift += 1
            logger.warning(
                f"[RECONCILE] survey={survey['id']} totalResponses {before} -> {result['totalResponses']}"
            )
        count += 1
    logger.info(f"[RECONCILE] surveys={count} corrected={drift}")
    return {"surveys": count, "corrected": drift}
