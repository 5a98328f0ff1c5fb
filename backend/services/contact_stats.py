"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Contact Stats Syncer                                              ║
║                                                                              ║
║  SEUL CE MODULE écrit contact.surveyStats                                    ║
║                                                                              ║
║  - invitedCount / lastInvitedDate: à la création des invites                 ║
║  - respondedCount, lastResponseDate, latest*, avg*, npsCategory: à la        ║
║    réponse (une seule fois par réponse, claim statsSyncedAt)                 ║
║  - compteurs par $inc atomique, moyennes par compare-and-set                 ║
║  - les réponses anonymes ne touchent jamais un contact                       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import List, Optional, Dict, Any
from pymongo import ReturnDocument

from config import db, now_iso
from services.scoring import nps_category

logger = logging.getLogger("contact_stats")

EMPTY_STATS = {
    "invitedCount": 0,
    "respondedCount": 0,
    "lastInvitedDate": None,
    "lastResponseDate": None,
    "latestNpsScore": None,
    "avgNpsScore": None,
    "latestRating": None,
    "avgRating": None,
    "npsCategory": None,
    "npsScoreSum": 0,
    "npsScoreCount": 0,
    "ratingSum": 0,
    "ratingCount": 0,
}


async def record_invited(tenant: str, contact_ids: List[str], invited_at: Optional[str] = None) -> int:
    """invitedCount += 1 and lastInvitedDate for every newly invited contact."""
    ids = [c for c in contact_ids if c]
    if not ids:
        return 0
    invited_at = invited_at or now_iso()
    result = await db.contacts.update_many(
        {"tenant": tenant, "id": {"$in": ids}},
        {"$inc": {"surveyStats.invitedCount": 1}},
    )
    # lastInvitedDate only moves forward
    await db.contacts.update_many(
        {
            "tenant": tenant,
            "id": {"$in": ids},
            "$or": [
                {"surveyStats.lastInvitedDate": None},
                {"surveyStats.lastInvitedDate": {"$lt": invited_at}},
            ],
        },
        {"$set": {"surveyStats.lastInvitedDate": invited_at}},
    )
    return result.modified_count


async def sync_response(response: Dict[str, Any]) -> bool:
    """
    Apply one submitted response to its contact's surveyStats.
    Returns True when the contact was updated.
    """
    contact_id = response.get("contact")
    if not contact_id or response.get("isAnonymous"):
        return False
    if response.get("status") != "submitted":
        return False

    # Claim: a response is counted at most once, whatever the retries
    claim = await db.survey_responses.update_one(
        {"id": response["id"], "statsSyncedAt": None},
        {"$set": {"statsSyncedAt": now_iso()}},
    )
    if claim.modified_count == 0:
        logger.info(f"[STATS] response={response['id']} already synced, skipped")
        return False

    tenant = response["tenant"]
    score = response.get("score")
    rating = response.get("rating")
    submitted_at = response.get("submittedAt") or now_iso()

    inc = {"surveyStats.respondedCount": 1}
    if score is not None:
        inc["surveyStats.npsScoreSum"] = score
        inc["surveyStats.npsScoreCount"] = 1
    if rating is not None:
        inc["surveyStats.ratingSum"] = rating
        inc["surveyStats.ratingCount"] = 1

    contact = await db.contacts.find_one_and_update(
        {"id": contact_id, "tenant": tenant},
        {"$inc": inc},
        projection={"_id": 0, "surveyStats": 1},
        return_document=ReturnDocument.AFTER,
    )
    if not contact:
        logger.warning(f"[STATS] contact={contact_id} not found in tenant={tenant}")
        return False

    # Latest values: only move forward in time
    latest = {"surveyStats.lastResponseDate": submitted_at}
    if score is not None:
        latest["surveyStats.latestNpsScore"] = score
        latest["surveyStats.npsCategory"] = nps_category(score)
    if rating is not None:
        latest["surveyStats.latestRating"] = rating
    await db.contacts.update_one(
        {
            "id": contact_id,
            "tenant": tenant,
            "$or": [
                {"surveyStats.lastResponseDate": None},
                {"surveyStats.lastResponseDate": {"$lte": submitted_at}},
            ],
        },
        {"$set": latest},
    )

    # Running means: compare-and-set on the counters we observed
    stats = contact.get("surveyStats") or {}
    averages = {}
    if stats.get("npsScoreCount"):
        averages["surveyStats.avgNpsScore"] = round(stats["npsScoreSum"] / stats["npsScoreCount"], 2)
    if stats.get("ratingCount"):
        averages["surveyStats.avgRating"] = round(stats["ratingSum"] / stats["ratingCount"], 2)
    if averages:
        cas = await db.contacts.update_one(
            {
                "id": contact_id,
                "tenant": tenant,
                "surveyStats.respondedCount": stats.get("respondedCount"),
            },
            {"$set": averages},
        )
        if cas.modified_count == 0:
            logger.info(f"[STATS] contact={contact_id} averages superseded by a concurrent response")

    logger.info(f"[STATS] contact={contact_id} response={response['id']} synced")
    return True


def compute_contact_stats(invites: List[Dict[str, Any]], responses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Authoritative surveyStats from a contact's invites and submitted responses."""
    stats = dict(EMPTY_STATS)
    stats["invitedCount"] = len(invites)
    invite_dates = [i.get("createdAt") for i in invites if i.get("createdAt")]
    stats["lastInvitedDate"] = max(invite_dates) if invite_dates else None

    ordered = sorted(responses, key=lambda r: r.get("submittedAt") or r.get("createdAt") or "")
    stats["respondedCount"] = len(ordered)
    if not ordered:
        return stats

    stats["lastResponseDate"] = ordered[-1].get("submittedAt") or ordered[-1].get("createdAt")
    scores = [r["score"] for r in ordered if r.get("score") is not None]
    ratings = [r["rating"] for r in ordered if r.get("rating") is not None]
    if scores:
        stats["npsScoreSum"] = sum(scores)
        stats["npsScoreCount"] = len(scores)
        stats["latestNpsScore"] = scores[-1]
        stats["avgNpsScore"] = round(sum(scores) / len(scores), 2)
        stats["npsCategory"] = nps_category(scores[-1])
    if ratings:
        stats["ratingSum"] = sum(ratings)
        stats["ratingCount"] = len(ratings)
        stats["latestRating"] = ratings[-1]
        stats["avgRating"] = round(sum(ratings) / len(ratings), 2)
    return stats


async def recalculate_contact_stats(tenant: Optional[str] = None) -> Dict[str, int]:
    """Reconciliation: rebuild surveyStats for every contact (of one tenant)."""
    query = {"tenant": tenant} if tenant else {}
    updated = 0
    cursor = db.contacts.find(query, {"_id": 0, "id": 1, "tenant": 1})
    async for contact in cursor:
        invites = await db.survey_invites.find(
            {"tenant": contact["tenant"], "contact": contact["id"]},
            {"_id": 0, "createdAt": 1}
        ).to_list(10000)
        responses = await db.survey_responses.find(
            {"tenant": contact["tenant"], "contact": contact["id"], "status": "submitted"},
            {"_id": 0, "score": 1, "rating": 1, "submittedAt": 1, "createdAt": 1}
        ).to_list(10000)
        await db.contacts.update_one(
            {"id": contact["id"]},
            {"$set": {"surveyStats": compute_contact_stats(invites, responses)}}
        )
        updated += 1
    logger.info(f"[RECONCILE] contact stats rebuilt: {updated}")
    return {"contacts": updated}
