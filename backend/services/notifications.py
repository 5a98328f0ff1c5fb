"""
RatePro - Notifications

In-app notifications per user, urgent action alerts and the
repeated-complaint alert. Urgent alerts honour the tenant feature flag
`notifications` (on unless explicitly disabled).
"""

import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional, List

from config import db, now_iso
from services.errors import NotFound, ValidationFailed, ConfigMissing
from models.notification import NOTIFICATION_TYPES, NOTIFICATION_PRIORITIES, NOTIFICATION_STATUSES

logger = logging.getLogger("notifications")

CLEANUP_AFTER_DAYS = 90
REPEATED_COMPLAINT_THRESHOLD = 3
REPEATED_COMPLAINT_WINDOW_HOURS = 24


def _notification(user_id: str, tenant: Optional[str], title: str, message: str, type: str = "info",
                  priority: str = "medium", reference: Optional[Dict[str, str]] = None,
                  action_url: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
                  expires_at: Optional[str] = None, source: str = "system") -> Dict[str, Any]:
    if type not in NOTIFICATION_TYPES:
        raise ValidationFailed(errors=[{"field": "type", "message": f"must be one of {NOTIFICATION_TYPES}"}])
    if priority not in NOTIFICATION_PRIORITIES:
        raise ValidationFailed(errors=[{"field": "priority", "message": f"must be one of {NOTIFICATION_PRIORITIES}"}])
    return {
        "id": str(uuid.uuid4()),
        "user": user_id,
        "tenant": tenant,
        "title": title,
        "message": message,
        "type": type,
        "priority": priority,
        "status": "unread",
        "reference": reference,
        "actionUrl": action_url,
        "metadata": metadata or {},
        "source": source,
        "expiresAt": expires_at,
        "readAt": None,
        "createdAt": now_iso(),
    }


async def create_notification(user_id: str, tenant: Optional[str], title: str, message: str, **kwargs) -> Dict[str, Any]:
    doc = _notification(user_id, tenant, title, message, **kwargs)
    await db.notifications.insert_one(dict(doc))
    return doc


async def create_batch(user_ids: List[str], tenant: Optional[str], title: str, message: str, **kwargs) -> int:
    """One notification per distinct user id."""
    docs = [_notification(uid, tenant, title, message, **kwargs) for uid in dict.fromkeys(user_ids)]
    if docs:
        await db.notifications.insert_many(docs)
    return len(docs)


async def notifications_enabled(tenant: Optional[str]) -> bool:
    if not tenant:
        return True
    doc = await db.tenants.find_one({"id": tenant}, {"_id": 0, "featureFlags": 1})
    flags = (doc or {}).get("featureFlags") or {}
    return flags.get("notifications", True) is not False


async def tenant_admin_ids(tenant: str) -> List[str]:
    admins = await db.users.find(
        {"tenant": tenant, "role": "companyAdmin", "isActive": {"$ne": False}},
        {"_id": 0, "id": 1}
    ).to_list(100)
    return [u["id"] for u in admins]


async def notify_urgent_action(action: Dict[str, Any], send_email: bool = True) -> List[str]:
    """Notify the assignee (else the tenant's companyAdmins) of a high priority action."""
    tenant = action.get("tenant")
    if not await notifications_enabled(tenant):
        logger.info(f"[NOTIFY] notifications disabled for tenant={tenant}")
        return []

    recipients = [action["assignedTo"]] if action.get("assignedTo") else await tenant_admin_ids(tenant)
    if not recipients:
        return []

    await create_batch(
        recipients,
        tenant,
        f"Urgent action: {action.get('title', '')}",
        action.get("description") or "A high priority action was created from customer feedback.",
        type="action",
        priority="urgent" if action.get("priority") == "high" else "high",
        reference={"type": "Action", "id": action["id"]},
        action_url=f"/actions/{action['id']}",
        metadata={"surveyId": (action.get("metadata") or {}).get("surveyId")},
    )
    logger.info(f"[NOTIFY] urgent action={action['id']} recipients={len(recipients)}")

    if send_email:
        await _email_recipients(recipients, action)
    return recipients


async def _email_recipients(user_ids: List[str], action: Dict[str, Any]):
    from email_service import email_service

    users = await db.users.find({"id": {"$in": user_ids}}, {"_id": 0, "email": 1}).to_list(len(user_ids))
    for user in users:
        if not user.get("email"):
            continue
        try:
            await email_service.send_urgent_action(user["email"], action)
        except ConfigMissing:
            logger.warning("[NOTIFY] SENDGRID_API_KEY not configured, urgent email skipped")
            return


async def check_repeated_complaints(survey_id: str, tenant: str) -> bool:
    """
    >= 3 flagged complaints on the survey within 24h alerts the companyAdmins,
    at most once per survey per window.
    """
    since = (datetime.now(timezone.utc) - timedelta(hours=REPEATED_COMPLAINT_WINDOW_HOURS)).isoformat()
    count = await db.survey_responses.count_documents({
        "tenant": tenant,
        "survey": survey_id,
        "createdAt": {"$gte": since},
        "analysis.flaggedForReview": True,
        "analysis.classification.isComplaint": True,
    })
    if count < REPEATED_COMPLAINT_THRESHOLD:
        return False

    already = await db.notifications.find_one({
        "tenant": tenant,
        "metadata.kind": "repeated_complaints",
        "metadata.surveyId": survey_id,
        "createdAt": {"$gte": since},
    })
    if already or not await notifications_enabled(tenant):
        return False

    admins = await tenant_admin_ids(tenant)
    if not admins:
        return False
    survey = await db.surveys.find_one({"id": survey_id, "tenant": tenant}, {"_id": 0, "title": 1}) or {}
    await create_batch(
        admins,
        tenant,
        "Repeated complaints",
        f"{count} complaints in the last 24 hours on '{survey.get('title', survey_id)}'",
        type="alert",
        priority="high",
        reference={"type": "Survey", "id": survey_id},
        metadata={"kind": "repeated_complaints", "surveyId": survey_id, "count": count},
    )
    logger.warning(f"[NOTIFY] repeated complaints survey={survey_id} count={count}")
    return True


# ════════════════════════════════════════════════════════════════════════
# USER OPERATIONS
# ════════════════════════════════════════════════════════════════════════

def _visible(user: dict) -> Dict[str, Any]:
    return {
        "user": user["id"],
        "$or": [{"expiresAt": None}, {"expiresAt": {"$gt": now_iso()}}],
    }


async def list_notifications(user: dict, status: Optional[str] = None, limit: int = 50, skip: int = 0) -> Dict[str, Any]:
    query = _visible(user)
    if status:
        if status not in NOTIFICATION_STATUSES:
            raise ValidationFailed(errors=[{"field": "status", "message": f"must be one of {NOTIFICATION_STATUSES}"}])
        query["status"] = status
    else:
        query["status"] = {"$ne": "archived"}
    total = await db.notifications.count_documents(query)
    items = await db.notifications.find(query, {"_id": 0}).sort("createdAt", -1).skip(skip).to_list(limit)
    return {"notifications": items, "total": total}


async def unread_count(user: dict) -> int:
    return await db.notifications.count_documents({**_visible(user), "status": "unread"})


async def _set_status(user: dict, notification_id: str, status: str) -> Dict[str, Any]:
    update = {"status": status}
    if status == "read":
        update["readAt"] = now_iso()
    result = await db.notifications.update_one({"id": notification_id, "user": user["id"]}, {"$set": update})
    if not result.matched_count:
        raise NotFound("Notification not found")
    return {"id": notification_id, "status": status}


async def mark_read(user: dict, notification_id: str):
    return await _set_status(user, notification_id, "read")


async def archive(user: dict, notification_id: str):
    return await _set_status(user, notification_id, "archived")


async def mark_all_read(user: dict) -> int:
    result = await db.notifications.update_many(
        {"user": user["id"], "status": "unread"},
        {"$set": {"status": "read", "readAt": now_iso()}}
    )
    return result.modified_count


async def delete_notification(user: dict, notification_id: str):
    result = await db.notifications.delete_one({"id": notification_id, "user": user["id"]})
    if not result.deleted_count:
        raise NotFound("Notification not found")


async def cleanup_old_notifications(days: int = CLEANUP_AFTER_DAYS) -> int:
    """Drop read/archived notifications older than `days`, and expired ones."""
    cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    result = await db.notifications.delete_many({
        "$or": [
            {"status": {"$in": ["read", "archived"]}, "createdAt": {"$lt": cutoff}},
            {"expiresAt": {"$ne": None, "$lt": now_iso()}},
        ]
    })
    if result.deleted_count:
        logger.info(f"[NOTIFY] cleanup removed {result.deleted_count} notifications")
    return result.deleted_count
