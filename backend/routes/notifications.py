"""
RatePro - Routes Notifications
Boîte de réception de l'utilisateur courant + envoi groupé (admins).
"""

from collections import defaultdict
from fastapi import APIRouter, Depends
from typing import Optional

from config import db
from models.notification import BatchNotificationCreate
from routes.auth import get_current_user
from services import notifications as notification_service
from services.errors import ValidationFailed
from services.event_logger import log_event
from services.permissions import ADMIN, require_action

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("")
async def list_notifications(
    status: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
    user: dict = Depends(get_current_user)
):
    return await notification_service.list_notifications(user, status, min(limit, 200), skip)


@router.get("/unread-count")
async def unread_count(user: dict = Depends(get_current_user)):
    return {"count": await notification_service.unread_count(user)}


@router.put("/read-all")
async def mark_all_read(user: dict = Depends(get_current_user)):
    return {"success": True, "updated": await notification_service.mark_all_read(user)}


@router.put("/{notification_id}/read")
async def mark_read(notification_id: str, user: dict = Depends(get_current_user)):
    return await notification_service.mark_read(user, notification_id)


@router.put("/{notification_id}/archive")
async def archive(notification_id: str, user: dict = Depends(get_current_user)):
    return await notification_service.archive(user, notification_id)


@router.delete("/{notification_id}")
async def delete_notification(notification_id: str, user: dict = Depends(get_current_user)):
    await notification_service.delete_notification(user, notification_id)
    return {"success": True}


@router.post("/batch", status_code=201)
async def create_batch(data: BatchNotificationCreate, user: dict = Depends(require_action("notification:create"))):
    """
    Envoi groupé. Un companyAdmin ne cible que son tenant; les ids hors
    tenant sont ignorés.
    """
    if not data.userIds:
        raise ValidationFailed(errors=[{"field": "userIds", "message": "at least one user required"}])

    query = {"id": {"$in": list(dict.fromkeys(data.userIds))}, "isActive": {"$ne": False}}
    if user.get("role") != ADMIN:
        query["tenant"] = user["tenant"]
    targets = await db.users.find(query, {"_id": 0, "id": 1, "tenant": 1}).to_list(len(data.userIds))

    by_tenant = defaultdict(list)
    for target in targets:
        by_tenant[target.get("tenant")].append(target["id"])

    created = 0
    for tenant, user_ids in by_tenant.items():
        created += await notification_service.create_batch(
            user_ids, tenant, data.title, data.message,
            type=data.type,
            priority=data.priority,
            reference=data.reference.model_dump() if data.reference else None,
            action_url=data.actionUrl,
            metadata=data.metadata,
            expires_at=data.expiresAt,
            source="manual",
        )

    await log_event("notification_batch", "notification", None, user=user["id"], tenant=user.get("tenant"),
                    details={"requested": len(data.userIds), "created": created})
    return {"success": True, "created": created, "skipped": len(set(data.userIds)) - created}
