"""
RatePro - Routes System Config (plateforme)
Lecture masquée, upsert des clés whitelistées, reset vers env/défaut,
email de test.
"""

from fastapi import APIRouter, Depends

from email_service import email_service
from models.system_config import ConfigUpsert, TestEmailRequest
from services import config_resolver
from services.errors import ValidationFailed
from services.event_logger import log_event
from services.permissions import require_action
from services.rate_limit import rate_limit

router = APIRouter(prefix="/system-config", tags=["System Config"])

config_admin = require_action("config:manage")


@router.get("")
async def list_configs(user: dict = Depends(config_admin)):
    return {"configs": await config_resolver.list_configs(), "categories": config_resolver.CATEGORIES}


@router.get("/category/{category}")
async def list_category(category: str, user: dict = Depends(config_admin)):
    return {"category": category, "configs": await config_resolver.list_configs(category)}


@router.put("/{key}")
async def upsert_config(key: str, data: ConfigUpsert, user: dict = Depends(config_admin)):
    """La valeur n'est jamais renvoyée en clair pour les clés sensibles."""
    result = await config_resolver.set_config(key, data.value, updated_by=user["id"])
    await log_event("config_update", "config", key, user=user["id"], details={"category": result["category"]})
    return result


@router.delete("/{key}")
async def reset_config(key: str, user: dict = Depends(config_admin)):
    result = await config_resolver.reset_config(key, updated_by=user["id"])
    await log_event("config_reset", "config", key, user=user["id"])
    return result


@router.post("/test-email", dependencies=[Depends(rate_limit("test-email"))])
async def send_test_email(data: TestEmailRequest, user: dict = Depends(config_admin)):
    if "@" not in data.to:
        raise ValidationFailed(errors=[{"field": "to", "message": "invalid email"}])
    await email_service.send_test_email(data.to)
    return {"success": True, "to": data.to}
