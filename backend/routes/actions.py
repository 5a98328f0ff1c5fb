"""
RatePro - Routes Actions & règles d'assignation
"""

from fastapi import APIRouter, Depends, Request
from typing import Optional

from models.action import ActionAssign, ActionStatusUpdate, AssignmentRuleCreate
from services import actions as action_service
from services.permissions import COMPANY_ADMIN, require_action, require_scope, Scope

router = APIRouter(prefix="/actions", tags=["Actions"])


@router.get("")
async def list_actions(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    user: dict = Depends(require_action("action:read"))
):
    return await action_service.list_actions(user, status, priority, assigned_to, limit=min(limit, 500), skip=skip)


# ==================== RÈGLES ====================

@router.get("/assignment-rules")
async def list_rules(user: dict = Depends(require_scope(Scope.TENANT, roles=(COMPANY_ADMIN,)))):
    return {"rules": await action_service.list_rules(user["tenant"])}


@router.post("/assignment-rules", status_code=201)
async def create_rule(data: AssignmentRuleCreate, user: dict = Depends(require_scope(Scope.TENANT, roles=(COMPANY_ADMIN,)))):
    return await action_service.create_rule(user["tenant"], data.model_dump(mode="json"), user["id"])


@router.delete("/assignment-rules/{rule_id}")
async def delete_rule(rule_id: str, user: dict = Depends(require_scope(Scope.TENANT, roles=(COMPANY_ADMIN,)))):
    await action_service.delete_rule(user["tenant"], rule_id)
    return {"success": True}


# ==================== ACTIONS ====================

@router.get("/{action_id}")
async def get_action(action_id: str, user: dict = Depends(require_action("action:read"))):
    return await action_service.get_scoped_action(user, action_id)


@router.put("/{action_id}/assign")
async def assign_action(action_id: str, data: ActionAssign, request: Request, user: dict = Depends(require_action("action:read"))):
    """Assignation soumise au gate surveyAction:assign de la survey d'origine."""
    return await action_service.assign_action(user, action_id, data.assignedTo, route=request.url.path)


@router.put("/{action_id}/status")
async def update_status(action_id: str, data: ActionStatusUpdate, user: dict = Depends(require_action("action:update"))):
    return await action_service.update_action_status(user, action_id, data.status.value, data.resolution)
