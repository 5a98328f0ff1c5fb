"""
RatePro - Routes Surveys
CRUD, publication, activation, accès public et invitations.
"""

from fastapi import APIRouter, Depends, Request, BackgroundTasks
from typing import Optional

from models.survey import SurveyCreate, SurveyUpdate, PasswordVerify, QuestionType
from routes.auth import get_current_user
from services import surveys as survey_service
from services import invites as invite_registry
from services.permissions import require_survey_permission

router = APIRouter(prefix="/surveys", tags=["Surveys"])


@router.get("/question-types")
async def question_types():
    return {"types": [t.value for t in QuestionType]}


# ==================== ACCÈS PUBLIC ====================

@router.get("/public/{survey_id}")
async def public_survey(survey_id: str, access_token: Optional[str] = None):
    """Survey publique active: questions du snapshot publié."""
    return await survey_service.public_view(survey_id, access_token)


@router.get("/invite/{token}")
async def invite_survey(token: str):
    """Questions pour le destinataire d'une invitation."""
    return await survey_service.invite_view(token)


@router.post("/{survey_id}/verify-password")
async def verify_password(survey_id: str, data: PasswordVerify):
    return await survey_service.verify_password(survey_id, data.password)


# ==================== CRUD ====================

@router.get("")
async def list_surveys(
    status: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    user: dict = Depends(require_survey_permission("survey:read"))
):
    return await survey_service.list_surveys(user, status, min(limit, 500), skip)


@router.post("", status_code=201)
async def create_survey(data: SurveyCreate, request: Request, user: dict = Depends(get_current_user)):
    return await survey_service.create_survey(user, data.model_dump(mode="json"), route=request.url.path)


@router.get("/{survey_id}")
async def get_survey(survey_id: str, request: Request, user: dict = Depends(require_survey_permission("survey:read"))):
    return survey_service.public_fields(request.state.survey)


@router.put("/{survey_id}")
async def update_survey(
    survey_id: str,
    data: SurveyUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_survey_permission("survey:update"))
):
    changes = data.model_dump(mode="json", exclude_unset=True)
    return await survey_service.update_survey(user, request.state.survey, changes, defer=background_tasks.add_task)


@router.delete("/{survey_id}")
async def delete_survey(survey_id: str, request: Request, user: dict = Depends(require_survey_permission("survey:delete"))):
    await survey_service.delete_survey(user, request.state.survey)
    return {"success": True}


# ==================== CYCLE DE VIE ====================

@router.post("/{survey_id}/publish")
async def publish_survey(
    survey_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_survey_permission("survey:publish"))
):
    return await survey_service.publish_survey(user, request.state.survey, defer=background_tasks.add_task)


@router.post("/{survey_id}/activate")
async def activate_survey(survey_id: str, request: Request, user: dict = Depends(require_survey_permission("survey:activate"))):
    return await survey_service.set_active(user, request.state.survey, True)


@router.post("/{survey_id}/deactivate")
async def deactivate_survey(survey_id: str, request: Request, user: dict = Depends(require_survey_permission("survey:activate"))):
    return await survey_service.set_active(user, request.state.survey, False)


@router.get("/{survey_id}/invites")
async def list_invites(
    survey_id: str,
    request: Request,
    status: Optional[str] = None,
    user: dict = Depends(require_survey_permission("survey:read"))
):
    survey = request.state.survey
    invites = await invite_registry.list_invites(survey["id"], survey["tenant"], status)
    return {"invites": invites, "count": len(invites)}
