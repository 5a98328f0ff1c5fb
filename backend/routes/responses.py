"""
RatePro - Routes Réponses
Soumissions (invite, publique, partielle), consultation filtrée,
réponses flaggées, ré-analyse et export CSV.
"""

from fastapi import APIRouter, Depends, Request, BackgroundTasks
from fastapi.responses import Response
from typing import Optional

from config import db
from models.response import ResponseSubmit
from routes.auth import get_optional_user
from services import response_ingestor
from services.errors import NotFound, RoleNotAuthorized
from services.job_queue import get_job_queue
from services.permissions import (
    COMPANY_ADMIN,
    require_action,
    require_survey_permission,
    scoped_filter,
    and_filters,
)
from services.rate_limit import rate_limit
from services.response_export import generate_csv_content, generate_csv_filename

router = APIRouter(prefix="/responses", tags=["Responses"])

RESPONSE_PROJECTION = {"_id": 0, "resumeToken": 0}


def _metadata(request: Request) -> dict:
    forwarded = request.headers.get("x-forwarded-for")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return response_ingestor.request_metadata(ip, request.headers.get("user-agent"))


# ==================== SOUMISSIONS ====================

@router.post("/invite/{token}", status_code=201, dependencies=[Depends(rate_limit("submit"))])
async def submit_with_invite(token: str, data: ResponseSubmit, request: Request, background_tasks: BackgroundTasks):
    """Soumission identifiée par un token d'invitation (usage unique)."""
    queue = await get_job_queue(background_tasks)
    return await response_ingestor.submit_invited(token, data.model_dump(mode="json"), _metadata(request), queue)


@router.post("/public/{survey_id}", status_code=201, dependencies=[Depends(rate_limit("submit"))])
async def submit_public(
    survey_id: str,
    data: ResponseSubmit,
    request: Request,
    background_tasks: BackgroundTasks,
    user: Optional[dict] = Depends(get_optional_user)
):
    queue = await get_job_queue(background_tasks)
    return await response_ingestor.submit_public(
        survey_id, data.model_dump(mode="json"), _metadata(request), queue, user=user
    )


@router.post("/public/{survey_id}/partial", dependencies=[Depends(rate_limit("submit"))])
async def save_partial(survey_id: str, data: ResponseSubmit, request: Request):
    return await response_ingestor.save_partial(survey_id, data.model_dump(mode="json"), _metadata(request))


@router.get("/public/{survey_id}/partial/{resume_token}")
async def load_partial(survey_id: str, resume_token: str):
    return await response_ingestor.load_partial(survey_id, resume_token)


# ==================== CONSULTATION ====================

@router.get("")
async def list_responses(
    survey_id: Optional[str] = None,
    min_rating: Optional[float] = None,
    max_rating: Optional[float] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    sentiment: Optional[str] = None,
    nps_category: Optional[str] = None,
    has_contact: Optional[bool] = None,
    anonymous: Optional[bool] = None,
    flagged: Optional[bool] = None,
    respondent_type: Optional[str] = None,
    status: str = "submitted",
    limit: int = 50,
    skip: int = 0,
    user: dict = Depends(require_action("survey:responses:view"))
):
    """Liste filtrée, limitée aux surveys visibles par l'utilisateur."""
    query = {"status": status}
    if survey_id:
        query["survey"] = survey_id
    if min_rating is not None or max_rating is not None:
        query["rating"] = {}
        if min_rating is not None:
            query["rating"]["$gte"] = min_rating
        if max_rating is not None:
            query["rating"]["$lte"] = max_rating
    if start_date or end_date:
        query["createdAt"] = {}
        if start_date:
            query["createdAt"]["$gte"] = start_date
        if end_date:
            query["createdAt"]["$lte"] = end_date
    if sentiment:
        query["analysis.sentiment"] = sentiment
    if nps_category:
        query["analysis.npsCategory"] = nps_category
    if has_contact is not None:
        query["contact"] = {"$ne": None} if has_contact else None
    if anonymous is not None:
        query["isAnonymous"] = anonymous
    if flagged is not None:
        query["analysis.flaggedForReview"] = True if flagged else {"$ne": True}
    if respondent_type:
        query["respondentType"] = respondent_type

    query = and_filters(await scoped_filter(user, "responses"), query)
    total = await db.survey_responses.count_documents(query)
    items = await db.survey_responses.find(query, RESPONSE_PROJECTION) \
        .sort("createdAt", -1).skip(skip).to_list(min(limit, 500))

    for item in items:
        item.setdefault("respondentType", response_ingestor.respondent_type(item))
    return {"responses": items, "total": total, "limit": limit, "skip": skip}


@router.get("/flagged")
async def flagged_responses(
    survey_id: Optional[str] = None,
    limit: int = 50,
    user: dict = Depends(require_action("survey:responses:view"))
):
    query = {"analysis.flaggedForReview": True}
    if survey_id:
        query["survey"] = survey_id
    query = and_filters(await scoped_filter(user, "responses"), query)
    items = await db.survey_responses.find(query, RESPONSE_PROJECTION) \
        .sort("createdAt", -1).to_list(min(limit, 500))
    return {"responses": items, "count": len(items)}


@router.get("/export/{survey_id}")
async def export_responses(
    survey_id: str,
    request: Request,
    user: dict = Depends(require_survey_permission("survey:responses:view"))
):
    survey = request.state.survey
    responses = await db.survey_responses.find(
        {"survey": survey["id"], "tenant": survey["tenant"], "status": "submitted"}, RESPONSE_PROJECTION
    ).sort("createdAt", 1).to_list(100000)
    questions = (survey.get("publishedSnapshot") or {}).get("questions") or survey.get("questions") or []
    content = generate_csv_content(responses, questions)
    filename = generate_csv_filename(survey.get("title", ""))
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def _load_scoped_response(user: dict, response_id: str) -> dict:
    query = and_filters({"id": response_id}, await scoped_filter(user, "responses"))
    response = await db.survey_responses.find_one(query, RESPONSE_PROJECTION)
    if not response:
        raise NotFound("Response not found", code="RESPONSE_NOT_FOUND")
    return response


@router.get("/{response_id}")
async def get_response(response_id: str, user: dict = Depends(require_action("survey:responses:view"))):
    """Détail avec analyse complète."""
    response = await _load_scoped_response(user, response_id)
    response.setdefault("respondentType", response_ingestor.respondent_type(response))
    return response


@router.post("/{response_id}/reanalyze", status_code=202)
async def reanalyze_response(
    response_id: str,
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_action("survey:responses:view"))
):
    if user.get("role") != COMPANY_ADMIN:
        raise RoleNotAuthorized("Re-analysis is reserved to company admins")
    response = await _load_scoped_response(user, response_id)
    queue = await get_job_queue(background_tasks)
    job_id = await response_ingestor.enqueue_reanalysis(response, queue)
    return {"success": True, "jobId": job_id}
