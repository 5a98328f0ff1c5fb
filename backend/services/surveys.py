"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Cycle de vie des surveys                                          ║
║                                                                              ║
║  draft --publish--> active | scheduled                                       ║
║  active <--activate/deactivate--> inactive                                   ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  1. Édition uniquement en draft (draft -> active délègue à publish)          ║
║  2. publish: snapshot figé + version += 1 + publishLog + invites             ║
║  3. Republication d'une survey active: nouveau snapshot, invites             ║
║     uniquement pour les destinataires pas encore invités                     ║
║  4. Mot de passe stocké hashé; verify-password => token d'accès 30 min       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional, List, Callable

from config import db, now_iso, hash_password, generate_token, parse_iso
from models.survey import CHOICE_TYPES, VALID_SURVEY_STATUSES
from services import invites as invite_registry
from services.audience import load_audience
from services.errors import (
    AccessDenied,
    NotFound,
    Conflict,
    ValidationFailed,
    PasswordRequired,
    SurveyClosed,
    ConfigMissing,
)
from services.event_logger import log_event, log_error
from services.permissions import (
    COMPANY_ADMIN,
    authorize,
    and_filters,
    scoped_filter,
)

logger = logging.getLogger("surveys")

ACCESS_TOKEN_MINUTES = 30
PUBLISHABLE_STATUSES = ("draft", "active", "scheduled")
HIDDEN_FIELDS = {"_id": 0, "settings.password": 0}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def public_fields(survey: Dict[str, Any]) -> Dict[str, Any]:
    survey = dict(survey)
    survey.pop("_id", None)
    settings = dict(survey.get("settings") or {})
    settings.pop("password", None)
    survey["settings"] = settings
    return survey


# ════════════════════════════════════════════════════════════════════════
# OPEN WINDOW
# ════════════════════════════════════════════════════════════════════════

def is_open(survey: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """active (before endDate), or scheduled within [startDate, endDate]."""
    now = now or _now()
    schedule = survey.get("schedule") or {}
    start = schedule.get("startDate")
    end = schedule.get("endDate")
    if end and parse_iso(end) < now:
        return False
    status = survey.get("status")
    if status == "active":
        return True
    if status == "scheduled":
        return bool(start) and parse_iso(start) <= now
    return False


def ensure_open(survey: Dict[str, Any]):
    if not is_open(survey):
        raise SurveyClosed()


# ════════════════════════════════════════════════════════════════════════
# VALIDATION
# ════════════════════════════════════════════════════════════════════════

def validate_questions(questions: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    errors = []
    if not questions:
        errors.append({"field": "questions", "message": "A survey needs at least one question"})
        return errors
    seen = set()
    for index, q in enumerate(questions):
        qid = q.get("id")
        if not qid:
            errors.append({"field": f"questions[{index}].id", "message": "missing id"})
        elif qid in seen:
            errors.append({"field": f"questions[{index}].id", "message": f"duplicate id {qid}"})
        seen.add(qid)
        if not (q.get("title") or "").strip():
            errors.append({"field": f"questions[{index}].title", "message": "required"})
        if q.get("type") in CHOICE_TYPES and not q.get("options"):
            errors.append({"field": f"questions[{index}].options", "message": "choice questions need options"})
        if q.get("type") == "matrix" and not q.get("rows"):
            errors.append({"field": f"questions[{index}].rows", "message": "matrix questions need rows"})
    return errors


# ════════════════════════════════════════════════════════════════════════
# CRUD
# ════════════════════════════════════════════════════════════════════════

async def create_survey(user: dict, data: Dict[str, Any], route: str = "-") -> Dict[str, Any]:
    # Scope, role and permission first: admin and unprivileged members never reach the department rule
    (await authorize(user, "survey:create", None, route=route)).raise_if_denied()

    department = data.get("department")
    if user.get("role") != COMPANY_ADMIN:
        if not user.get("department"):
            raise AccessDenied("Members need a department to create surveys", code="NO_DEPARTMENT")
        department = user["department"]
    elif not user.get("crossDepartmentSurveyAccess") and department not in (None, user.get("department")):
        department = user.get("department")

    now = now_iso()
    settings = dict(data.get("settings") or {})
    if settings.get("password"):
        settings["password"] = hash_password(settings["password"])

    survey = {
        **data,
        "id": str(uuid.uuid4()),
        "tenant": user["tenant"],
        "department": department,
        "settings": settings,
        "status": "draft",
        "version": 0,
        "publishedSnapshot": None,
        "publishLog": [],
        "totalResponses": 0,
        "lastResponseAt": None,
        "analytics": {},
        "deleted": False,
        "createdBy": user["id"],
        "createdAt": now,
        "updatedAt": now,
    }
    decision = await authorize(user, "survey:create", {**survey, "_kind": "survey"}, route=route)
    decision.raise_if_denied()

    await db.surveys.insert_one(dict(survey))
    await log_event("survey_create", "survey", survey["id"], user=user["id"], tenant=survey["tenant"])
    return public_fields(survey)


async def list_surveys(user: dict, status: Optional[str] = None, limit: int = 100, skip: int = 0) -> Dict[str, Any]:
    query = await scoped_filter(user, "surveys")
    if status:
        if status not in VALID_SURVEY_STATUSES:
            raise ValidationFailed(errors=[{"field": "status", "message": f"must be one of {VALID_SURVEY_STATUSES}"}])
        query = and_filters(query, {"status": status})
    total = await db.surveys.count_documents(query)
    surveys = await db.surveys.find(query, HIDDEN_FIELDS).sort("createdAt", -1).skip(skip).to_list(limit)
    return {"surveys": surveys, "total": total}


async def update_survey(user: dict, survey: Dict[str, Any], changes: Dict[str, Any], defer: Optional[Callable] = None) -> Dict[str, Any]:
    """Draft-only edits; {status: active} on a draft publishes it."""
    target_status = changes.pop("status", None)
    if target_status and target_status != "active":
        raise Conflict("Use activate/deactivate to change the status of a survey")
    if survey.get("status") != "draft":
        raise Conflict("Only draft surveys can be edited", code="SURVEY_NOT_DRAFT")

    if changes:
        if "settings" in changes and changes["settings"].get("password"):
            changes["settings"]["password"] = hash_password(changes["settings"]["password"])
        changes["updatedAt"] = now_iso()
        result = await db.surveys.update_one(
            {"id": survey["id"], "tenant": survey["tenant"], "status": "draft"},
            {"$set": changes}
        )
        if not result.matched_count:
            raise Conflict("Only draft surveys can be edited", code="SURVEY_NOT_DRAFT")
        await log_event("survey_update", "survey", survey["id"], user=user["id"], tenant=survey["tenant"],
                        details={"fields": sorted(changes.keys())})
        survey = {**survey, **changes}

    if target_status == "active":
        return await publish_survey(user, survey, defer=defer)
    return public_fields(survey)


async def delete_survey(user: dict, survey: Dict[str, Any]):
    await db.surveys.update_one(
        {"id": survey["id"], "tenant": survey["tenant"]},
        {"$set": {"deleted": True, "deletedAt": now_iso(), "deletedBy": user["id"]}}
    )
    await log_event("survey_delete", "survey", survey["id"], user=user["id"], tenant=survey["tenant"])


# ════════════════════════════════════════════════════════════════════════
# PUBLISH / ACTIVATE
# ════════════════════════════════════════════════════════════════════════

async def send_invitations(survey: Dict[str, Any], created: List[Dict[str, Any]]) -> int:
    from email_service import email_service

    sent = 0
    for invite in created:
        email = (invite.get("contactRef") or {}).get("email")
        if not email:
            continue
        try:
            if await email_service.send_survey_invitation(
                email, (invite.get("contactRef") or {}).get("name"), survey.get("title", ""), invite["token"]
            ):
                sent += 1
        except ConfigMissing:
            logger.warning(f"[PUBLISH] survey={survey['id']} SENDGRID_API_KEY not configured, invitations not sent")
            break
        except Exception as e:
            log_error("surveys.send_invitations", str(e), {"survey": survey["id"], "invite": invite["id"]})
    logger.info(f"[PUBLISH] survey={survey['id']} invitations sent={sent}/{len(created)}")
    return sent


async def publish_survey(user: dict, survey: Dict[str, Any], defer: Optional[Callable] = None) -> Dict[str, Any]:
    if survey.get("status") not in PUBLISHABLE_STATUSES:
        raise Conflict(f"Cannot publish a survey in status {survey.get('status')}")

    errors = validate_questions(survey.get("questions") or [])
    if errors:
        raise ValidationFailed("Survey questions are invalid", errors=errors)

    now = _now()
    start = (survey.get("schedule") or {}).get("startDate")
    status = "scheduled" if start and parse_iso(start) > now else "active"
    version = (survey.get("version") or 0) + 1
    snapshot = {"questions": survey.get("questions") or [], "lockedAt": now.isoformat(), "version": version}

    recipients = await load_audience(survey)

    # Compare-and-set on version: concurrent publishes cannot share a version
    result = await db.surveys.update_one(
        {"id": survey["id"], "tenant": survey["tenant"], "version": survey.get("version", 0)},
        {
            "$set": {
                "status": status,
                "version": version,
                "publishedSnapshot": snapshot,
                "publishedAt": snapshot["lockedAt"],
                "updatedAt": snapshot["lockedAt"],
            },
            "$push": {"publishLog": {
                "version": version,
                "publishedAt": snapshot["lockedAt"],
                "publishedBy": user["id"],
                "status": status,
                "recipients": len(recipients),
            }},
        },
    )
    if not result.matched_count:
        raise Conflict("Survey was published concurrently, reload and retry")

    published = {**survey, "status": status, "version": version, "publishedSnapshot": snapshot}
    minted = await invite_registry.create_invites(published, recipients)

    if minted["created"]:
        if defer:
            defer(send_invitations, published, minted["created"])
        else:
            await send_invitations(published, minted["created"])

    logger.info(
        f"[PUBLISH] survey={survey['id']} version={version} status={status} "
        f"invites={len(minted['created'])} skipped={minted['skipped']}"
    )
    await log_event("survey_publish", "survey", survey["id"], user=user["id"], tenant=survey["tenant"],
                    details={"version": version, "status": status, "invites": len(minted["created"])})

    fresh = await db.surveys.find_one({"id": survey["id"]}, HIDDEN_FIELDS)
    return {**fresh, "invitesCreated": len(minted["created"]), "invitesSkipped": minted["skipped"]}


async def set_active(user: dict, survey: Dict[str, Any], active: bool) -> Dict[str, Any]:
    if active:
        if not survey.get("publishedSnapshot"):
            raise Conflict("Survey must be published before activation")
        if survey.get("status") not in ("inactive", "active"):
            raise Conflict(f"Cannot activate a survey in status {survey.get('status')}")
        source, target = ["inactive", "active"], "active"
    else:
        if survey.get("status") not in ("active", "scheduled", "inactive"):
            raise Conflict(f"Cannot deactivate a survey in status {survey.get('status')}")
        source, target = ["active", "scheduled", "inactive"], "inactive"

    result = await db.surveys.update_one(
        {"id": survey["id"], "tenant": survey["tenant"], "status": {"$in": source}},
        {"$set": {"status": target, "updatedAt": now_iso()}}
    )
    if not result.matched_count:
        raise Conflict("Survey status changed concurrently")
    await log_event(f"survey_{'activate' if active else 'deactivate'}", "survey", survey["id"],
                    user=user["id"], tenant=survey["tenant"], details={"from": survey.get("status"), "to": target})
    return public_fields({**survey, "status": target})


# ════════════════════════════════════════════════════════════════════════
# PUBLIC ACCESS
# ════════════════════════════════════════════════════════════════════════

async def _load_live(survey_id: str) -> Dict[str, Any]:
    survey = await db.surveys.find_one({"id": survey_id, "deleted": {"$ne": True}}, {"_id": 0})
    if not survey:
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    return survey


async def verify_password(survey_id: str, password: str) -> Dict[str, Any]:
    survey = await _load_live(survey_id)
    settings = survey.get("settings") or {}
    if not settings.get("isPasswordProtected"):
        raise Conflict("Survey is not password protected")
    ensure_open(survey)
    if not password or hash_password(password) != settings.get("password"):
        logger.warning(f"[SURVEY] survey={survey_id} wrong password")
        raise PasswordRequired("Invalid survey password", code="INVALID_PASSWORD")

    token = generate_token()
    expires = (_now() + timedelta(minutes=ACCESS_TOKEN_MINUTES)).isoformat()
    await db.survey_access_tokens.insert_one({
        "token": token,
        "survey": survey_id,
        "tenant": survey["tenant"],
        "expiresAt": expires,
        "createdAt": now_iso(),
    })
    return {"accessToken": token, "expiresAt": expires}


async def check_access_token(survey: Dict[str, Any], token: Optional[str]):
    """Password-protected surveys need a live verify-password token."""
    if not (survey.get("settings") or {}).get("isPasswordProtected"):
        return
    if not token:
        raise PasswordRequired()
    doc = await db.survey_access_tokens.find_one(
        {"token": token, "survey": survey["id"], "expiresAt": {"$gt": now_iso()}}, {"_id": 0}
    )
    if not doc:
        raise PasswordRequired("Survey access token is invalid or expired")


def _respondent_view(survey: Dict[str, Any], with_questions: bool = True) -> Dict[str, Any]:
    settings = survey.get("settings") or {}
    view = {
        "id": survey["id"],
        "title": survey.get("title"),
        "description": survey.get("description", ""),
        "version": survey.get("version"),
        "isAnonymous": settings.get("isAnonymous", False),
        "requiresPassword": bool(settings.get("isPasswordProtected")),
    }
    if with_questions:
        view["questions"] = (survey.get("publishedSnapshot") or {}).get("questions", [])
    return view


async def public_view(survey_id: str, access_token: Optional[str] = None) -> Dict[str, Any]:
    survey = await _load_live(survey_id)
    if not (survey.get("settings") or {}).get("isPublic"):
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    ensure_open(survey)
    if (survey.get("settings") or {}).get("isPasswordProtected"):
        try:
            await check_access_token(survey, access_token)
        except PasswordRequired:
            return _respondent_view(survey, with_questions=False)
    return _respondent_view(survey)


async def invite_view(token: str) -> Dict[str, Any]:
    invite = await invite_registry.validate(token)
    survey = await db.surveys.find_one(
        {"id": invite["survey"], "tenant": invite["tenant"], "deleted": {"$ne": True}}, {"_id": 0}
    )
    if not survey:
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    ensure_open(survey)
    view = _respondent_view(survey)
    view["recipient"] = {"name": (invite.get("contactRef") or {}).get("name", "")}
    return view
