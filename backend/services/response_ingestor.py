"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Response Ingestor                                                 ║
║                                                                              ║
║  FLOW (chemin critique):                                                     ║
║  1. Invite token / survey publique -> survey ouverte ?                       ║
║  2. Mot de passe: token verify-password requis                               ║
║  3. Validation contre publishedSnapshot (jamais questions)                   ║
║  4. Invite: compare-and-set pending -> responded                             ║
║  5. Insert SurveyResponse (rollback de l'invite si échec)                    ║
║  6. Enqueue process-response (hors chemin critique)                          ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - une invite => au plus une réponse                                         ║
║  - une erreur d'enrichissement ne fait jamais échouer une soumission         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
import uuid
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import db, now_iso, generate_token
from services import invites as invite_registry
from services.errors import NotFound, ValidationFailed, AlreadyResponded, Conflict
from services.event_logger import log_error
from services.scoring import parse_answer_value, extract_score_and_rating, DEFAULT_MAX_RATING
from services.surveys import ensure_open, check_access_token

logger = logging.getLogger("response_ingestor")

PROCESS_RESPONSE = "process-response"
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CHOICE_SINGLE = {"radio", "select", "imageChoice"}
CHOICE_MULTI = {"checkbox", "ranking"}
RATING_LIKE = {"rating", "scale", "likert"}


# ════════════════════════════════════════════════════════════════════════
# VALIDATION
# ════════════════════════════════════════════════════════════════════════

def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _is_numeric_input(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value.strip())
            return True
        except ValueError:
            return False
    return False


def _check_answer(question: Dict[str, Any], value: Any) -> Optional[str]:
    """Error message for one non-empty answer, None when valid."""
    qtype = question.get("type")
    options = question.get("options") or []

    if qtype == "nps":
        number = parse_answer_value(value, "nps")
        if number is None:
            return "must be a number between 0 and 10"
        if _is_numeric_input(value) and not 0 <= number <= 10:
            return "must be between 0 and 10"

    elif qtype in RATING_LIKE:
        number = parse_answer_value(value, qtype)
        low = question.get("min") if question.get("min") is not None else 1
        high = question.get("max") or DEFAULT_MAX_RATING
        if number is None:
            return f"must be a number between {low:g} and {high:g}"
        if not low <= number <= high:
            return f"must be between {low:g} and {high:g}"

    elif qtype == "numeric":
        if not _is_numeric_input(value):
            return "must be a number"
        number = float(value)
        if question.get("min") is not None and number < question["min"]:
            return f"must be >= {question['min']:g}"
        if question.get("max") is not None and number > question["max"]:
            return f"must be <= {question['max']:g}"

    elif qtype == "email":
        if not isinstance(value, str) or not EMAIL_RE.match(value.strip()):
            return "must be a valid email"

    elif qtype in CHOICE_SINGLE:
        if options and value not in options:
            return "must be one of the proposed options"

    elif qtype in CHOICE_MULTI:
        if not isinstance(value, list):
            return "must be a list"
        if options and any(v not in options for v in value):
            return "contains an unknown option"

    elif qtype == "matrix":
        if not isinstance(value, dict):
            return "must map rows to values"
        rows = question.get("rows") or []
        if rows and any(r not in rows for r in value):
            return "contains an unknown row"

    elif qtype == "date":
        try:
            datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return "must be an ISO date"

    return None


def validate_submission(
    questions: List[Dict[str, Any]],
    payload: Dict[str, Any],
    partial: bool = False,
) -> List[Dict[str, str]]:
    """
    Field errors of a submission against the published questions.
    partial=True skips the required check (resume saves).
    """
    errors = []
    by_id = {q.get("id"): q for q in questions}
    answered = {}
    for index, answer in enumerate(payload.get("answers") or []):
        qid = answer.get("questionId")
        if qid not in by_id:
            errors.append({"field": f"answers[{index}]", "message": f"unknown question {qid}"})
            continue
        if qid in answered:
            errors.append({"field": f"answers[{index}]", "message": f"duplicate answer for {qid}"})
            continue
        answered[qid] = answer.get("value")
        if _is_empty(answer.get("value")):
            continue
        message = _check_answer(by_id[qid], answer.get("value"))
        if message:
            errors.append({"field": qid, "message": message})

    if not partial:
        for q in questions:
            if q.get("required") and _is_empty(answered.get(q.get("id"))):
                errors.append({"field": q.get("id"), "message": "required"})

    score = payload.get("score")
    if score is not None and not 0 <= score <= 10:
        errors.append({"field": "score", "message": "must be between 0 and 10"})
    rating = payload.get("rating")
    if rating is not None:
        max_rating = next((q.get("max") for q in questions if q.get("type") in RATING_LIKE and q.get("max")),
                          DEFAULT_MAX_RATING)
        if not 1 <= rating <= max_rating:
            errors.append({"field": "rating", "message": f"must be between 1 and {max_rating:g}"})
    return errors


def _snapshot_questions(survey: Dict[str, Any]) -> List[Dict[str, Any]]:
    snapshot = survey.get("publishedSnapshot")
    if not snapshot:
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    return snapshot.get("questions") or []


# ════════════════════════════════════════════════════════════════════════
# METADATA
# ════════════════════════════════════════════════════════════════════════

def request_metadata(ip: Optional[str], user_agent: Optional[str]) -> Dict[str, Any]:
    """ip + user agent with a device/browser/os guess."""
    ua = (user_agent or "").lower()
    if "ipad" in ua or "tablet" in ua:
        device = "tablet"
    elif "mobile" in ua or "android" in ua or "iphone" in ua:
        device = "mobile"
    elif ua:
        device = "desktop"
    else:
        device = "unknown"

    browser = "other"
    for marker, name in (("edg/", "edge"), ("opr/", "opera"), ("chrome/", "chrome"),
                         ("firefox/", "firefox"), ("safari/", "safari")):
        if marker in ua:
            browser = name
            break

    os_name = "other"
    for marker, name in (("windows", "windows"), ("android", "android"), ("iphone", "ios"),
                         ("ipad", "ios"), ("mac os", "macos"), ("linux", "linux")):
        if marker in ua:
            os_name = name
            break

    return {"ip": ip, "userAgent": user_agent, "device": device, "browser": browser, "os": os_name}


def respondent_type(response: Dict[str, Any]) -> str:
    if response.get("invite"):
        return "invited"
    if response.get("user"):
        return "authenticated"
    if response.get("isAnonymous"):
        return "anonymous"
    return "public"


# ════════════════════════════════════════════════════════════════════════
# PERSISTENCE
# ════════════════════════════════════════════════════════════════════════

def _scores(questions: List[Dict[str, Any]], payload: Dict[str, Any]):
    score, rating = extract_score_and_rating(payload.get("answers") or [], questions)
    if payload.get("score") is not None:
        score = payload["score"]
    if payload.get("rating") is not None:
        rating = payload["rating"]
    return score, rating


def _new_response(survey: Dict[str, Any], payload: Dict[str, Any], status: str, metadata: Dict[str, Any],
                  contact: Optional[str] = None, invite: Optional[str] = None, user: Optional[str] = None,
                  is_anonymous: bool = False, response_id: Optional[str] = None) -> Dict[str, Any]:
    questions = _snapshot_questions(survey)
    score, rating = _scores(questions, payload)
    now = now_iso()
    response = {
        "id": response_id or str(uuid.uuid4()),
        "survey": survey["id"],
        "tenant": survey["tenant"],
        "surveyVersion": survey.get("version"),
        "contact": contact,
        "user": user,
        "invite": invite,
        "answers": payload.get("answers") or [],
        "rating": rating,
        "score": score,
        "review": payload.get("review"),
        "completionTime": payload.get("completionTime"),
        "isAnonymous": is_anonymous,
        "status": status,
        "resumeToken": payload.get("resumeToken") if status == "partial" else None,
        "submittedAt": now if status == "submitted" else None,
        "metadata": metadata,
        "analysis": None,
        "statsSyncedAt": None,
        "aggregatesUpdatedAt": None,
        "createdAt": now,
        "updatedAt": now,
    }
    response["respondentType"] = respondent_type(response)
    return response


async def _enqueue(queue, response: Dict[str, Any]):
    """Post-commit hand-off: never fails the submission."""
    try:
        await queue.enqueue(PROCESS_RESPONSE, {"responseId": response["id"]}, response["tenant"])
    except Exception as e:
        log_error("response_ingestor.enqueue", str(e), {"response": response["id"]}, exc_info=True)


async def submit_invited(token: str, payload: Dict[str, Any], metadata: Dict[str, Any], queue) -> Dict[str, Any]:
    invite = await invite_registry.validate(token)
    survey = await db.surveys.find_one(
        {"id": invite["survey"], "tenant": invite["tenant"], "deleted": {"$ne": True}}, {"_id": 0}
    )
    if not survey:
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    ensure_open(survey)
    await check_access_token(survey, payload.get("accessToken"))

    errors = validate_submission(_snapshot_questions(survey), payload)
    if errors:
        raise ValidationFailed(errors=errors)

    response = _new_response(survey, payload, "submitted", metadata,
                             contact=invite.get("contact"), invite=invite["id"])

    await invite_registry.mark_responded(token, response["id"])
    try:
        await db.survey_responses.insert_one(dict(response))
    except DuplicateKeyError:
        await invite_registry.release(invite["id"], response["id"])
        raise AlreadyResponded()
    except Exception:
        await invite_registry.release(invite["id"], response["id"])
        raise

    logger.info(f"[INGEST] response={response['id']} survey={survey['id']} invite={invite['id']}")
    await _enqueue(queue, response)
    return {"responseId": response["id"], "status": "submitted"}


async def _load_public_survey(survey_id: str) -> Dict[str, Any]:
    survey = await db.surveys.find_one({"id": survey_id, "deleted": {"$ne": True}}, {"_id": 0})
    if not survey or not (survey.get("settings") or {}).get("isPublic"):
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    ensure_open(survey)
    return survey


async def submit_public(survey_id: str, payload: Dict[str, Any], metadata: Dict[str, Any], queue,
                        user: Optional[dict] = None) -> Dict[str, Any]:
    """Anonymous/public submission; a resume token finalizes its partial response."""
    survey = await _load_public_survey(survey_id)
    await check_access_token(survey, payload.get("accessToken"))

    questions = _snapshot_questions(survey)
    errors = validate_submission(questions, payload)
    if errors:
        raise ValidationFailed(errors=errors)

    is_anonymous = bool((survey.get("settings") or {}).get("isAnonymous")) or user is None
    user_id = None
    if user and user.get("tenant") == survey["tenant"] and not (survey.get("settings") or {}).get("isAnonymous"):
        user_id = user["id"]
        is_anonymous = False

    resume_token = payload.get("resumeToken")
    if resume_token:
        score, rating = _scores(questions, payload)
        now = now_iso()
        response = await db.survey_responses.find_one_and_update(
            {"survey": survey_id, "resumeToken": resume_token, "status": "partial"},
            {"$set": {
                "answers": payload.get("answers") or [],
                "rating": rating,
                "score": score,
                "review": payload.get("review"),
                "completionTime": payload.get("completionTime"),
                "status": "submitted",
                "resumeToken": None,
                "submittedAt": now,
                "updatedAt": now,
                "metadata": metadata,
            }},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not response:
            raise AlreadyResponded("This response was already submitted or does not exist")
    else:
        response = _new_response(survey, payload, "submitted", metadata, user=user_id, is_anonymous=is_anonymous)
        await db.survey_responses.insert_one(dict(response))

    logger.info(f"[INGEST] response={response['id']} survey={survey_id} type={response.get('respondentType')}")
    await _enqueue(queue, response)
    return {"responseId": response["id"], "status": "submitted"}


async def save_partial(survey_id: str, payload: Dict[str, Any], metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Create or update a partial response addressed by its resume token."""
    survey = await _load_public_survey(survey_id)
    await check_access_token(survey, payload.get("accessToken"))

    errors = validate_submission(_snapshot_questions(survey), payload, partial=True)
    if errors:
        raise ValidationFailed(errors=errors)

    resume_token = payload.get("resumeToken")
    if resume_token:
        result = await db.survey_responses.update_one(
            {"survey": survey_id, "resumeToken": resume_token, "status": "partial"},
            {"$set": {
                "answers": payload.get("answers") or [],
                "review": payload.get("review"),
                "completionTime": payload.get("completionTime"),
                "updatedAt": now_iso(),
            }},
        )
        if not result.matched_count:
            raise Conflict("No partial response for this resume token", code="RESUME_TOKEN_INVALID")
        existing = await db.survey_responses.find_one({"resumeToken": resume_token}, {"_id": 0, "id": 1})
        return {"responseId": existing["id"], "resumeToken": resume_token, "status": "partial"}

    payload = {**payload, "resumeToken": generate_token()}
    response = _new_response(survey, payload, "partial", metadata,
                             is_anonymous=bool((survey.get("settings") or {}).get("isAnonymous")))
    await db.survey_responses.insert_one(dict(response))
    logger.info(f"[INGEST] partial response={response['id']} survey={survey_id}")
    return {"responseId": response["id"], "resumeToken": payload["resumeToken"], "status": "partial"}


async def load_partial(survey_id: str, resume_token: str) -> Dict[str, Any]:
    response = await db.survey_responses.find_one(
        {"survey": survey_id, "resumeToken": resume_token, "status": "partial"},
        {"_id": 0, "id": 1, "answers": 1, "review": 1, "updatedAt": 1}
    )
    if not response:
        raise NotFound("Partial response not found")
    return response


async def enqueue_reanalysis(response: Dict[str, Any], queue) -> str:
    """Admin re-analysis: a fresh process-response job; counters are claimed once."""
    job_id = await queue.enqueue(PROCESS_RESPONSE, {"responseId": response["id"], "reanalyze": True},
                                 response["tenant"])
    logger.info(f"[INGEST] reanalysis queued response={response['id']} job={job_id}")
    return job_id
