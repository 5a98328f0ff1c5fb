"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Actions & règles d'assignation                                    ║
║                                                                              ║
║  Génération depuis une réponse flaggée:                                      ║
║  - flagged + isComplaint => high ; flagged seul => medium ; sinon rien       ║
║  - une seule action par responseId (idempotent, index unique partiel)        ║
║  - échéance: high 1j, medium 3j, low 7j                                      ║
║                                                                              ║
║  Assignation: règles actives par priorité décroissante,                      ║
║  modes single_owner | round_robin | least_load, sinon actionManager          ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Any, Optional, List, Tuple
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import db, now_iso
from models.action import DUE_DAYS_BY_PRIORITY, VALID_ACTION_STATUSES
from services.event_logger import log_event
from services.errors import NotFound, ValidationFailed
from services.permissions import authorize, and_filters, scoped_filter

logger = logging.getLogger("actions")

DEFAULT_CATEGORY = "customer_feedback"
ACTION_SOURCE = "survey_feedback"
ASSIGNMENT_MODES = ("single_owner", "round_robin", "least_load")
RULE_OPERATORS = ("==", "contains")


def derive_priority(flagged: bool, is_complaint: bool) -> Optional[str]:
    if not flagged:
        return None
    return "high" if is_complaint else "medium"


def due_date_for(priority: str, start: Optional[datetime] = None) -> str:
    start = start or datetime.now(timezone.utc)
    return (start + timedelta(days=DUE_DAYS_BY_PRIORITY.get(priority, 7))).isoformat()


def build_action(response: Dict[str, Any], survey: Dict[str, Any], priority: str) -> Dict[str, Any]:
    analysis = response.get("analysis") or {}
    themes = analysis.get("themes") or []
    summary = analysis.get("summary") or (response.get("review") or "")[:200]
    title = f"Follow up: {survey.get('title', 'survey')} feedback"
    if analysis.get("classification", {}).get("isComplaint"):
        title = f"Complaint: {survey.get('title', 'survey')}"

    now = now_iso()
    return {
        "id": str(uuid.uuid4()),
        "tenant": response["tenant"],
        "title": title,
        "description": summary or "Flagged response requires review",
        "priority": priority,
        "status": "open",
        "category": themes[0] if themes else DEFAULT_CATEGORY,
        "source": ACTION_SOURCE,
        "dueDate": due_date_for(priority),
        "assignedTo": None,
        "autoAssigned": False,
        "department": survey.get("department"),
        "metadata": {
            "surveyId": survey["id"],
            "responseId": response["id"],
            "triggeredRules": analysis.get("triggeredRules", []),
        },
        "createdAt": now,
        "updatedAt": now,
    }


# ════════════════════════════════════════════════════════════════════════
# ASSIGNMENT RULES
# ════════════════════════════════════════════════════════════════════════

def _field_value(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def condition_matches(condition: Dict[str, Any], action: Dict[str, Any]) -> bool:
    actual = _field_value(action, condition.get("field", ""))
    expected = condition.get("value")
    operator = condition.get("operator", "==")
    if operator == "==":
        return actual is not None and str(actual).lower() == str(expected).lower()
    if operator == "contains":
        if isinstance(actual, list):
            return any(str(v).lower() == str(expected).lower() for v in actual)
        return isinstance(actual, str) and str(expected).lower() in actual.lower()
    return False


def rule_matches(rule: Dict[str, Any], action: Dict[str, Any]) -> bool:
    """All conditions must hold; a rule without conditions matches everything."""
    return all(condition_matches(c, action) for c in rule.get("conditions") or [])


async def _active_assignees(tenant: str, user_ids: List[str]) -> List[str]:
    if not user_ids:
        return []
    users = await db.users.find(
        {"id": {"$in": user_ids}, "tenant": tenant, "isActive": {"$ne": False}},
        {"_id": 0, "id": 1}
    ).to_list(len(user_ids))
    active = {u["id"] for u in users}
    return [uid for uid in user_ids if uid in active]


async def pick_assignee(rule: Dict[str, Any], tenant: str) -> Optional[str]:
    assignees = await _active_assignees(tenant, rule.get("assignees") or [])
    if not assignees:
        return None

    mode = rule.get("assignmentMode", "single_owner")
    if mode == "round_robin":
        updated = await db.assignment_rules.find_one_and_update(
            {"id": rule["id"], "tenant": tenant},
            {"$inc": {"lastAssignedIndex": 1}},
            projection={"_id": 0, "lastAssignedIndex": 1},
            return_document=ReturnDocument.AFTER,
        )
        index = ((updated or {}).get("lastAssignedIndex", 1) - 1) % len(assignees)
        return assignees[index]

    if mode == "least_load":
        loads = []
        for uid in assignees:
            open_count = await db.actions.count_documents(
                {"tenant": tenant, "assignedTo": uid, "status": {"$ne": "resolved"}}
            )
            loads.append((open_count, assignees.index(uid), uid))
        return min(loads)[2]

    return assignees[0]


async def resolve_assignment(action: Dict[str, Any], survey: Optional[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """
    -> (assignee, priority override, rule id)
    Fallback to the survey's actionManager when no rule applies.
    """
    tenant = action["tenant"]
    rules = await db.assignment_rules.find(
        {"tenant": tenant, "isActive": True}, {"_id": 0}
    ).sort("priority", -1).to_list(200)

    for rule in rules:
        if not rule_matches(rule, action):
            continue
        assignee = await pick_assignee(rule, tenant)
        if assignee:
            return assignee, rule.get("priorityOverride"), rule["id"]

    manager = (survey or {}).get("actionManager")
    if manager and await _active_assignees(tenant, [manager]):
        return manager, None, None
    return None, None, None


async def create_rule(tenant: str, data: Dict[str, Any], created_by: str) -> Dict[str, Any]:
    if data.get("assignmentMode") not in ASSIGNMENT_MODES:
        raise ValidationFailed(errors=[{"field": "assignmentMode", "message": f"must be one of {list(ASSIGNMENT_MODES)}"}])
    bad = [c for c in data.get("conditions") or [] if c.get("operator") not in RULE_OPERATORS]
    if bad:
        raise ValidationFailed(errors=[{"field": "conditions", "message": f"operator must be one of {list(RULE_OPERATORS)}"}])

    rule = {
        "id": str(uuid.uuid4()),
        "tenant": tenant,
        **data,
        "lastAssignedIndex": 0,
        "createdBy": created_by,
        "createdAt": now_iso(),
    }
    await db.assignment_rules.insert_one(dict(rule))
    rule.pop("_id", None)
    return rule


async def list_rules(tenant: str) -> List[Dict[str, Any]]:
    return await db.assignment_rules.find({"tenant": tenant}, {"_id": 0}).sort("priority", -1).to_list(200)


async def delete_rule(tenant: str, rule_id: str):
    result = await db.assignment_rules.delete_one({"id": rule_id, "tenant": tenant})
    if not result.deleted_count:
        raise NotFound("Assignment rule not found")


# ════════════════════════════════════════════════════════════════════════
# GENERATION
# ════════════════════════════════════════════════════════════════════════

async def generate_action_for_response(response_id: str, tenant: str) -> Optional[Dict[str, Any]]:
    """
    Create the follow-up action of a flagged response.
    Returns the (new or existing) action, None when nothing is due.
    """
    existing = await db.actions.find_one(
        {"tenant": tenant, "metadata.responseId": response_id}, {"_id": 0}
    )
    if existing:
        logger.info(f"[ACTION] response={response_id} already has action={existing['id']}")
        return existing

    response = await db.survey_responses.find_one({"id": response_id, "tenant": tenant}, {"_id": 0})
    if not response:
        logger.warning(f"[ACTION] response={response_id} not found for tenant={tenant}")
        return None

    analysis = response.get("analysis") or {}
    priority = derive_priority(
        bool(analysis.get("flaggedForReview")),
        bool((analysis.get("classification") or {}).get("isComplaint")),
    )
    if priority is None:
        return None

    survey = await db.surveys.find_one({"id": response["survey"], "tenant": tenant}, {"_id": 0}) or {
        "id": response["survey"]
    }
    action = build_action(response, survey, priority)

    assignee, override, rule_id = await resolve_assignment(action, survey)
    if override and override != action["priority"]:
        action["priority"] = override
        action["dueDate"] = due_date_for(override)
    if assignee:
        action["assignedTo"] = assignee
        action["autoAssigned"] = True
        action["metadata"]["assignmentRule"] = rule_id

    try:
        await db.actions.insert_one(dict(action))
    except DuplicateKeyError:
        # Concurrent run for the same response won the insert
        existing = await db.actions.find_one(
            {"tenant": tenant, "metadata.responseId": response_id}, {"_id": 0}
        )
        logger.info(f"[ACTION] response={response_id} raced, keeping action={existing and existing['id']}")
        return existing
    action.pop("_id", None)
    logger.info(
        f"[ACTION] created action={action['id']} response={response_id} "
        f"priority={action['priority']} assignedTo={assignee}"
    )
    await log_event("action_created", "action", action["id"], tenant=tenant,
                    details={"priority": action["priority"], "assignedTo": assignee},
                    related={"responseId": response_id, "surveyId": survey["id"]})
    return action


# ════════════════════════════════════════════════════════════════════════
# ROUTE OPERATIONS
# ════════════════════════════════════════════════════════════════════════

async def get_scoped_action(user: dict, action_id: str, tenant_id: Optional[str] = None) -> Dict[str, Any]:
    query = and_filters({"id": action_id}, await scoped_filter(user, "actions", tenant_id))
    action = await db.actions.find_one(query, {"_id": 0})
    if not action:
        raise NotFound("Action not found")
    return action


async def list_actions(user: dict, status: Optional[str] = None, priority: Optional[str] = None,
                       assigned_to: Optional[str] = None, tenant_id: Optional[str] = None,
                       limit: int = 100, skip: int = 0) -> Dict[str, Any]:
    extra = {}
    if status:
        extra["status"] = status
    if priority:
        extra["priority"] = priority
    if assigned_to:
        extra["assignedTo"] = assigned_to
    query = and_filters(await scoped_filter(user, "actions", tenant_id), extra)
    total = await db.actions.count_documents(query)
    items = await db.actions.find(query, {"_id": 0}).sort("createdAt", -1).skip(skip).to_list(limit)
    return {"actions": items, "total": total}


async def assign_action(user: dict, action_id: str, assignee_id: str, route: str = "-") -> Dict[str, Any]:
    action = await get_scoped_action(user, action_id)
    survey_id = (action.get("metadata") or {}).get("surveyId")
    if survey_id:
        survey = await db.surveys.find_one({"id": survey_id, "tenant": action["tenant"]}, {"_id": 0})
        if not survey:
            raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
        decision = await authorize(user, "surveyAction:assign", {**survey, "_kind": "survey"}, route=route)
    else:
        decision = await authorize(user, "action:update", {"tenant": action["tenant"], "id": action_id}, route=route)
    decision.raise_if_denied()

    if not await _active_assignees(action["tenant"], [assignee_id]):
        raise ValidationFailed("Assignee must be an active user of this tenant",
                               errors=[{"field": "assignedTo", "message": "unknown user"}])

    updated = await db.actions.find_one_and_update(
        {"id": action_id, "tenant": action["tenant"]},
        {"$set": {"assignedTo": assignee_id, "autoAssigned": False, "updatedAt": now_iso()}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    await log_event("action_assigned", "action", action_id, user=user["id"], tenant=action["tenant"],
                    details={"assignedTo": assignee_id})
    return updated


async def update_action_status(user: dict, action_id: str, status: str, resolution: Optional[str] = None) -> Dict[str, Any]:
    if status not in VALID_ACTION_STATUSES:
        raise ValidationFailed(errors=[{"field": "status", "message": f"must be one of {VALID_ACTION_STATUSES}"}])
    action = await get_scoped_action(user, action_id)

    now = now_iso()
    update = {"status": status, "updatedAt": now}
    if status == "resolved":
        update["completedAt"] = now
        if resolution:
            update["resolution"] = resolution
    unset = {} if status == "resolved" else {"completedAt": ""}

    ops = {"$set": update}
    if unset:
        ops["$unset"] = unset
    updated = await db.actions.find_one_and_update(
        {"id": action_id, "tenant": action["tenant"]},
        ops,
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    await log_event("action_status_changed", "action", action_id, user=user["id"], tenant=action["tenant"],
                    details={"from": action.get("status"), "to": status})
    return updated
