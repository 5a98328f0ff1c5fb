"""
RatePro - Dashboard counters

Alerts by priority, SLA on resolved actions, smart alerts feed and the
executive summary. averageResponseTime is measured (completedAt - createdAt).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional

from config import db, parse_iso
from services.analytics import (
    calculate_nps,
    calculate_csi,
    aggregate_sentiment,
    percentage,
    fetch_responses,
    require_tenant,
)

logger = logging.getLogger("dashboard")

PRIORITY_LEVELS = {"high": "critical", "medium": "warning", "low": "info"}
LOW_RATING_THRESHOLD = 2
LOW_RATING_ALERT_COUNT = 3
RESPONSE_SPIKE_COUNT = 20


def alert_counts(actions: List[Dict[str, Any]]) -> Dict[str, int]:
    """Open actions by priority: high -> critical, medium -> warning, low -> info."""
    counts = {"critical": 0, "warning": 0, "info": 0}
    for a in actions:
        if a.get("status") == "resolved":
            continue
        level = PRIORITY_LEVELS.get(a.get("priority"))
        if level:
            counts[level] += 1
    counts["total"] = counts["critical"] + counts["warning"] + counts["info"]
    return counts


def _is_overdue(action: Dict[str, Any], now: datetime) -> bool:
    due = action.get("dueDate")
    return bool(due) and action.get("status") != "resolved" and parse_iso(due) < now


def _on_time(action: Dict[str, Any]) -> bool:
    due = action.get("dueDate")
    if not due:
        return True
    completed = action.get("completedAt")
    return bool(completed) and parse_iso(completed) <= parse_iso(due)


def sla_metrics(actions: List[Dict[str, Any]], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    onTimeRate over resolved actions, averageResponseTime in hours from
    completedAt - createdAt, overdueActions = dueDate < now and not resolved.
    """
    now = now or datetime.now(timezone.utc)
    resolved = [a for a in actions if a.get("status") == "resolved"]
    on_time = sum(1 for a in resolved if _on_time(a))

    durations = []
    for a in resolved:
        if a.get("completedAt") and a.get("createdAt"):
            delta = parse_iso(a["completedAt"]) - parse_iso(a["createdAt"])
            durations.append(delta.total_seconds() / 3600)

    return {
        "totalActions": len(actions),
        "resolvedActions": len(resolved),
        "onTimeActions": on_time,
        "onTimeRate": percentage(on_time, len(resolved)),
        "averageResponseTime": round(sum(durations) / len(durations), 1) if durations else 0,
        "overdueActions": sum(1 for a in actions if _is_overdue(a, now)),
    }


def smart_alerts(
    actions: List[Dict[str, Any]],
    recent_responses: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    - every open high-priority action
    - >= 3 low ratings (<= 2) in the recent window
    - response spike (> 20 in the recent window)
    """
    alerts = []
    for a in actions:
        if a.get("priority") == "high" and a.get("status") != "resolved":
            alerts.append({
                "type": "critical",
                "kind": "high_priority_action",
                "title": a.get("title", ""),
                "reference": {"type": "Action", "id": a.get("id")},
                "createdAt": a.get("createdAt"),
            })

    low = [r for r in recent_responses if r.get("rating") is not None and r["rating"] <= LOW_RATING_THRESHOLD]
    if len(low) >= LOW_RATING_ALERT_COUNT:
        alerts.append({
            "type": "warning",
            "kind": "low_ratings",
            "title": f"{len(low)} low ratings in the last 24 hours",
            "count": len(low),
        })

    if len(recent_responses) > RESPONSE_SPIKE_COUNT:
        alerts.append({
            "type": "info",
            "kind": "response_spike",
            "title": f"{len(recent_responses)} responses in the last 24 hours",
            "count": len(recent_responses),
        })
    return alerts


# ════════════════════════════════════════════════════════════════════════
# DB-BACKED
# ════════════════════════════════════════════════════════════════════════

ACTION_FIELDS = {
    "_id": 0, "id": 1, "title": 1, "priority": 1, "status": 1, "dueDate": 1,
    "createdAt": 1, "completedAt": 1, "category": 1,
}


async def fetch_actions(action_query: Dict[str, Any], limit: int = 50000) -> List[Dict[str, Any]]:
    require_tenant(action_query)
    return await db.actions.find(action_query, ACTION_FIELDS).to_list(limit)


async def alerts_for(action_query: Dict[str, Any], response_query: Dict[str, Any]) -> Dict[str, Any]:
    actions = await fetch_actions(action_query)
    since = (datetime.now(timezone.utc) - timedelta(hours=24)).isoformat()
    recent = await fetch_responses({"$and": [response_query, {"createdAt": {"$gte": since}}]})
    return {
        "counts": alert_counts(actions),
        "alerts": smart_alerts(actions, recent),
    }


async def executive_for(action_query: Dict[str, Any], response_query: Dict[str, Any]) -> Dict[str, Any]:
    responses = await fetch_responses(response_query)
    actions = await fetch_actions(action_query)
    sentiment = aggregate_sentiment(responses)
    flagged = sum(1 for r in responses if (r.get("analysis") or {}).get("flaggedForReview"))
    return {
        "totalResponses": len(responses),
        "flaggedResponses": flagged,
        "nps": calculate_nps(r.get("score") for r in responses),
        "csi": calculate_csi(r.get("rating") for r in responses),
        "sentiment": {
            "distribution": sentiment["distribution"],
            "averageSentimentScore": sentiment["averageSentimentScore"],
        },
        "alerts": alert_counts(actions),
        "sla": sla_metrics(actions),
    }
