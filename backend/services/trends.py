"""
RatePro - Analytics Engine (trends, engagement, comparative)

Grouping on response createdAt:
- day   -> YYYY-MM-DD
- week  -> date of the week's Sunday (YYYY-MM-DD)
- month -> YYYY-MM
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Any, Optional, Tuple

from config import db, parse_iso
from services.analytics import (
    calculate_average,
    calculate_change,
    calculate_nps,
    calculate_csi,
    percentage,
    fetch_responses,
    require_tenant,
)

logger = logging.getLogger("trends")

INTERVALS = ("day", "week", "month")
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
COMPLAINT_SOURCES = ["survey_feedback", "ai_generated"]


# ════════════════════════════════════════════════════════════════════════
# PERIOD HELPERS
# ════════════════════════════════════════════════════════════════════════

def period_key(dt: datetime, interval: str) -> str:
    if interval == "month":
        return dt.strftime("%Y-%m")
    if interval == "week":
        # weekday(): Monday=0 ... Sunday=6
        start = dt - timedelta(days=(dt.weekday() + 1) % 7)
        return start.strftime("%Y-%m-%d")
    return dt.strftime("%Y-%m-%d")


def _next_period(dt: datetime, interval: str) -> datetime:
    if interval == "month":
        year = dt.year + (1 if dt.month == 12 else 0)
        month = 1 if dt.month == 12 else dt.month + 1
        return dt.replace(year=year, month=month, day=1)
    if interval == "week":
        return dt + timedelta(days=7)
    return dt + timedelta(days=1)


def period_range(start: datetime, end: datetime, interval: str) -> List[str]:
    """Contiguous list of period keys covering [start, end]."""
    if interval == "month":
        cursor = start.replace(day=1)
    elif interval == "week":
        cursor = start - timedelta(days=(start.weekday() + 1) % 7)
    else:
        cursor = start
    cursor = cursor.replace(hour=0, minute=0, second=0, microsecond=0)
    keys = []
    while cursor <= end:
        keys.append(period_key(cursor, interval))
        cursor = _next_period(cursor, interval)
    return keys


def default_window(days: int = 30, end: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    end = end or datetime.now(timezone.utc)
    return end - timedelta(days=days), end


def _group(responses: List[Dict[str, Any]], interval: str) -> Dict[str, List[Dict[str, Any]]]:
    groups = defaultdict(list)
    for r in responses:
        if not r.get("createdAt"):
            continue
        groups[period_key(parse_iso(r["createdAt"]), interval)].append(r)
    return groups


# ════════════════════════════════════════════════════════════════════════
# SATISFACTION / VOLUME
# ════════════════════════════════════════════════════════════════════════

def satisfaction_trend(responses: List[Dict[str, Any]], interval: str = "day") -> Dict[str, Any]:
    """Per-period avg rating/score/NPS with period-over-period change."""
    groups = _group(responses, interval)
    trend = []
    previous = None
    for key in sorted(groups):
        rows = groups[key]
        avg_rating = calculate_average(r.get("rating") for r in rows)
        point = {
            "period": key,
            "avgRating": avg_rating,
            "avgScore": calculate_average(r.get("score") for r in rows),
            "nps": calculate_nps(r.get("score") for r in rows)["score"],
            "responseCount": len(rows),
            "change": calculate_change(avg_rating, previous["avgRating"]) if previous else 0,
        }
        trend.append(point)
        previous = point

    direction = "stable"
    if len(trend) >= 2:
        delta = trend[-1]["avgRating"] - trend[0]["avgRating"]
        direction = "up" if delta > 0 else "down" if delta < 0 else "stable"

    return {
        "interval": interval,
        "trend": trend,
        "summary": {
            "totalResponses": len(responses),
            "overallAvgRating": calculate_average(r.get("rating") for r in responses),
            "overallAvgScore": calculate_average(r.get("score") for r in responses),
            "direction": direction,
        },
    }


def volume_trend(
    responses: List[Dict[str, Any]],
    interval: str,
    start: datetime,
    end: datetime,
) -> Dict[str, Any]:
    """Counts per period, gaps filled with zeros."""
    groups = _group(responses, interval)
    trend = []
    prev_count = None
    for key in period_range(start, end, interval):
        count = len(groups.get(key, []))
        change = 0 if prev_count is None else round((count - prev_count) / (prev_count or 1) * 100, 1)
        trend.append({"period": key, "count": count, "change": change})
        prev_count = count

    total = sum(p["count"] for p in trend)
    peak = max(trend, key=lambda p: p["count"]) if trend else None
    growth = calculate_change(trend[-1]["count"], trend[0]["count"]) if len(trend) >= 2 else 0
    return {
        "interval": interval,
        "trend": trend,
        "summary": {
            "totalResponses": total,
            "averagePerInterval": round(total / len(trend), 2) if trend else 0,
            "peakDate": peak["period"] if peak and peak["count"] else None,
            "peakCount": peak["count"] if peak else 0,
            "growthRate": growth,
        },
    }


# ════════════════════════════════════════════════════════════════════════
# COMPLAINTS (generated actions)
# ════════════════════════════════════════════════════════════════════════

def _by_category(actions: List[Dict[str, Any]]) -> Dict[str, Dict[str, int]]:
    cats = defaultdict(lambda: {"count": 0, "highPriority": 0, "resolved": 0})
    for a in actions:
        c = cats[a.get("category") or "uncategorized"]
        c["count"] += 1
        if a.get("priority") == "high":
            c["highPriority"] += 1
        if a.get("status") == "resolved":
            c["resolved"] += 1
    return cats


def complaint_trend(current: List[Dict[str, Any]], previous: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Generated actions by category, with up/down/stable against the previous window."""
    now_cats = _by_category(current)
    prev_cats = _by_category(previous)
    total = len(current)

    categories = []
    for name in sorted(set(now_cats) | set(prev_cats)):
        cur = now_cats.get(name, {"count": 0, "highPriority": 0, "resolved": 0})
        prev_count = prev_cats.get(name, {"count": 0})["count"]
        trend = "up" if cur["count"] > prev_count else "down" if cur["count"] < prev_count else "stable"
        categories.append({
            "category": name,
            **cur,
            "percentage": percentage(cur["count"], total),
            "previousCount": prev_count,
            "trend": trend,
        })
    categories.sort(key=lambda c: c["count"], reverse=True)
    return {
        "categories": categories,
        "total": total,
        "previousTotal": len(previous),
        "change": calculate_change(total, len(previous)),
    }


# ════════════════════════════════════════════════════════════════════════
# ENGAGEMENT
# ════════════════════════════════════════════════════════════════════════

def engagement_patterns(responses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """24 hourly and 7 daily (Sunday first) buckets over createdAt."""
    hours = [0] * 24
    days = [0] * 7
    for r in responses:
        if not r.get("createdAt"):
            continue
        dt = parse_iso(r["createdAt"])
        hours[dt.hour] += 1
        days[(dt.weekday() + 1) % 7] += 1

    hourly = [{"hour": h, "count": c, "hourFormatted": f"{h}:00 - {h + 1}:00"} for h, c in enumerate(hours)]
    daily = [{"day": d, "dayName": DAY_NAMES[d], "count": c} for d, c in enumerate(days)]
    peak_hour = max(range(24), key=lambda h: hours[h]) if responses else None
    peak_day = max(range(7), key=lambda d: days[d]) if responses else None
    times = [r.get("completionTime") for r in responses if r.get("completionTime")]

    return {
        "hourly": hourly,
        "daily": daily,
        "peakHour": peak_hour,
        "peakHourFormatted": hourly[peak_hour]["hourFormatted"] if peak_hour is not None else None,
        "peakDay": DAY_NAMES[peak_day] if peak_day is not None else None,
        "avgCompletionTime": round(sum(times) / len(times)) if times else 0,
        "totalResponses": len(responses),
    }


# ════════════════════════════════════════════════════════════════════════
# COMPARATIVE
# ════════════════════════════════════════════════════════════════════════

def window_metrics(responses: List[Dict[str, Any]]) -> Dict[str, Any]:
    flagged = sum(1 for r in responses if (r.get("analysis") or {}).get("flaggedForReview"))
    return {
        "totalResponses": len(responses),
        "avgRating": calculate_average(r.get("rating") for r in responses),
        "avgScore": calculate_average(r.get("score") for r in responses),
        "nps": calculate_nps(r.get("score") for r in responses)["score"],
        "csi": calculate_csi(r.get("rating") for r in responses)["score"],
        "flaggedResponses": flagged,
    }


def comparative(current: List[Dict[str, Any]], previous: List[Dict[str, Any]]) -> Dict[str, Any]:
    cur = window_metrics(current)
    prev = window_metrics(previous)
    return {
        "current": cur,
        "previous": prev,
        "changes": {k: calculate_change(cur[k], prev[k]) for k in cur},
    }


# ════════════════════════════════════════════════════════════════════════
# DB-BACKED
# ════════════════════════════════════════════════════════════════════════

def _window_query(query: Dict[str, Any], start: datetime, end: datetime) -> Dict[str, Any]:
    return {"$and": [query, {"createdAt": {"$gte": start.isoformat(), "$lte": end.isoformat()}}]}


def previous_window(start: datetime, end: datetime) -> Tuple[datetime, datetime]:
    span = end - start
    return start - span, start


async def satisfaction_for(query, start: datetime, end: datetime, interval: str = "day"):
    return satisfaction_trend(await fetch_responses(_window_query(query, start, end)), interval)


async def volume_for(query, start: datetime, end: datetime, interval: str = "day"):
    return volume_trend(await fetch_responses(_window_query(query, start, end)), interval, start, end)


async def engagement_for(query, start: datetime, end: datetime):
    return engagement_patterns(await fetch_responses(_window_query(query, start, end)))


async def comparative_for(query, start: datetime, end: datetime):
    prev_start, prev_end = previous_window(start, end)
    current = await fetch_responses(_window_query(query, start, end))
    previous = await fetch_responses({"$and": [query, {"createdAt": {"$gte": prev_start.isoformat(), "$lt": prev_end.isoformat()}}]})
    result = comparative(current, previous)
    result["window"] = {
        "current": {"start": start.isoformat(), "end": end.isoformat()},
        "previous": {"start": prev_start.isoformat(), "end": prev_end.isoformat()},
    }
    return result


async def complaints_for(action_query: Dict[str, Any], start: datetime, end: datetime):
    require_tenant(action_query)
    prev_start, prev_end = previous_window(start, end)
    projection = {"_id": 0, "category": 1, "priority": 1, "status": 1}
    source = {"source": {"$in": COMPLAINT_SOURCES}}
    current = await db.actions.find(
        {"$and": [action_query, source, {"createdAt": {"$gte": start.isoformat(), "$lte": end.isoformat()}}]},
        projection
    ).to_list(50000)
    previous = await db.actions.find(
        {"$and": [action_query, source, {"createdAt": {"$gte": prev_start.isoformat(), "$lt": prev_end.isoformat()}}]},
        projection
    ).to_list(50000)
    return complaint_trend(current, previous)
