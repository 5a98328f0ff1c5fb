"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Analytics Engine (metrics)                                        ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  - lecture seule, toujours filtrée par tenant au niveau de la requête        ║
║  - consomme l'analyse stockée, ne relance jamais l'IA                        ║
║  - ensemble vide => structure à zéro, jamais d'erreur                        ║
║  - pourcentages arrondis à 1 décimale, NPS et CSI à 2                        ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from collections import Counter
from typing import List, Dict, Any, Optional, Iterable

from config import db
from services.errors import NoTenantContext
from services.scoring import DEFAULT_MAX_RATING

logger = logging.getLogger("analytics")

SENTIMENTS = ("positive", "neutral", "negative")
RESPONSE_FIELDS = {
    "_id": 0, "id": 1, "survey": 1, "contact": 1, "score": 1, "rating": 1,
    "answers": 1, "analysis": 1, "createdAt": 1, "completionTime": 1, "isAnonymous": 1,
}


def percentage(part: float, total: float) -> float:
    return round(part / total * 100, 1) if total else 0


def calculate_average(values: Iterable[Optional[float]]) -> float:
    vals = [v for v in values if v is not None]
    return round(sum(vals) / len(vals), 2) if vals else 0


def calculate_change(current: float, previous: float) -> float:
    """% change; previous=0 -> 100 when current>0 else 0."""
    if not previous:
        return 100 if current > 0 else 0
    return round((current - previous) / abs(previous) * 100, 1)


def normalize_score(value: float, from_range=(0, 10), to_range=(0, 100)) -> float:
    """Linear rescale of value from from_range to to_range."""
    lo, hi = from_range
    out_lo, out_hi = to_range
    if hi == lo:
        return out_lo
    return round(out_lo + (value - lo) * (out_hi - out_lo) / (hi - lo), 2)


# ════════════════════════════════════════════════════════════════════════
# NPS / CSI
# ════════════════════════════════════════════════════════════════════════

def calculate_nps(scores: Iterable[Optional[float]]) -> Dict[str, Any]:
    """NPS = 100 * (promoters - detractors) / valid, valid = score in [0, 10]."""
    valid = [s for s in scores if s is not None and 0 <= s <= 10]
    total = len(valid)
    promoters = sum(1 for s in valid if s >= 9)
    detractors = sum(1 for s in valid if s <= 6)
    passives = total - promoters - detractors

    if total == 0:
        return {
            "score": 0,
            "promoters": 0,
            "passives": 0,
            "detractors": 0,
            "totalResponses": 0,
            "distribution": {"promoters": 0, "passives": 0, "detractors": 0},
        }

    return {
        "score": round((promoters - detractors) / total * 100, 2),
        "promoters": promoters,
        "passives": passives,
        "detractors": detractors,
        "totalResponses": total,
        "distribution": {
            "promoters": percentage(promoters, total),
            "passives": percentage(passives, total),
            "detractors": percentage(detractors, total),
        },
    }


def calculate_csi(ratings: Iterable[Optional[float]], max_rating: float = DEFAULT_MAX_RATING) -> Dict[str, Any]:
    """CSI = average / max * 100 over ratings in [1, max]."""
    valid = [r for r in ratings if r is not None and 1 <= r <= max_rating]
    if not valid:
        return {"score": 0, "averageRating": 0, "maxRating": max_rating, "totalResponses": 0}
    average = sum(valid) / len(valid)
    return {
        "score": round(average / max_rating * 100, 2),
        "averageRating": round(average, 2),
        "maxRating": max_rating,
        "totalResponses": len(valid),
    }


def compare_survey_nps(per_survey: List[Dict[str, Any]]) -> Dict[str, Any]:
    """per_survey: [{surveyId, title, nps}] -> sorted desc + best/worst/average."""
    ranked = sorted(per_survey, key=lambda s: s["nps"], reverse=True)
    if not ranked:
        return {"surveys": [], "best": None, "worst": None, "averageNPS": 0}
    return {
        "surveys": ranked,
        "best": ranked[0],
        "worst": ranked[-1],
        "averageNPS": calculate_average(s["nps"] for s in ranked),
    }


# ════════════════════════════════════════════════════════════════════════
# SENTIMENT (stored analysis only)
# ════════════════════════════════════════════════════════════════════════

def aggregate_sentiment(responses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Distribution, top 10 keywords, top 5 themes, emotions and
    classification counts. Responses not analyzed yet count as neutral.
    """
    distribution = {s: 0 for s in SENTIMENTS}
    keywords = Counter()
    themes = Counter()
    emotions = Counter()
    complaints = praise = suggestions = 0
    scores = []
    analyzed = 0

    for response in responses:
        analysis = response.get("analysis") or {}
        sentiment = analysis.get("sentiment")
        if sentiment not in distribution:
            sentiment = "neutral"
        distribution[sentiment] += 1
        if not analysis.get("analyzedAt"):
            continue
        analyzed += 1
        if analysis.get("sentimentScore") is not None:
            scores.append(analysis["sentimentScore"])
        keywords.update(k.lower() for k in analysis.get("keywords") or [] if isinstance(k, str))
        themes.update(t.lower() for t in analysis.get("themes") or [] if isinstance(t, str))
        emotions.update(e.lower() for e in analysis.get("emotions") or [] if isinstance(e, str))
        classification = analysis.get("classification") or {}
        complaints += 1 if classification.get("isComplaint") else 0
        praise += 1 if classification.get("isPraise") else 0
        suggestions += 1 if classification.get("isSuggestion") else 0

    total = len(responses)
    return {
        "totalResponses": total,
        "totalAnalyzed": analyzed,
        "distribution": distribution,
        "percentages": {s: percentage(c, total) for s, c in distribution.items()},
        "averageSentimentScore": calculate_average(scores),
        "topKeywords": [{"keyword": k, "count": c} for k, c in keywords.most_common(10)],
        "topThemes": [{"theme": t, "count": c} for t, c in themes.most_common(5)],
        "emotionDistribution": dict(emotions),
        "classification": {
            "complaints": complaints,
            "praise": praise,
            "suggestions": suggestions,
        },
    }


def sentiment_heatmap(responses: List[Dict[str, Any]], questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One row per response; per-question cells for free-text answers."""
    titles = {q.get("id"): q.get("title", "") for q in questions}
    rows = []
    for response in responses:
        analysis = response.get("analysis") or {}
        sentiment = analysis.get("sentiment", "neutral")
        cells = []
        for answer in response.get("answers") or []:
            value = answer.get("value")
            if isinstance(value, str) and value.strip():
                cells.append({
                    "questionId": answer.get("questionId"),
                    "question": titles.get(answer.get("questionId"), ""),
                    "answer": value[:200],
                    "sentiment": sentiment,
                })
        rows.append({
            "responseId": response.get("id"),
            "createdAt": response.get("createdAt"),
            "overallSentiment": sentiment,
            "overallScore": analysis.get("sentimentScore", 0),
            "questions": cells,
        })
    return rows


def demographics(responses: List[Dict[str, Any]], contacts: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Response counts by contact country / city; responses without contact are 'unknown'."""
    by_country = Counter()
    by_city = Counter()
    for response in responses:
        contact = contacts.get(response.get("contact")) or {}
        enrichment = contact.get("enrichment") or {}
        by_country[enrichment.get("country") or "unknown"] += 1
        by_city[enrichment.get("city") or "unknown"] += 1
    total = len(responses)
    return {
        "totalResponses": total,
        "byCountry": [{"country": k, "count": c, "percentage": percentage(c, total)} for k, c in by_country.most_common()],
        "byCity": [{"city": k, "count": c, "percentage": percentage(c, total)} for k, c in by_city.most_common(20)],
    }


# ════════════════════════════════════════════════════════════════════════
# DB-BACKED (tenant-scoped)
# ════════════════════════════════════════════════════════════════════════

def has_tenant_predicate(query: Dict[str, Any]) -> bool:
    if query.get("tenant"):
        return True
    return any(has_tenant_predicate(part) for part in query.get("$and", []))


def require_tenant(query: Dict[str, Any]):
    """Analytics never run without a tenant predicate."""
    if not has_tenant_predicate(query):
        raise NoTenantContext("Analytics require a tenant scope")


def date_range_filter(start: Optional[str], end: Optional[str], field: str = "createdAt") -> Dict[str, Any]:
    rng = {}
    if start:
        rng["$gte"] = start
    if end:
        rng["$lte"] = end
    return {field: rng} if rng else {}


async def fetch_responses(query: Dict[str, Any], limit: int = 50000) -> List[Dict[str, Any]]:
    require_tenant(query)
    return await db.survey_responses.find(
        {"$and": [query, {"status": "submitted"}]}, RESPONSE_FIELDS
    ).to_list(limit)


async def nps_for(query: Dict[str, Any]) -> Dict[str, Any]:
    responses = await fetch_responses(query)
    return calculate_nps(r.get("score") for r in responses)


async def csi_for(query: Dict[str, Any], max_rating: float = DEFAULT_MAX_RATING) -> Dict[str, Any]:
    responses = await fetch_responses(query)
    return calculate_csi((r.get("rating") for r in responses), max_rating)


async def sentiment_for(query: Dict[str, Any]) -> Dict[str, Any]:
    return aggregate_sentiment(await fetch_responses(query))


async def sentiment_breakdown_by_survey(query: Dict[str, Any], surveys: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    responses = await fetch_responses(query)
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for r in responses:
        grouped.setdefault(r.get("survey"), []).append(r)
    out = []
    for survey in surveys:
        agg = aggregate_sentiment(grouped.get(survey["id"], []))
        out.append({
            "surveyId": survey["id"],
            "title": survey.get("title", ""),
            "totalResponses": agg["totalResponses"],
            "distribution": agg["distribution"],
            "averageSentimentScore": agg["averageSentimentScore"],
        })
    return out


async def compare_surveys_for(query: Dict[str, Any], surveys: List[Dict[str, Any]]) -> Dict[str, Any]:
    responses = await fetch_responses(query)
    scores: Dict[str, List[float]] = {}
    for r in responses:
        scores.setdefault(r.get("survey"), []).append(r.get("score"))
    per_survey = [
        {"surveyId": s["id"], "title": s.get("title", ""), "nps": calculate_nps(scores.get(s["id"], []))["score"]}
        for s in surveys
    ]
    return compare_survey_nps(per_survey)


async def demographics_for(query: Dict[str, Any]) -> Dict[str, Any]:
    responses = await fetch_responses(query)
    contact_ids = list({r["contact"] for r in responses if r.get("contact")})
    contacts = {}
    if contact_ids:
        tenant_q = {"id": {"$in": contact_ids}}
        rows = await db.contacts.find({"$and": [query_tenant_only(query), tenant_q]},
                                      {"_id": 0, "id": 1, "enrichment": 1}).to_list(len(contact_ids))
        contacts = {c["id"]: c for c in rows}
    return demographics(responses, contacts)


def query_tenant_only(query: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the tenant equality from a (possibly $and-composed) predicate."""
    if "tenant" in query:
        return {"tenant": query["tenant"]}
    for part in query.get("$and", []):
        found = query_tenant_only(part)
        if found:
            return found
    return {}
