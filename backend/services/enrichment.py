"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Enrichment Pipeline                                               ║
║                                                                              ║
║  1. Texte = review + réponses texte                                          ║
║  2. Texte < 5 caractères => analyse neutre par défaut                        ║
║  3. Appel IA (contrat JSON strict), parsing tolérant                         ║
║  4. npsCategory / ratingCategory / flaggedForReview                          ║
║  5. Écriture atomique du bloc analysis, conditionnelle sur analyzedAt        ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - une erreur IA transitoire remonte (retry par la queue)                    ║
║  - toute autre erreur IA => neutre, confidence 0                             ║
║  - un job plus ancien que l'analyse en place n'écrit rien                    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from typing import Dict, Any, Optional

from config import db, now_iso
from models.response import Analysis
from services import ai_client
from services.errors import TransientError, ConfigMissing
from services.scoring import nps_category, categorize_rating, is_flagged, DEFAULT_MAX_RATING
from services.sentiment import (
    MIN_TEXT_LENGTH,
    extract_text,
    neutral_analysis,
    build_prompt,
    parse_analysis,
)

logger = logging.getLogger("enrichment")


async def analyze_text(text: str) -> Dict[str, Any]:
    """Sentiment/classification for a text. TransientError propagates."""
    if len(text.strip()) < MIN_TEXT_LENGTH:
        return neutral_analysis(confidence=0.5, summary="No significant text content")
    try:
        raw = await ai_client.generate_text(build_prompt(text))
    except TransientError:
        raise
    except (ai_client.AIProviderError, ConfigMissing) as e:
        logger.warning(f"[ENRICH] AI unavailable ({e}), neutral fallback")
        return neutral_analysis(confidence=0.0)
    return parse_analysis(raw)


def rating_scale(survey: Optional[Dict[str, Any]]) -> float:
    """max of the first rating-like question of the published snapshot."""
    snapshot = (survey or {}).get("publishedSnapshot") or {}
    for q in snapshot.get("questions") or []:
        if q.get("type") in ("rating", "scale", "likert") and q.get("max"):
            return float(q["max"])
    return DEFAULT_MAX_RATING


def build_analysis(ai_result: Dict[str, Any], response: Dict[str, Any], max_rating: float) -> Dict[str, Any]:
    """Merge the AI result with the quantitative categories and the flag rule."""
    score = response.get("score")
    rating = response.get("rating")
    classification = ai_result.get("classification") or {}
    flagged, rules = is_flagged(
        rating,
        score,
        ai_result.get("sentiment"),
        ai_result.get("confidence", 0.0),
        bool(classification.get("isComplaint")),
    )
    return Analysis(
        **ai_result,
        npsCategory=nps_category(score),
        ratingCategory=categorize_rating(rating, max_rating),
        flaggedForReview=flagged,
        triggeredRules=rules,
        analyzedAt=now_iso(),
    ).model_dump()


async def write_analysis(response_id: str, tenant: str, analysis: Dict[str, Any], dispatched_at: Optional[str]) -> bool:
    """
    Replace the whole analysis block, only if none exists yet or the
    existing one predates this job's dispatch.
    """
    guard = [{"analysis": None}, {"analysis.analyzedAt": None}]
    if dispatched_at:
        guard.append({"analysis.analyzedAt": {"$lt": dispatched_at}})
    result = await db.survey_responses.update_one(
        {"id": response_id, "tenant": tenant, "$or": guard},
        {"$set": {"analysis": analysis}},
    )
    return result.modified_count == 1


async def _load(response_id: str, tenant: str):
    response = await db.survey_responses.find_one({"id": response_id, "tenant": tenant}, {"_id": 0})
    if not response:
        logger.warning(f"[ENRICH] response={response_id} not found for tenant={tenant}")
        return None, None
    survey = await db.surveys.find_one(
        {"id": response["survey"], "tenant": tenant},
        {"_id": 0, "publishedSnapshot": 1}
    )
    return response, survey


async def enrich_response(response_id: str, tenant: str, dispatched_at: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Run enrichment for one response. Returns the analysis now stored
    (None when the response does not exist in this tenant).
    """
    response, survey = await _load(response_id, tenant)
    if response is None:
        return None

    text = extract_text(response.get("review"), response.get("answers") or [])
    ai_result = await analyze_text(text)
    analysis = build_analysis(ai_result, response, rating_scale(survey))

    if await write_analysis(response_id, tenant, analysis, dispatched_at or now_iso()):
        logger.info(
            f"[ENRICH] response={response_id} sentiment={analysis['sentiment']} "
            f"flagged={analysis['flaggedForReview']} rules={analysis['triggeredRules']}"
        )
        return analysis

    logger.info(f"[ENRICH] response={response_id} newer analysis already stored, kept")
    current = await db.survey_responses.find_one({"id": response_id}, {"_id": 0, "analysis": 1})
    return (current or {}).get("analysis")


async def write_fallback_analysis(response_id: str, tenant: str) -> Optional[Dict[str, Any]]:
    """Neutral default (confidence 0) after retries are exhausted; never overwrites a real analysis."""
    response, survey = await _load(response_id, tenant)
    if response is None:
        return None
    analysis = build_analysis(neutral_analysis(confidence=0.0), response, rating_scale(survey))
    analysis["triggeredRules"] = analysis["triggeredRules"] + ["ai_unavailable"]
    if await write_analysis(response_id, tenant, analysis, None):
        logger.warning(f"[ENRICH] response={response_id} neutral fallback stored")
        return analysis
    current = await db.survey_responses.find_one({"id": response_id}, {"_id": 0, "analysis": 1})
    return (current or {}).get("analysis")
