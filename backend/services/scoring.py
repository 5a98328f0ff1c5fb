"""
RatePro - Scoring helpers

NPS / rating categorisation, text-to-number answer mapping, flag rule.
Pure functions, shared by ingestion, enrichment, stats and analytics.
"""

from typing import Optional, Tuple, List, Dict, Any

DEFAULT_MAX_RATING = 5

NPS_TEXT_VALUES = {
    "not at all likely": 0,
    "not likely": 2,
    "unlikely": 3,
    "somewhat unlikely": 4,
    "neutral": 5,
    "somewhat likely": 6,
    "likely": 7,
    "very likely": 9,
    "extremely likely": 10,
}

RATING_TEXT_VALUES = {
    "very poor": 1,
    "poor": 2,
    "average": 3,
    "fair": 3,
    "good": 4,
    "very good": 5,
    "excellent": 5,
}

RATING_BINS = [
    (0.8, "excellent"),
    (0.6, "good"),
    (0.4, "average"),
    (0.2, "poor"),
]


def nps_category(score: Optional[float]) -> Optional[str]:
    """promoter (>=9), passive (7-8), detractor (<=6); None without score."""
    if score is None:
        return None
    if score >= 9:
        return "promoter"
    if score <= 6:
        return "detractor"
    return "passive"


def categorize_rating(rating: Optional[float], max_rating: float = DEFAULT_MAX_RATING) -> Optional[str]:
    """rating/max bins: >=0.8 excellent, >=0.6 good, >=0.4 average, >=0.2 poor, else very_poor."""
    if rating is None or not max_rating:
        return None
    ratio = rating / max_rating
    for threshold, label in RATING_BINS:
        if ratio >= threshold:
            return label
    return "very_poor"


def parse_answer_value(value: Any, question_type: str) -> Optional[float]:
    """
    Map an answer to a number for nps/rating-like questions.
    Accepts numbers, numeric strings, and known labels ("very likely", "excellent").
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            pass
        if question_type == "nps":
            mapped = NPS_TEXT_VALUES.get(text)
        else:
            mapped = RATING_TEXT_VALUES.get(text)
        return float(mapped) if mapped is not None else None
    return None


def clamp_nps(value: float) -> float:
    return max(0.0, min(10.0, value))


def extract_score_and_rating(
    answers: List[Dict[str, Any]],
    questions: List[Dict[str, Any]],
) -> Tuple[Optional[float], Optional[float]]:
    """
    First nps answer -> score (clamped 0-10); first rating/scale/likert answer -> rating.
    numeric questions whose max is 10 count as NPS when no nps question exists.
    """
    by_id = {q.get("id"): q for q in questions}
    score = None
    rating = None
    numeric_fallback = None

    for answer in answers:
        question = by_id.get(answer.get("questionId"))
        if not question:
            continue
        qtype = question.get("type")
        value = parse_answer_value(answer.get("value"), qtype)
        if value is None:
            continue
        if qtype == "nps" and score is None:
            score = clamp_nps(value)
        elif qtype in ("rating", "scale", "likert") and rating is None:
            rating = value
        elif qtype == "numeric" and numeric_fallback is None and question.get("max") == 10:
            numeric_fallback = clamp_nps(value)

    if score is None and numeric_fallback is not None:
        score = numeric_fallback
    return score, rating


def is_flagged(
    rating: Optional[float],
    score: Optional[float],
    sentiment: Optional[str],
    confidence: float,
    is_complaint: bool,
) -> Tuple[bool, List[str]]:
    """
    flaggedForReview = rating<=2 or score<=6 or (negative and confidence>=0.6) or complaint.
    Returns (flagged, triggered rule names).
    """
    rules = []
    if rating is not None and rating <= 2:
        rules.append("low_rating")
    if score is not None and score <= 6:
        rules.append("nps_detractor")
    if sentiment == "negative" and confidence >= 0.6:
        rules.append("negative_sentiment")
    if is_complaint:
        rules.append("complaint")
    return bool(rules), rules
