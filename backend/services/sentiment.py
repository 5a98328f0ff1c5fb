"""
RatePro - Sentiment analysis contract

Text extraction, prompt, and tolerant parsing of the model reply.
A reply that cannot be parsed is a neutral analysis with confidence 0.
"""

import re
import json
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger("sentiment")

MIN_TEXT_LENGTH = 5
MIN_ANSWER_LENGTH = 2
VALID_SENTIMENTS = ("positive", "neutral", "negative")

_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def extract_text(review: Optional[str], answers: List[Dict[str, Any]]) -> str:
    """review + string answers longer than 2 chars, newline-joined."""
    parts = []
    if isinstance(review, str) and review.strip():
        parts.append(review.strip())
    for answer in answers or []:
        value = answer.get("value")
        if isinstance(value, str) and len(value.strip()) > MIN_ANSWER_LENGTH:
            parts.append(value.strip())
    return "\n".join(parts)


def neutral_analysis(confidence: float = 0.5, summary: str = "") -> Dict[str, Any]:
    return {
        "sentiment": "neutral",
        "sentimentScore": 0.0,
        "confidence": confidence,
        "emotions": [],
        "keywords": [],
        "themes": [],
        "classification": {"isComplaint": False, "isPraise": False, "isSuggestion": False},
        "summary": summary,
    }


def build_prompt(text: str) -> str:
    return (
        "Analyze the sentiment of this customer feedback and return ONLY a JSON object "
        "with exactly these fields:\n"
        '{"sentiment": "positive|neutral|negative", '
        '"sentimentScore": <number between -1 and 1>, '
        '"confidence": <number between 0 and 1>, '
        '"emotions": [<strings>], '
        '"keywords": [<up to 10 strings>], '
        '"themes": [<up to 5 strings>], '
        '"classification": {"isComplaint": <bool>, "isPraise": <bool>, "isSuggestion": <bool>}, '
        '"summary": "<one sentence>"}\n\n'
        f"Feedback:\n{text}"
    )


def extract_json(raw: str) -> Optional[Dict[str, Any]]:
    """Strip code fences, take the first {...} object, parse it."""
    if not raw:
        return None
    fenced = _FENCE.search(raw)
    candidate = fenced.group(1) if fenced else raw
    match = _OBJECT.search(candidate)
    if not match:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _clamp(value: Any, lo: float, hi: float, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, v))


def _strings(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()][:limit]


def parse_analysis(raw: str) -> Dict[str, Any]:
    """Model reply -> normalized analysis (neutral/confidence 0 on failure)."""
    data = extract_json(raw)
    if data is None:
        logger.warning("[ENRICH] AI reply is not parseable JSON, neutral fallback")
        return neutral_analysis(confidence=0.0)

    sentiment = str(data.get("sentiment", "neutral")).lower()
    if sentiment not in VALID_SENTIMENTS:
        sentiment = "neutral"
    classification = data.get("classification") or {}
    if not isinstance(classification, dict):
        classification = {}

    return {
        "sentiment": sentiment,
        "sentimentScore": _clamp(data.get("sentimentScore"), -1.0, 1.0, 0.0),
        "confidence": _clamp(data.get("confidence"), 0.0, 1.0, 0.0),
        "emotions": _strings(data.get("emotions"), 10),
        "keywords": _strings(data.get("keywords"), 10),
        "themes": _strings(data.get("themes"), 5),
        "classification": {
            "isComplaint": bool(classification.get("isComplaint", False)),
            "isPraise": bool(classification.get("isPraise", False)),
            "isSuggestion": bool(classification.get("isSuggestion", False)),
        },
        "summary": str(data.get("summary") or "")[:500],
    }
