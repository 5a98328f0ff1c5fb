"""
RatePro - Export CSV des réponses d'une survey

RÈGLES:
- une ligne par réponse soumise, une colonne par question du snapshot publié
- valeurs liste jointes par " | ", matrices en row=value
- aucun token (resume, invite) dans l'export
"""

import csv
import io
from datetime import datetime, timezone
from typing import List, Dict, Any

BASE_COLUMNS = [
    "responseId",
    "submittedAt",
    "respondentType",
    "score",
    "rating",
    "review",
    "sentiment",
    "npsCategory",
    "flaggedForReview",
]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return " | ".join(_cell(v) for v in value)
    if isinstance(value, dict):
        return " | ".join(f"{k}={_cell(v)}" for k, v in value.items())
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


def generate_csv_content(responses: List[Dict[str, Any]], questions: List[Dict[str, Any]]) -> str:
    question_columns = [(q["id"], q.get("title") or q["id"]) for q in questions]
    # Titres en double: suffixe par l'id
    titles = [t for _, t in question_columns]
    headers = [t if titles.count(t) == 1 else f"{t} ({qid})" for qid, t in question_columns]

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(BASE_COLUMNS + headers)

    for r in responses:
        analysis = r.get("analysis") or {}
        answers = {a.get("questionId"): a.get("value") for a in r.get("answers") or []}
        writer.writerow([
            r.get("id"),
            r.get("submittedAt") or "",
            r.get("respondentType") or "",
            _cell(r.get("score")),
            _cell(r.get("rating")),
            r.get("review") or "",
            analysis.get("sentiment", ""),
            analysis.get("npsCategory") or "",
            _cell(analysis.get("flaggedForReview", False)),
        ] + [_cell(answers.get(qid)) for qid, _ in question_columns])

    return output.getvalue()


def generate_csv_filename(survey_title: str) -> str:
    date_str = datetime.now(timezone.utc).strftime("%Y%m%d")
    clean = "".join(c if c.isalnum() else "_" for c in (survey_title or "survey"))[:60]
    return f"responses_{clean}_{date_str}.csv"
