"""
RatePro - Routes Analytics
Dashboard exécutif, NPS/CSI, sentiment, tendances, démographie, export.

Double portée: un utilisateur tenant lit son tenant (filtré par
département), l'admin plateforme doit passer ?tenant_id=...
"""

import csv
import io
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from config import db, parse_iso
from services import analytics, dashboard, trends
from services.errors import NotFound, ValidationFailed
from services.permissions import ADMIN, require_action, scoped_filter, tenant_filter, and_filters
from services.scoring import DEFAULT_MAX_RATING

router = APIRouter(prefix="/analytics", tags=["Analytics"])

analytics_user = require_action("analytics:view", tenant_param="tenant_id")


async def _response_query(
    user: dict,
    tenant_id: Optional[str],
    survey_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> dict:
    extra = {"survey": survey_id} if survey_id else {}
    return and_filters(
        await scoped_filter(user, "responses", tenant_id),
        extra,
        analytics.date_range_filter(start_date, end_date),
    )


async def _action_query(user: dict, tenant_id: Optional[str]) -> dict:
    return await scoped_filter(user, "actions", tenant_id)


async def _visible_surveys(user: dict, tenant_id: Optional[str]) -> list:
    if user.get("role") == ADMIN:
        query = and_filters(tenant_filter(user, tenant_id), {"deleted": {"$ne": True}})
    else:
        query = await scoped_filter(user, "surveys")
    return await db.surveys.find(query, {"_id": 0, "id": 1, "title": 1, "questions": 1, "publishedSnapshot": 1}) \
        .sort("createdAt", -1).to_list(1000)


async def _survey(user: dict, tenant_id: Optional[str], survey_id: str) -> dict:
    for survey in await _visible_surveys(user, tenant_id):
        if survey["id"] == survey_id:
            return survey
    raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")


def _window(start_date: Optional[str], end_date: Optional[str], days: int) -> Tuple[datetime, datetime]:
    try:
        end = parse_iso(end_date) if end_date else datetime.now(timezone.utc)
        start = parse_iso(start_date) if start_date else trends.default_window(days, end)[0]
    except ValueError:
        raise ValidationFailed("Invalid date", errors=[{"field": "start_date/end_date", "message": "ISO-8601 expected"}])
    if start > end:
        raise ValidationFailed("Invalid date range", errors=[{"field": "start_date", "message": "must precede end_date"}])
    return start, end


def _interval(value: str) -> str:
    if value not in trends.INTERVALS:
        raise ValidationFailed(errors=[{"field": "interval", "message": f"one of {', '.join(trends.INTERVALS)}"}])
    return value


# ==================== DASHBOARD ====================

@router.get("/executive")
async def executive_dashboard(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    response_query = await _response_query(user, tenant_id, survey_id, start_date, end_date)
    return await dashboard.executive_for(await _action_query(user, tenant_id), response_query)


@router.get("/alerts")
async def smart_alerts(tenant_id: Optional[str] = None, user: dict = Depends(analytics_user)):
    return await dashboard.alerts_for(await _action_query(user, tenant_id), await _response_query(user, tenant_id))


# ==================== NPS / CSI ====================

@router.get("/nps")
async def nps(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    return await analytics.nps_for(await _response_query(user, tenant_id, survey_id, start_date, end_date))


@router.get("/csi")
async def csi(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    max_rating: float = DEFAULT_MAX_RATING,
    user: dict = Depends(analytics_user)
):
    if max_rating <= 0:
        raise ValidationFailed(errors=[{"field": "max_rating", "message": "must be positive"}])
    query = await _response_query(user, tenant_id, survey_id, start_date, end_date)
    return await analytics.csi_for(query, max_rating)


@router.get("/compare-surveys")
async def compare_surveys(
    tenant_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    surveys = await _visible_surveys(user, tenant_id)
    query = await _response_query(user, tenant_id, None, start_date, end_date)
    return await analytics.compare_surveys_for(query, surveys)


# ==================== SENTIMENT ====================

@router.get("/sentiment")
async def sentiment_overview(
    tenant_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    return await analytics.sentiment_for(await _response_query(user, tenant_id, None, start_date, end_date))


@router.get("/sentiment/breakdown")
async def sentiment_breakdown(tenant_id: Optional[str] = None, user: dict = Depends(analytics_user)):
    surveys = await _visible_surveys(user, tenant_id)
    breakdown = await analytics.sentiment_breakdown_by_survey(await _response_query(user, tenant_id), surveys)
    return {"surveys": breakdown}


@router.get("/sentiment/survey/{survey_id}")
async def sentiment_for_survey(survey_id: str, tenant_id: Optional[str] = None, user: dict = Depends(analytics_user)):
    survey = await _survey(user, tenant_id, survey_id)
    result = await analytics.sentiment_for(await _response_query(user, tenant_id, survey["id"]))
    return {"surveyId": survey["id"], "title": survey.get("title", ""), **result}


@router.get("/sentiment/heatmap/{survey_id}")
async def sentiment_heatmap(
    survey_id: str,
    tenant_id: Optional[str] = None,
    limit: int = 200,
    user: dict = Depends(analytics_user)
):
    survey = await _survey(user, tenant_id, survey_id)
    responses = await analytics.fetch_responses(
        await _response_query(user, tenant_id, survey["id"]), limit=min(limit, 1000)
    )
    questions = (survey.get("publishedSnapshot") or {}).get("questions") or survey.get("questions") or []
    return {"surveyId": survey["id"], "rows": analytics.sentiment_heatmap(responses, questions)}


# ==================== TENDANCES ====================

@router.get("/trends/satisfaction")
async def satisfaction_trend(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    interval: str = "day",
    days: int = 30,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    start, end = _window(start_date, end_date, days)
    query = await _response_query(user, tenant_id, survey_id)
    return await trends.satisfaction_for(query, start, end, _interval(interval))


@router.get("/trends/volume")
async def volume_trend(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    interval: str = "day",
    days: int = 30,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    start, end = _window(start_date, end_date, days)
    query = await _response_query(user, tenant_id, survey_id)
    return await trends.volume_for(query, start, end, _interval(interval))


@router.get("/trends/complaints")
async def complaint_trend(
    tenant_id: Optional[str] = None,
    days: int = 30,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    start, end = _window(start_date, end_date, days)
    return await trends.complaints_for(await _action_query(user, tenant_id), start, end)


@router.get("/trends/engagement")
async def engagement(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    days: int = 30,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    start, end = _window(start_date, end_date, days)
    return await trends.engagement_for(await _response_query(user, tenant_id, survey_id), start, end)


@router.get("/trends/compare")
async def compare_periods(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    days: int = 30,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    """Fenêtre courante vs fenêtre précédente de même durée."""
    start, end = _window(start_date, end_date, days)
    return await trends.comparative_for(await _response_query(user, tenant_id, survey_id), start, end)


@router.get("/trends/all")
async def all_trends(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    interval: str = "day",
    days: int = 30,
    user: dict = Depends(analytics_user)
):
    start, end = _window(None, None, days)
    interval = _interval(interval)
    query = await _response_query(user, tenant_id, survey_id)
    return {
        "satisfaction": await trends.satisfaction_for(query, start, end, interval),
        "volume": await trends.volume_for(query, start, end, interval),
        "complaints": await trends.complaints_for(await _action_query(user, tenant_id), start, end),
        "engagement": await trends.engagement_for(query, start, end),
        "comparative": await trends.comparative_for(query, start, end),
    }


# ==================== DÉMOGRAPHIE ====================

@router.get("/demographics")
async def demographics(
    tenant_id: Optional[str] = None,
    survey_id: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    return await analytics.demographics_for(await _response_query(user, tenant_id, survey_id))


# ==================== EXPORT ====================

@router.get("/export/csv")
async def export_summary(
    tenant_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    user: dict = Depends(analytics_user)
):
    """Une ligne par survey visible: volume, NPS, CSI, répartition du sentiment."""
    surveys = await _visible_surveys(user, tenant_id)
    base = await _response_query(user, tenant_id, None, start_date, end_date)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["surveyId", "title", "responses", "nps", "csi", "positive", "neutral", "negative"])
    for survey in surveys:
        responses = await analytics.fetch_responses(and_filters(base, {"survey": survey["id"]}))
        nps_result = analytics.calculate_nps(r.get("score") for r in responses)
        csi_result = analytics.calculate_csi(r.get("rating") for r in responses)
        distribution = analytics.aggregate_sentiment(responses)["distribution"]
        writer.writerow([
            survey["id"],
            survey.get("title", ""),
            len(responses),
            nps_result["score"],
            csi_result["score"],
            distribution["positive"],
            distribution["neutral"],
            distribution["negative"],
        ])

    filename = f"analytics_{datetime.now(timezone.utc).strftime('%Y%m%d')}.csv"
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
