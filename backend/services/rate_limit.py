"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Rate limiting                                                     ║
║                                                                              ║
║  Fenêtres fixes par (scope, clé) dans la collection rate_limits.             ║
║  Compteur $inc atomique: partagé entre workers, purgé par index TTL.         ║
║                                                                              ║
║  Scopes:                                                                     ║
║    global      toutes les routes /api, par IP     RATE_LIMIT_GLOBAL          ║
║    auth        login                              RATE_LIMIT_AUTH            ║
║    submit      soumissions anonymes               RATE_LIMIT_SUBMIT          ║
║    test-email  envoi d'email de test              RATE_LIMIT_TEST_EMAIL      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import Request
from pymongo import ReturnDocument

from config import db
from services.errors import RateLimited

logger = logging.getLogger("ratepro.rate_limit")

DEFAULT_RATES = {
    "global": ("RATE_LIMIT_GLOBAL", "100/15m"),
    "auth": ("RATE_LIMIT_AUTH", "10/10m"),
    "submit": ("RATE_LIMIT_SUBMIT", "10/m"),
    "test-email": ("RATE_LIMIT_TEST_EMAIL", "3/5m"),
}

_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_rate(rate: str) -> Tuple[int, int]:
    """'10/m' -> (10, 60), '100/15m' -> (100, 900)"""
    count, _, period = rate.strip().partition("/")
    unit, multiplier = period[-1:], period[:-1] or "1"
    if not count.isdigit() or not multiplier.isdigit() or unit not in _UNITS:
        raise ValueError(f"Invalid rate: {rate!r}")
    return int(count), int(multiplier) * _UNITS[unit]


def rate_for(scope: str) -> str:
    env_key, default = DEFAULT_RATES[scope]
    return os.environ.get(env_key, default)


def limits_enabled() -> bool:
    return os.environ.get("RATE_LIMIT_ENABLED", "true").lower() in ("1", "true", "yes")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def hit(scope: str, key: str, rate: str, now: Optional[float] = None) -> dict:
    """Compte un appel dans la fenêtre courante et indique s'il passe."""
    limit, period = parse_rate(rate)
    now = time.time() if now is None else now
    window = int(now // period)
    window_end = (window + 1) * period

    doc = await db.rate_limits.find_one_and_update(
        {"scope": scope, "key": key, "window": window},
        {
            "$inc": {"count": 1},
            "$setOnInsert": {"expiresAt": datetime.fromtimestamp(window_end, timezone.utc)},
        },
        upsert=True,
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    count = doc["count"]
    return {
        "allowed": count <= limit,
        "count": count,
        "limit": limit,
        "retryAfter": max(1, int(window_end - now)),
    }


async def check(scope: str, key: str) -> None:
    """Lève RateLimited (429) quand la clé a dépassé la limite du scope."""
    if not limits_enabled():
        return
    result = await hit(scope, key, rate_for(scope))
    if result["allowed"]:
        return
    logger.warning(f"[RATE_LIMIT] {scope} blocked key={key} ({result['count']}/{result['limit']})")
    error = RateLimited()
    error.headers = {"Retry-After": str(result["retryAfter"])}
    raise error


def rate_limit(scope: str):
    """Dépendance FastAPI: limite par IP pour le scope donné."""
    if scope not in DEFAULT_RATES:
        raise ValueError(f"Unknown rate limit scope: {scope}")

    async def _dependency(request: Request):
        await check(scope, client_ip(request))

    return _dependency
