"""
RatePro - API Backend
Plateforme CX multi-tenant: surveys, réponses, analyse IA, actions, analytics.

Démarre avec:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

import uuid
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import CORS_ORIGINS
from services import rate_limit
from services.errors import RateLimited
from services.event_logger import log_error, request_id_var

# Configuration logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("ratepro")

# Créer l'app
app = FastAPI(
    title="RatePro API",
    description="Plateforme de feedback client multi-tenant",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """X-Request-ID entrant (ou uuid) propagé aux logs d'erreur et renvoyé."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def global_rate_limit(request: Request, call_next):
    """Limite globale par IP sur /api (RATE_LIMIT_GLOBAL)."""
    if request.url.path.startswith("/api") and request.url.path != "/api/health":
        try:
            await rate_limit.check("global", rate_limit.client_ip(request))
        except RateLimited as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)
    return await call_next(request)


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    log_error(
        "server.unhandled",
        f"{type(exc).__name__}: {exc}",
        {"path": request.url.path, "method": request.method},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": {"code": "INTERNAL_ERROR", "message": "Internal server error"}},
    )


# ==================== IMPORT DES ROUTES ====================

from routes import (  # noqa: E402
    auth,
    roles,
    surveys,
    responses,
    actions,
    analytics,
    notifications,
    system_config,
    queue,
)

# Routes avec préfixe /api
app.include_router(auth.router, prefix="/api")
app.include_router(auth.users_router, prefix="/api")
app.include_router(roles.router, prefix="/api")
app.include_router(surveys.router, prefix="/api")
app.include_router(responses.router, prefix="/api")
app.include_router(actions.router, prefix="/api")
app.include_router(analytics.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(system_config.router, prefix="/api")
app.include_router(queue.router, prefix="/api")


# ==================== ROUTE RACINE ====================

@app.get("/")
async def root():
    return {
        "name": "RatePro API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/api/health")
async def health():
    from config import db

    await db.command("ping")
    return {"status": "ok"}


# ==================== STARTUP ====================

async def create_indexes():
    from config import db

    await db.users.create_index("email", unique=True)
    await db.users.create_index([("tenant", 1), ("department", 1)])
    await db.sessions.create_index("token", unique=True)
    await db.sessions.create_index("expires_at")
    await db.permissions.create_index("name", unique=True)
    await db.permission_assignments.create_index([("userId", 1), ("tenantId", 1)])
    await db.custom_roles.create_index(
        [("tenant", 1), ("name", 1)],
        unique=True,
        partialFilterExpression={"deleted": False},
    )
    await db.contacts.create_index([("tenant", 1), ("email", 1)], unique=True)
    await db.surveys.create_index([("tenant", 1), ("department", 1), ("status", 1)])
    await db.survey_invites.create_index("token", unique=True)
    await db.survey_invites.create_index([("survey", 1), ("contact", 1)])
    await db.survey_responses.create_index([("tenant", 1), ("survey", 1), ("createdAt", -1)])
    await db.survey_responses.create_index(
        "invite", unique=True, partialFilterExpression={"invite": {"$type": "string"}}
    )
    await db.survey_responses.create_index(
        "resumeToken", unique=True, partialFilterExpression={"resumeToken": {"$type": "string"}}
    )
    await db.survey_access_tokens.create_index("token", unique=True)
    await db.actions.create_index([("tenant", 1), ("status", 1)])
    await db.actions.create_index(
        "metadata.responseId", unique=True,
        partialFilterExpression={"metadata.responseId": {"$type": "string"}},
    )
    await db.assignment_rules.create_index([("tenant", 1), ("priority", -1)])
    await db.notifications.create_index([("user", 1), ("status", 1), ("createdAt", -1)])
    await db.job_queue.create_index([("status", 1), ("next_run_at", 1)])
    await db.dead_letter_jobs.create_index("failedAt")
    await db.system_config.create_index("key", unique=True)
    await db.event_log.create_index([("entity_type", 1), ("entity_id", 1)])
    await db.rate_limits.create_index([("scope", 1), ("key", 1), ("window", 1)], unique=True)
    await db.rate_limits.create_index("expiresAt", expireAfterSeconds=0)


@app.on_event("startup")
async def startup():
    logger.info("RatePro API démarrée")

    from services.config_resolver import is_queue_enabled
    from services.permissions import ensure_permissions_seeded
    from scheduler_service import task_scheduler

    await create_indexes()
    logger.info("Index MongoDB créés")
    await ensure_permissions_seeded()

    if await is_queue_enabled():
        task_scheduler.start()
    else:
        logger.info("[QUEUE] ENABLE_QUEUES off: jobs run inline after each response")


@app.on_event("shutdown")
async def shutdown():
    from config import client
    from scheduler_service import task_scheduler

    task_scheduler.stop()
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
