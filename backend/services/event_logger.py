"""
RatePro - Event Logger

Centralized audit trail for all sensitive actions, plus the central error
logger. Security-sensitive fields are redacted before anything is written.
"""

import uuid
import logging
import contextvars
from typing import Any, Dict, Optional
from config import db, now_iso

logger = logging.getLogger("event_logger")

# Correlation id of the HTTP request being served (set by server middleware)
request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "resumetoken",
    "ciphertext",
)

REDACTED = "[REDACTED]"


def _is_sensitive(key: str) -> bool:
    k = key.lower().replace("-", "_")
    return any(s in k or s in k.replace("_", "") for s in SENSITIVE_KEYS)


def redact(value: Any) -> Any:
    """Return a copy of value with sensitive keys masked (recursive)."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if isinstance(k, str) and _is_sensitive(k) else redact(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


async def log_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    tenant: Optional[str] = None,
    details: dict = None,
    related: dict = None
):
    """
    Write a single event to the event_log collection.

    Args:
        action: e.g. survey_publish, invite_responded, config_update
        entity_type: survey | response | invite | action | user | role | config
        entity_id: ID of the primary entity
        user: id or email of the user performing the action
        tenant: tenant id (None for platform-level events)
        details: free-form dict (reason, old_value, new_value, etc.)
        related: linked entity IDs (survey_id, response_id, contact_id, etc.)
    """
    await db.event_log.insert_one({
        "id": str(uuid.uuid4()),
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "tenant": tenant,
        "user": user,
        "details": redact(details or {}),
        "related": related or {},
        "request_id": request_id_var.get(),
        "created_at": now_iso()
    })


def log_error(function: str, message: str, context: Optional[Dict[str, Any]] = None, exc_info=None):
    """Central error log line: function, message, redacted context, correlation id."""
    logger.error(
        f"[ERROR] function={function} request_id={request_id_var.get()} "
        f"message={message} context={redact(context or {})}",
        exc_info=exc_info,
    )
