"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Config Resolver                                                   ║
║                                                                              ║
║  ORDRE DE RÉSOLUTION (par clé):                                              ║
║  1. cache mémoire (5 min)                                                    ║
║  2. collection system_config (déchiffrée si encrypted)                       ║
║  3. variable d'environnement du même nom (non vide)                          ║
║  4. sensitive=True → ConfigMissing, sinon défaut du registre                 ║
║                                                                              ║
║  Écritures: uniquement les clés de CONFIG_REGISTRY.                          ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import os
import time
import logging
from typing import Optional, Dict, Any, List, Tuple

from config import db, now_iso
from services.encryption import encrypt, decrypt, DecryptionError
from services.errors import ConfigMissing, ValidationFailed, NotFound

logger = logging.getLogger("config_resolver")

CACHE_TTL_SECONDS = 300

CATEGORIES = ["email", "sms", "whatsapp", "ai", "general", "feature_flags"]


def _entry(category: str, description: str, encrypted: bool = False,
           sensitive: bool = False, default: Optional[str] = None) -> Dict[str, Any]:
    return {
        "category": category,
        "description": description,
        "encrypted": encrypted,
        "sensitive": sensitive,
        "default": default,
    }


# ════════════════════════════════════════════════════════════════════════
# WHITELIST
# ════════════════════════════════════════════════════════════════════════

CONFIG_REGISTRY: Dict[str, Dict[str, Any]] = {
    # Email
    "SENDGRID_API_KEY": _entry("email", "SendGrid API key", encrypted=True, sensitive=True),
    "FROM_NAME": _entry("email", "Sender display name", default="RatePro"),
    "FROM_EMAIL": _entry("email", "Sender email address", default="noreply@ratepro.app"),

    # SMS
    "SMS_PROVIDER_SID": _entry("sms", "SMS provider account SID", encrypted=True, sensitive=True),
    "SMS_PROVIDER_AUTH_TOKEN": _entry("sms", "SMS provider auth token", encrypted=True, sensitive=True),
    "SMS_PROVIDER_NUMBER": _entry("sms", "SMS sender number"),

    # WhatsApp
    "TWILIO_ACCOUNT_SID": _entry("whatsapp", "Twilio account SID", encrypted=True, sensitive=True),
    "TWILIO_AUTH_TOKEN": _entry("whatsapp", "Twilio auth token", encrypted=True, sensitive=True),
    "TWILIO_WHATSAPP_FROM": _entry("whatsapp", "Twilio WhatsApp sender"),
    "META_WHATSAPP_PHONE_NUMBER_ID": _entry("whatsapp", "Meta WhatsApp phone number id"),
    "META_WHATSAPP_TOKEN": _entry("whatsapp", "Meta WhatsApp token", encrypted=True, sensitive=True),

    # AI
    "GEMINI_API_KEY": _entry("ai", "Google Gemini API key", encrypted=True, sensitive=True),

    # Feature flags
    "ENABLE_QUEUES": _entry("feature_flags", "Durable background queue", default="false"),

    # General
    "OTP_EXPIRE_MINUTES": _entry("general", "OTP lifetime in minutes", default="10"),
    "JWT_SECRET": _entry("general", "Access token signing secret", encrypted=True, sensitive=True),
    "REFRESH_TOKEN_SECRET": _entry("general", "Refresh token signing secret", encrypted=True, sensitive=True),
}

ALLOWED_KEYS = list(CONFIG_REGISTRY.keys())

# key -> (expires_at, value, source)
_cache: Dict[str, Tuple[float, str, str]] = {}


def invalidate_cache(key: Optional[str] = None):
    """Drop one key (or everything) from the in-process cache."""
    if key is None:
        _cache.clear()
    else:
        _cache.pop(f"sys:{key}", None)


def mask_value(value: Optional[str]) -> Optional[str]:
    """****abcd style masking for display."""
    if not value:
        return value
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


def _read_stored(doc: Dict[str, Any]) -> Optional[str]:
    value = doc.get("value")
    if doc.get("encrypted") and isinstance(value, dict):
        try:
            return decrypt(value)
        except DecryptionError:
            logger.error(f"[CONFIG] Cannot decrypt stored value for {doc.get('key')}")
            return None
    return value


async def resolve_config(key: str, sensitive: Optional[bool] = None) -> Tuple[Optional[str], str]:
    """
    Resolve a key and report where the value came from.

    Returns:
        (value, source) with source in cache | database | env | default | not_set
    """
    cache_key = f"sys:{key}"
    cached = _cache.get(cache_key)
    if cached and cached[0] > time.monotonic():
        return cached[1], "cache"

    registry = CONFIG_REGISTRY.get(key, {})
    if sensitive is None:
        sensitive = registry.get("sensitive", False)

    doc = await db.system_config.find_one({"key": key}, {"_id": 0})
    if doc:
        value = _read_stored(doc)
        if value not in (None, ""):
            _cache[cache_key] = (time.monotonic() + CACHE_TTL_SECONDS, value, "database")
            return value, "database"

    env_value = os.environ.get(key)
    if env_value:
        _cache[cache_key] = (time.monotonic() + CACHE_TTL_SECONDS, env_value, "env")
        return env_value, "env"

    if sensitive:
        raise ConfigMissing(
            f"Required sensitive config '{key}' is not set in database or environment"
        )

    default = registry.get("default")
    if default is not None:
        return default, "default"
    return None, "not_set"


async def get_config(key: str, default: Optional[str] = None, sensitive: Optional[bool] = None) -> Optional[str]:
    """Resolve a config value (DB -> env -> default)."""
    value, source = await resolve_config(key, sensitive=sensitive)
    if source == "not_set":
        return default
    return value


async def is_queue_enabled() -> bool:
    value = await get_config("ENABLE_QUEUES", default="false")
    return str(value).lower() == "true"


# ════════════════════════════════════════════════════════════════════════
# ADMIN OPERATIONS (platform scope)
# ════════════════════════════════════════════════════════════════════════

def _require_registered(key: str) -> Dict[str, Any]:
    entry = CONFIG_REGISTRY.get(key)
    if not entry:
        raise ValidationFailed(
            f"Config key '{key}' is not allowed",
            errors=[{"field": "key", "message": "unknown key", "allowedKeys": ALLOWED_KEYS}],
        )
    return entry


async def set_config(key: str, value: str, updated_by: str = "system") -> Dict[str, Any]:
    """Upsert a whitelisted key. Encrypted keys are sealed before storage."""
    entry = _require_registered(key)
    if value is None or str(value) == "":
        raise ValidationFailed("Value is required", errors=[{"field": "value", "message": "required"}])

    stored = encrypt(str(value)) if entry["encrypted"] else str(value)
    now = now_iso()
    await db.system_config.update_one(
        {"key": key},
        {
            "$set": {
                "key": key,
                "value": stored,
                "encrypted": entry["encrypted"],
                "sensitive": entry["sensitive"],
                "category": entry["category"],
                "description": entry["description"],
                "updated_by": updated_by,
                "updated_at": now,
            },
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    invalidate_cache(key)
    logger.info(f"[CONFIG] {key} updated by {updated_by}")
    return _public_view(key, str(value), "database")


async def reset_config(key: str, updated_by: str = "system") -> Dict[str, Any]:
    """Delete the DB override: resolution falls back to env/default."""
    _require_registered(key)
    result = await db.system_config.delete_one({"key": key})
    invalidate_cache(key)
    if result.deleted_count == 0:
        raise NotFound(f"No stored override for '{key}'")
    logger.info(f"[CONFIG] {key} reset by {updated_by}")
    return {"key": key, "reset": True}


def _public_view(key: str, value: Optional[str], source: str) -> Dict[str, Any]:
    entry = CONFIG_REGISTRY[key]
    shown = mask_value(value) if (entry["sensitive"] or entry["encrypted"]) else value
    return {
        "key": key,
        "value": shown,
        "isSet": value not in (None, ""),
        "source": source,
        "category": entry["category"],
        "description": entry["description"],
        "encrypted": entry["encrypted"],
        "sensitive": entry["sensitive"],
    }


async def list_configs(category: Optional[str] = None) -> List[Dict[str, Any]]:
    """All registry keys with masked values, including unset ones (source=not_set)."""
    if category is not None and category not in CATEGORIES:
        raise ValidationFailed(
            f"Unknown category '{category}'",
            errors=[{"field": "category", "message": "unknown", "allowed": CATEGORIES}],
        )
    out = []
    for key, entry in CONFIG_REGISTRY.items():
        if category and entry["category"] != category:
            continue
        try:
            value, source = await resolve_config(key, sensitive=False)
        except ConfigMissing:
            value, source = None, "not_set"
        if source == "cache":
            source = "database" if await db.system_config.find_one({"key": key}) else "env"
        out.append(_public_view(key, value, source))
    return out
