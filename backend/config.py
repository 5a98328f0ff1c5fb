"""
RatePro - Configuration et utilitaires partagés
"""

import os
import hashlib
import secrets
from datetime import datetime, timezone
from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
from pathlib import Path

# Charger .env
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'ratepro')

client = AsyncIOMotorClient(MONGO_URL)
db = client[DB_NAME]

# HTTP
CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')
FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')
SESSION_TTL_DAYS = int(os.environ.get('SESSION_TTL_DAYS', '7'))


# ==================== HELPERS ====================

def hash_password(password: str) -> str:
    """Hash un mot de passe avec SHA256"""
    return hashlib.sha256(password.encode()).hexdigest()


def generate_token() -> str:
    """Génère un token de session sécurisé"""
    return secrets.token_urlsafe(32)


def now_iso() -> str:
    """Retourne la date/heure actuelle en ISO"""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value) -> datetime:
    """Parse an ISO string (or datetime) into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
