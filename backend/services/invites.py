"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Invite Registry                                                   ║
║                                                                              ║
║  - token: 256 bits aléatoires, opaque (aucune identité encodée)              ║
║  - un invite par (survey, destinataire)                                      ║
║  - pending -> responded par compare-and-set: une seule transition gagne      ║
║  - responded est terminal (hors suppression administrative)                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import secrets
import logging
from typing import List, Dict, Any, Optional
from pymongo import ReturnDocument

from config import db, now_iso
from services.errors import InvalidToken, AlreadyResponded
from services import contact_stats

logger = logging.getLogger("invites")

TOKEN_BYTES = 32

INVITE_PENDING = "pending"
INVITE_RESPONDED = "responded"

VALID_INVITE_TRANSITIONS = {
    INVITE_PENDING: [INVITE_RESPONDED],
    INVITE_RESPONDED: [],  # TERMINAL
}


def generate_invite_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def _recipient_keys(rec: Dict[str, Any]) -> List[str]:
    keys = []
    if rec.get("contactId"):
        keys.append(f"id:{rec['contactId']}")
    if rec.get("email"):
        keys.append(f"email:{rec['email'].lower()}")
    if rec.get("phone"):
        keys.append(f"phone:{rec['phone']}")
    return keys


async def create_invites(survey: Dict[str, Any], recipients: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Mint one invite per recipient not yet invited to this survey.

    Returns:
        {"created": [invite...], "skipped": int}
    """
    existing = await db.survey_invites.find(
        {"survey": survey["id"]},
        {"_id": 0, "contact": 1, "contactRef": 1}
    ).to_list(100000)
    seen = set()
    for inv in existing:
        seen.update(_recipient_keys({
            "contactId": inv.get("contact"),
            **(inv.get("contactRef") or {}),
        }))

    now = now_iso()
    docs = []
    skipped = 0
    for rec in recipients:
        keys = _recipient_keys(rec)
        if not keys or any(k in seen for k in keys):
            skipped += 1
            continue
        seen.update(keys)
        docs.append({
            "id": str(uuid.uuid4()),
            "survey": survey["id"],
            "tenant": survey["tenant"],
            "contact": rec.get("contactId"),
            "contactRef": {
                "email": rec.get("email"),
                "name": rec.get("name") or "",
                "phone": rec.get("phone"),
            },
            "token": generate_invite_token(),
            "status": INVITE_PENDING,
            "createdAt": now,
            "submittedAt": None,
            "response": None,
        })

    if docs:
        await db.survey_invites.insert_many([dict(d) for d in docs])
        await contact_stats.record_invited(survey["tenant"], [d["contact"] for d in docs], now)

    logger.info(f"[INVITE] survey={survey['id']} created={len(docs)} skipped={skipped}")
    return {"created": docs, "skipped": skipped}


async def validate(token: str) -> Dict[str, Any]:
    """Token -> pending invite. Raises InvalidToken / AlreadyResponded."""
    if not token:
        raise InvalidToken()
    invite = await db.survey_invites.find_one({"token": token}, {"_id": 0})
    if not invite:
        raise InvalidToken()
    if invite.get("status") == INVITE_RESPONDED:
        raise AlreadyResponded()
    return invite


async def mark_responded(token: str, response_id: str) -> Dict[str, Any]:
    """
    Compare-and-set pending -> responded.
    Exactly one concurrent caller wins; the others get AlreadyResponded.
    """
    invite = await db.survey_invites.find_one_and_update(
        {"token": token, "status": INVITE_PENDING},
        {"$set": {
            "status": INVITE_RESPONDED,
            "submittedAt": now_iso(),
            "response": response_id,
        }},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if invite is None:
        exists = await db.survey_invites.find_one({"token": token}, {"_id": 0, "id": 1})
        if not exists:
            raise InvalidToken()
        logger.info(f"[INVITE] invite={exists['id']} lost responded race")
        raise AlreadyResponded()
    logger.info(f"[INVITE] invite={invite['id']} -> responded response={response_id}")
    return invite


async def release(invite_id: str, response_id: str):
    """Undo a claim whose response could not be persisted."""
    await db.survey_invites.update_one(
        {"id": invite_id, "status": INVITE_RESPONDED, "response": response_id},
        {"$set": {"status": INVITE_PENDING, "submittedAt": None, "response": None}},
    )
    logger.warning(f"[INVITE] invite={invite_id} released after failed persist")


async def list_invites(survey_id: str, tenant: str, status: Optional[str] = None, limit: int = 500) -> List[Dict]:
    query = {"survey": survey_id, "tenant": tenant}
    if status:
        query["status"] = status
    invites = await db.survey_invites.find(query, {"_id": 0, "token": 0}).sort("createdAt", -1).to_list(limit)
    return invites
