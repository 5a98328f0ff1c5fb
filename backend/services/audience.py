"""
RatePro - Audience resolution

resolve_audience() is pure: it merges segment, category, explicit and
embedded (legacy) recipients into a distinct set, deduped by email
(lower-cased) and, for email-less recipients, by phone.
load_audience() fetches the inputs for one survey, always tenant-filtered.
"""

import logging
from typing import List, Dict, Any, Optional
from config import db

logger = logging.getLogger("audience")

# Segment filter keys -> contact fields (anything else is ignored)
SEGMENT_FIELDS = {
    "tags": "tags",
    "autoTags": "autoTags",
    "categories": "categories",
    "country": "enrichment.country",
    "city": "enrichment.city",
}


def _recipient(contact: Dict[str, Any], source: str) -> Optional[Dict[str, Any]]:
    email = (contact.get("email") or "").strip().lower() or None
    phone = (contact.get("phone") or "").strip() or None
    if not email and not phone:
        return None
    return {
        "contactId": contact.get("id"),
        "email": email,
        "name": contact.get("name") or "",
        "phone": phone,
        "source": source,
    }


def resolve_audience(
    segment_contacts: List[Dict[str, Any]],
    category_contacts: List[Dict[str, Any]],
    explicit_contacts: List[Dict[str, Any]],
    embedded_contacts: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Distinct recipient set. First occurrence wins, in the order
    explicit -> category -> segment -> embedded, so that a stored contact
    always beats an inline copy of the same email.
    """
    seen_emails = set()
    seen_phones = set()
    recipients = []

    groups = [
        (explicit_contacts, "contact"),
        (category_contacts, "category"),
        (segment_contacts, "segment"),
        (embedded_contacts, "embedded"),
    ]
    for contacts, source in groups:
        for contact in contacts or []:
            rec = _recipient(contact, source)
            if rec is None:
                continue
            if rec["email"]:
                if rec["email"] in seen_emails:
                    continue
                seen_emails.add(rec["email"])
            else:
                if rec["phone"] in seen_phones:
                    continue
                seen_phones.add(rec["phone"])
            recipients.append(rec)
    return recipients


def segment_query(segment: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a stored segment filter into a contact predicate."""
    stored = segment.get("filter") or {}
    query = {}
    for key, field in SEGMENT_FIELDS.items():
        value = stored.get(key)
        if value in (None, "", []):
            continue
        if isinstance(value, list):
            query[field] = {"$in": value}
        else:
            query[field] = value
    return query


async def load_audience(survey: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Resolve the survey's targetAudience against the tenant's contacts."""
    tenant = survey["tenant"]
    audience = survey.get("targetAudience") or {}
    projection = {"_id": 0, "id": 1, "email": 1, "name": 1, "phone": 1}

    explicit = []
    if audience.get("contacts"):
        explicit = await db.contacts.find(
            {"tenant": tenant, "id": {"$in": audience["contacts"]}}, projection
        ).to_list(10000)

    by_category = []
    if audience.get("categories"):
        by_category = await db.contacts.find(
            {"tenant": tenant, "categories": {"$in": audience["categories"]}}, projection
        ).to_list(10000)

    by_segment = []
    if audience.get("segments"):
        segments = await db.segments.find(
            {"tenant": tenant, "id": {"$in": audience["segments"]}}, {"_id": 0}
        ).to_list(100)
        for segment in segments:
            query = segment_query(segment)
            if not query:
                logger.warning(f"[AUDIENCE] segment={segment.get('id')} has an empty filter, skipped")
                continue
            by_segment.extend(await db.contacts.find({"tenant": tenant, **query}, projection).to_list(10000))

    recipients = resolve_audience(by_segment, by_category, explicit, audience.get("embedded") or [])
    logger.info(f"[AUDIENCE] survey={survey.get('id')} recipients={len(recipients)}")
    return recipients
