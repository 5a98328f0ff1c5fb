"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Fixtures de test                                                  ║
║                                                                              ║
║  - MongoDB en mémoire (mongomock-motor) à la place de motor                  ║
║  - base vidée avant chaque test                                              ║
║  - fabriques: tenant, utilisateur, session, survey publiée, contact           ║
║  - IA simulée (aucun appel réseau)                                           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import json
import uuid
from datetime import datetime, timedelta, timezone

import motor.motor_asyncio
from mongomock.collection import Collection as MockCollection
from mongomock_motor import AsyncMongoMockClient

# Must run before `config` creates its client
motor.motor_asyncio.AsyncIOMotorClient = AsyncMongoMockClient

import httpx  # noqa: E402
import pytest  # noqa: E402

from config import db, hash_password, generate_token, now_iso  # noqa: E402
from services import ai_client, config_resolver  # noqa: E402
from services.job_queue import JobQueue  # noqa: E402
from services.permissions import ensure_permissions_seeded  # noqa: E402

TEST_PASSWORD = "Secret123!"
ENCRYPTION_KEY = "0123456789abcdef" * 4

QUESTIONS = [
    {"id": "q_nps", "type": "nps", "title": "How likely are you to recommend us?", "required": True},
    {"id": "q_rating", "type": "rating", "title": "Rate your visit", "required": False, "min": 1, "max": 5},
    {"id": "q_comment", "type": "textarea", "title": "Anything to add?", "required": False},
    {"id": "q_channel", "type": "radio", "title": "Channel", "required": False, "options": ["web", "store"]},
]

POSITIVE_REPLY = {
    "sentiment": "positive",
    "sentimentScore": 0.8,
    "confidence": 0.9,
    "emotions": ["joy"],
    "keywords": ["friendly", "fast"],
    "themes": ["service"],
    "classification": {"isComplaint": False, "isPraise": True, "isSuggestion": False},
    "summary": "Happy customer",
}

COMPLAINT_REPLY = {
    "sentiment": "negative",
    "sentimentScore": -0.8,
    "confidence": 0.9,
    "emotions": ["anger"],
    "keywords": ["late", "rude"],
    "themes": ["delivery"],
    "classification": {"isComplaint": True, "isPraise": False, "isSuggestion": False},
    "summary": "Late delivery and rude staff",
}


@pytest.fixture(autouse=True)
async def clean_db():
    """Base vide + catalogue de permissions pour chaque test"""
    for name in await db.list_collection_names():
        await db.drop_collection(name)
    config_resolver.invalidate_cache()
    await ensure_permissions_seeded()
    yield
    config_resolver.invalidate_cache()


def _apply_projection(doc, projection):
    if doc is None or not projection:
        return doc
    if isinstance(projection, (list, tuple)):
        projection = {key: 1 for key in projection}
    included = [key for key, value in projection.items() if value and key != "_id"]
    if included:
        out = {key: doc[key] for key in included if key in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    return {key: value for key, value in doc.items() if projection.get(key, 1)}


@pytest.fixture(autouse=True)
def projected_find_one_and_update(monkeypatch):
    """
    mongomock re-reads the post-update document with the caller's filter when a
    projection hides `_id`, so an AFTER read of a claim that changed the filtered
    field returns None. Read unprojected, project afterwards.
    """
    original = MockCollection.find_one_and_update

    def _find_one_and_update(self, filter, update, projection=None, *args, **kwargs):
        return _apply_projection(original(self, filter, update, None, *args, **kwargs), projection)

    monkeypatch.setattr(MockCollection, "find_one_and_update", _find_one_and_update)


@pytest.fixture(autouse=True)
def no_email(monkeypatch):
    """Pas d'email réel: les notifications urgentes restent in-app"""
    sent = []

    async def _record(user_ids, action):
        sent.append((list(user_ids), action["id"]))

    monkeypatch.setattr("services.notifications._email_recipients", _record)
    return sent


@pytest.fixture
def encryption_key(monkeypatch):
    monkeypatch.setenv("CONFIG_ENCRYPTION_KEY", ENCRYPTION_KEY)
    return ENCRYPTION_KEY


# ==================== IA ====================

class FakeAI:
    """Remplace ai_client.generate_text"""

    POSITIVE = POSITIVE_REPLY
    COMPLAINT = COMPLAINT_REPLY

    def __init__(self):
        self.reply = json.dumps(POSITIVE_REPLY)
        self.error = None
        self.calls = 0

    def returns(self, payload):
        self.reply = payload if isinstance(payload, str) else json.dumps(payload)
        self.error = None

    def raises(self, error: Exception):
        self.error = error

    async def __call__(self, prompt: str, **kwargs) -> str:
        self.calls += 1
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def fake_ai(monkeypatch):
    fake = FakeAI()
    monkeypatch.setattr(ai_client, "generate_text", fake)
    return fake


# ==================== QUEUE ====================

class RecordingQueue(JobQueue):
    """Enregistre les jobs sans les exécuter"""

    kind = "recording"

    def __init__(self):
        self.jobs = []

    async def enqueue(self, name, payload, tenant=None):
        self.jobs.append({"name": name, "payload": payload, "tenant": tenant})
        return f"job-{len(self.jobs)}"


@pytest.fixture
def recording_queue():
    return RecordingQueue()


# ==================== FABRIQUES ====================

@pytest.fixture
def make_tenant():
    async def _make(name: str = "Acme", **fields):
        tenant = {"id": str(uuid.uuid4()), "name": name, "featureFlags": {}, "createdAt": now_iso(), **fields}
        await db.tenants.insert_one(dict(tenant))
        return tenant
    return _make


@pytest.fixture
def make_user():
    async def _make(role: str = "member", tenant=None, department=None, **fields):
        user = {
            "id": str(uuid.uuid4()),
            "email": fields.pop("email", f"{uuid.uuid4().hex[:8]}@example.com"),
            "password": hash_password(TEST_PASSWORD),
            "name": fields.pop("name", role),
            "role": role,
            "tenant": tenant,
            "department": department,
            "crossDepartmentSurveyAccess": False,
            "customRoles": [],
            "isActive": True,
            "createdAt": now_iso(),
            **fields,
        }
        await db.users.insert_one(dict(user))
        user.pop("password")
        return user
    return _make


@pytest.fixture
def make_session():
    async def _make(user: dict) -> dict:
        token = generate_token()
        await db.sessions.insert_one({
            "token": token,
            "user_id": user["id"],
            "created_at": now_iso(),
            "expires_at": (datetime.now(timezone.utc) + timedelta(days=1)).isoformat(),
        })
        return {"Authorization": f"Bearer {token}"}
    return _make


@pytest.fixture
def make_survey():
    async def _make(tenant: str, department=None, questions=None, **fields):
        questions = questions or [dict(q) for q in QUESTIONS]
        now = now_iso()
        settings = {"isPublic": True, "isAnonymous": False, "isPasswordProtected": False, "password": None}
        settings.update(fields.pop("settings", {}))
        survey = {
            "id": str(uuid.uuid4()),
            "tenant": tenant,
            "title": fields.pop("title", "Store visit"),
            "description": "",
            "department": department,
            "questions": questions,
            "targetAudience": {"segments": [], "categories": [], "contacts": [], "embedded": []},
            "actionManager": None,
            "actionPermissions": {"enabled": False, "allowedAssigners": [], "allowedViewers": [],
                                  "restrictToDepartment": None},
            "settings": settings,
            "schedule": {"startDate": None, "endDate": None, "timezone": "UTC"},
            "status": "active",
            "version": 1,
            "publishedSnapshot": {"questions": questions, "lockedAt": now, "version": 1},
            "publishLog": [],
            "totalResponses": 0,
            "lastResponseAt": None,
            "analytics": {},
            "deleted": False,
            "createdAt": now,
            "updatedAt": now,
            **fields,
        }
        await db.surveys.insert_one(dict(survey))
        return survey
    return _make


@pytest.fixture
def make_contact():
    async def _make(tenant: str, email: str = None, **fields):
        contact = {
            "id": str(uuid.uuid4()),
            "tenant": tenant,
            "name": fields.pop("name", "Jane Doe"),
            "email": email or f"{uuid.uuid4().hex[:8]}@customer.test",
            "phone": None,
            "tags": [],
            "categories": [],
            "surveyStats": {"invitedCount": 0, "respondedCount": 0},
            "createdAt": now_iso(),
            **fields,
        }
        await db.contacts.insert_one(dict(contact))
        return contact
    return _make


@pytest.fixture
async def acme(make_tenant, make_user):
    """Tenant avec un companyAdmin (ventes), un member ventes et un member sans département"""
    tenant = await make_tenant("Acme")
    return {
        "tenant": tenant,
        "company_admin": await make_user("companyAdmin", tenant["id"], "sales", email="boss@acme.test"),
        "member": await make_user("member", tenant["id"], "sales", email="member@acme.test"),
        "loner": await make_user("member", tenant["id"], None, email="loner@acme.test"),
    }


@pytest.fixture
async def platform_admin(make_user):
    return await make_user("admin", None, None, email="root@ratepro.test")


@pytest.fixture
def answers():
    def _answers(nps=9, rating=5, comment="Very friendly staff and fast service"):
        out = [{"questionId": "q_nps", "value": nps}]
        if rating is not None:
            out.append({"questionId": "q_rating", "value": rating})
        if comment is not None:
            out.append({"questionId": "q_comment", "value": comment})
        return out
    return _answers


@pytest.fixture
async def client():
    from server import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
