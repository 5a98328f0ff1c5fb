"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Post-response Chain Tests                                         ║
║                                                                              ║
║  Soumission -> enrichment -> stats/agrégats -> action -> notification        ║
║                                                                              ║
║  1. Plainte: action high + notification au companyAdmin                      ║
║  2. Réponse positive: aucune action                                          ║
║  3. Re-traitement: rien n'est compté deux fois                               ║
║  4. IA indisponible: DLQ + analyse neutre + stats quand même                 ║
║  5. Plaintes répétées: une seule alerte par fenêtre                          ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import pytest

from config import db
from services.errors import TransientError
from services.job_queue import InlineQueue
from services.post_response import GENERATE_ACTION, PROCESS_RESPONSE, generate_action, process_response
from services.response_ingestor import request_metadata, submit_public

COMPLAINT_TEXT = "The staff was rude and my order arrived two weeks late"
META = request_metadata("127.0.0.1", "pytest")


class Deferred:
    """Collecte les jobs différés comme BackgroundTasks, puis les exécute"""

    def __init__(self):
        self.calls = []

    def __call__(self, fn, *args):
        self.calls.append((fn, args))

    async def drain(self):
        while self.calls:
            fn, args = self.calls.pop(0)
            await fn(*args)


async def _no_sleep(_delay):
    return None


@pytest.fixture
def deferred():
    return Deferred()


@pytest.fixture
def queue(deferred):
    return InlineQueue(defer=deferred, max_attempts=2, sleep=_no_sleep)


@pytest.fixture
async def survey(acme, make_survey):
    return await make_survey(acme["tenant"]["id"], "sales", title="Store visit")


class TestComplaintFlow:
    """Plainte de bout en bout"""

    @pytest.mark.asyncio
    async def test_complaint_creates_urgent_action(self, acme, survey, queue, deferred, fake_ai, answers, no_email):
        fake_ai.returns(fake_ai.COMPLAINT)
        result = await submit_public(survey["id"], {"answers": answers(nps=2, rating=1, comment=COMPLAINT_TEXT)},
                                     META, queue)
        assert len(deferred.calls) == 1
        await deferred.drain()

        response = await db.survey_responses.find_one({"id": result["responseId"]}, {"_id": 0})
        assert response["analysis"]["flaggedForReview"] is True
        assert response["analysis"]["classification"]["isComplaint"] is True

        stored_survey = await db.surveys.find_one({"id": survey["id"]}, {"_id": 0})
        assert stored_survey["totalResponses"] == 1
        assert stored_survey["analytics"]["npsScore"] == -100

        action = await db.actions.find_one({"metadata.responseId": result["responseId"]}, {"_id": 0})
        assert action["priority"] == "high"
        assert action["tenant"] == acme["tenant"]["id"]
        assert action["notifiedAt"] is not None

        notes = await db.notifications.find({"type": "action"}, {"_id": 0}).to_list(10)
        assert [n["user"] for n in notes] == [acme["company_admin"]["id"]]
        assert notes[0]["priority"] == "urgent"
        assert no_email == [([acme["company_admin"]["id"]], action["id"])]
        print("✅ complaint -> high action -> companyAdmin notified")

    @pytest.mark.asyncio
    async def test_positive_response_creates_nothing(self, survey, queue, deferred, fake_ai, answers):
        await submit_public(survey["id"], {"answers": answers()}, META, queue)
        await deferred.drain()

        assert await db.actions.count_documents({}) == 0
        assert await db.notifications.count_documents({}) == 0
        stored = await db.surveys.find_one({"id": survey["id"]}, {"_id": 0})
        assert stored["totalResponses"] == 1
        assert stored["analytics"]["npsScore"] == 100

    @pytest.mark.asyncio
    async def test_flagged_without_complaint_is_medium(self, survey, queue, deferred, fake_ai, answers, no_email):
        """Détracteur sans plainte: action medium, pas de notification"""
        await submit_public(survey["id"], {"answers": answers(nps=3, rating=None, comment="Fine I guess overall")},
                            META, queue)
        await deferred.drain()

        action = await db.actions.find_one({}, {"_id": 0})
        assert action["priority"] == "medium"
        assert "nps_detractor" in action["metadata"]["triggeredRules"]
        assert await db.notifications.count_documents({}) == 0
        assert no_email == []

    @pytest.mark.asyncio
    async def test_notifications_disabled_for_tenant(self, acme, survey, queue, deferred, fake_ai, answers):
        await db.tenants.update_one({"id": acme["tenant"]["id"]}, {"$set": {"featureFlags.notifications": False}})
        fake_ai.returns(fake_ai.COMPLAINT)
        await submit_public(survey["id"], {"answers": answers(nps=1, comment=COMPLAINT_TEXT)}, META, queue)
        await deferred.drain()

        assert await db.actions.count_documents({"priority": "high"}) == 1
        assert await db.notifications.count_documents({}) == 0


class TestIdempotency:
    """Les retries et re-traitements ne dupliquent rien"""

    @pytest.mark.asyncio
    async def test_reprocessing_does_not_double_count(self, survey, queue, deferred, fake_ai, answers):
        fake_ai.returns(fake_ai.COMPLAINT)
        result = await submit_public(survey["id"], {"answers": answers(nps=2, comment=COMPLAINT_TEXT)}, META, queue)
        await deferred.drain()

        # Reprocess the same response twice more
        for _ in range(2):
            await queue.enqueue(PROCESS_RESPONSE, {"responseId": result["responseId"]}, survey["tenant"])
        await deferred.drain()

        stored = await db.surveys.find_one({"id": survey["id"]}, {"_id": 0})
        assert stored["totalResponses"] == 1
        assert await db.actions.count_documents({"metadata.responseId": result["responseId"]}) == 1
        assert await db.notifications.count_documents({"type": "action"}) == 1

    @pytest.mark.asyncio
    async def test_generate_action_twice(self, acme, survey, queue, deferred, fake_ai, answers, no_email):
        fake_ai.returns(fake_ai.COMPLAINT)
        result = await submit_public(survey["id"], {"answers": answers(nps=2, comment=COMPLAINT_TEXT)}, META, queue)
        await deferred.drain()

        job = {"tenant": survey["tenant"]}
        await generate_action({"responseId": result["responseId"]}, job, queue)
        await generate_action({"responseId": result["responseId"]}, job, queue)
        assert await db.actions.count_documents({}) == 1
        assert len(no_email) == 1

    @pytest.mark.asyncio
    async def test_job_without_tenant_is_dropped(self, survey, queue, fake_ai, answers, recording_queue):
        result = await submit_public(survey["id"], {"answers": answers()}, META, recording_queue)
        assert recording_queue.jobs == [{
            "name": PROCESS_RESPONSE,
            "payload": {"responseId": result["responseId"]},
            "tenant": survey["tenant"],
        }]

        await process_response({"responseId": result["responseId"]}, {"tenant": None}, queue)
        stored = await db.survey_responses.find_one({"id": result["responseId"]}, {"_id": 0})
        assert stored["analysis"] is None
        assert fake_ai.calls == 0

    @pytest.mark.asyncio
    async def test_job_for_other_tenant_is_ignored(self, survey, queue, fake_ai, answers, recording_queue):
        result = await submit_public(survey["id"], {"answers": answers()}, META, recording_queue)
        await process_response({"responseId": result["responseId"]}, {"tenant": "someone-else"}, queue)
        stored = await db.survey_responses.find_one({"id": result["responseId"]}, {"_id": 0})
        assert stored["analysis"] is None

    @pytest.mark.asyncio
    async def test_flagged_response_enqueues_action_job(self, survey, fake_ai, answers, recording_queue):
        fake_ai.returns(fake_ai.COMPLAINT)
        result = await submit_public(survey["id"], {"answers": answers(nps=2, comment=COMPLAINT_TEXT)}, META,
                                     recording_queue)
        await process_response({"responseId": result["responseId"]}, {"tenant": survey["tenant"]}, recording_queue)
        assert [j["name"] for j in recording_queue.jobs] == [PROCESS_RESPONSE, GENERATE_ACTION]


class TestDeadLetter:
    """IA indisponible après tous les essais"""

    @pytest.mark.asyncio
    async def test_exhausted_enrichment_falls_back(self, survey, queue, deferred, fake_ai, answers):
        fake_ai.raises(TransientError("Gemini timeout"))
        result = await submit_public(survey["id"], {"answers": answers(nps=2, rating=None, comment=COMPLAINT_TEXT)},
                                     META, queue)
        await deferred.drain()

        assert fake_ai.calls == 2
        dead = await db.dead_letter_jobs.find({}, {"_id": 0}).to_list(10)
        assert len(dead) == 1
        assert dead[0]["name"] == PROCESS_RESPONSE
        assert dead[0]["attempts"] == 2
        assert dead[0]["data"] == {"responseId": result["responseId"]}
        assert "TransientError" in dead[0]["error"]

        response = await db.survey_responses.find_one({"id": result["responseId"]}, {"_id": 0})
        assert response["analysis"]["sentiment"] == "neutral"
        assert response["analysis"]["confidence"] == 0.0
        assert "ai_unavailable" in response["analysis"]["triggeredRules"]

        stored = await db.surveys.find_one({"id": survey["id"]}, {"_id": 0})
        assert stored["totalResponses"] == 1

        # nps 2 still flags the response without AI
        action = await db.actions.find_one({}, {"_id": 0})
        assert action["priority"] == "medium"
        print("✅ DLQ fallback keeps the response usable")


class TestRepeatedComplaints:
    """>= 3 plaintes en 24h => une alerte"""

    @pytest.mark.asyncio
    async def test_single_alert_per_window(self, acme, survey, queue, deferred, fake_ai, answers):
        fake_ai.returns(fake_ai.COMPLAINT)
        for _ in range(4):
            await submit_public(survey["id"], {"answers": answers(nps=1, comment=COMPLAINT_TEXT)}, META, queue)
            await deferred.drain()

        alerts = await db.notifications.find({"metadata.kind": "repeated_complaints"}, {"_id": 0}).to_list(10)
        assert len(alerts) == 1
        assert alerts[0]["user"] == acme["company_admin"]["id"]
        assert alerts[0]["metadata"]["count"] == 3
        assert await db.actions.count_documents({"priority": "high"}) == 4
