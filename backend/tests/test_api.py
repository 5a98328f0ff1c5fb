"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - HTTP API Tests                                                    ║
║                                                                              ║
║  Parcours HTTP via httpx + ASGITransport:                                    ║
║  1. Auth: login / me                                                         ║
║  2. Codes d'erreur d'autorisation (403 codés, 404 cross-tenant)              ║
║  3. Analytics dual scope                                                     ║
║  4. Soumission publique -> chaîne post-réponse en tâche de fond              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import pytest

from config import db

TEST_PASSWORD = "Secret123!"


class TestAuth:
    """POST /api/auth/login, GET /api/auth/me"""

    @pytest.mark.asyncio
    async def test_login_ok(self, client, acme):
        res = await client.post("/api/auth/login", json={"email": "boss@acme.test", "password": TEST_PASSWORD})
        assert res.status_code == 200
        body = res.json()
        assert body["user"]["role"] == "companyAdmin"
        assert "survey:read" in body["user"]["permissions"]

        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.json()["email"] == "boss@acme.test"
        assert "password" not in me.json()

    @pytest.mark.asyncio
    async def test_login_bad_password(self, client, acme):
        res = await client.post("/api/auth/login", json={"email": "boss@acme.test", "password": "nope"})
        assert res.status_code == 401
        assert res.json()["detail"]["code"] == "INVALID_CREDENTIALS"

    @pytest.mark.asyncio
    async def test_no_token(self, client):
        res = await client.get("/api/auth/me")
        assert res.status_code == 401
        assert res.json()["detail"]["code"] == "AUTH_REQUIRED"


class TestAuthorizationCodes:
    """Chaque refus porte un code machine"""

    @pytest.mark.asyncio
    async def test_admin_cannot_list_surveys(self, client, platform_admin, make_session):
        res = await client.get("/api/surveys", headers=await make_session(platform_admin))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "SURVEY_ACTION_DENIED"

    @pytest.mark.asyncio
    async def test_admin_cannot_create_survey(self, client, platform_admin, make_session):
        res = await client.post("/api/surveys", json={"title": "x", "questions": []},
                                headers=await make_session(platform_admin))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "SURVEY_ACTION_DENIED"

    @pytest.mark.asyncio
    async def test_member_cannot_create_survey(self, client, acme, make_session):
        res = await client.post("/api/surveys", json={"title": "x", "questions": []},
                                headers=await make_session(acme["loner"]))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_member_without_permission(self, client, acme, make_session):
        res = await client.get("/api/surveys", headers=await make_session(acme["member"]))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_company_admin_lists_scoped_surveys(self, client, acme, make_survey, make_session):
        tenant = acme["tenant"]["id"]
        sales = await make_survey(tenant, "sales")
        await make_survey(tenant, "support")
        await make_survey("other-tenant", "sales")

        res = await client.get("/api/surveys", headers=await make_session(acme["company_admin"]))
        assert res.status_code == 200
        assert [s["id"] for s in res.json()["surveys"]] == [sales["id"]]
        assert res.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_other_tenant_survey_is_not_found(self, client, acme, make_survey, make_session):
        foreign = await make_survey("other-tenant", "sales")
        res = await client.get(f"/api/surveys/{foreign['id']}", headers=await make_session(acme["company_admin"]))
        assert res.status_code == 404
        assert res.json()["detail"]["code"] == "SURVEY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_other_tenant_user_is_not_found(self, client, acme, make_user, make_session):
        stranger = await make_user("member", "other-tenant", "sales")
        headers = await make_session(acme["company_admin"])
        res = await client.get(f"/api/users/{stranger['id']}", headers=headers)
        assert res.status_code == 404

        listing = await client.get("/api/users", headers=headers)
        assert listing.status_code == 200
        assert stranger["id"] not in {u["id"] for u in listing.json()["users"]}
        assert listing.json()["total"] == 3

    @pytest.mark.asyncio
    async def test_system_config_is_platform_only(self, client, acme, platform_admin, make_session):
        res = await client.get("/api/system-config", headers=await make_session(acme["company_admin"]))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "PLATFORM_ACCESS_DENIED"

        res = await client.get("/api/system-config", headers=await make_session(platform_admin))
        assert res.status_code == 200
        assert "email" in res.json()["categories"]

    @pytest.mark.asyncio
    async def test_unknown_config_key(self, client, platform_admin, make_session):
        res = await client.put("/api/system-config/AWS_SECRET", json={"value": "x"},
                               headers=await make_session(platform_admin))
        assert res.status_code == 400
        assert res.json()["detail"]["code"] == "VALIDATION_FAILED"


class TestAnalyticsScope:
    """analytics:view est dual: admin avec tenant_id, tenant user sur sa tenant"""

    @pytest.mark.asyncio
    async def test_admin_needs_tenant_id(self, client, platform_admin, make_session):
        res = await client.get("/api/analytics/nps", headers=await make_session(platform_admin))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "NO_TENANT_CONTEXT"

    @pytest.mark.asyncio
    async def test_admin_with_tenant_id(self, client, acme, platform_admin, make_session):
        res = await client.get(f"/api/analytics/nps?tenant_id={acme['tenant']['id']}",
                               headers=await make_session(platform_admin))
        assert res.status_code == 200
        assert res.json()["totalResponses"] == 0

    @pytest.mark.asyncio
    async def test_company_admin_other_tenant(self, client, acme, make_session):
        res = await client.get("/api/analytics/nps?tenant_id=other-tenant",
                               headers=await make_session(acme["company_admin"]))
        assert res.status_code == 403
        assert res.json()["detail"]["code"] == "TENANT_OWNERSHIP_DENIED"

    @pytest.mark.asyncio
    async def test_company_admin_own_tenant(self, client, acme, make_session):
        res = await client.get("/api/analytics/sentiment", headers=await make_session(acme["company_admin"]))
        assert res.status_code == 200
        assert res.json()["distribution"] == {"positive": 0, "neutral": 0, "negative": 0}


class TestPublicSubmission:
    """POST /api/responses/public/{survey_id}"""

    @pytest.mark.asyncio
    async def test_submission_runs_chain(self, client, acme, make_survey, fake_ai, answers, monkeypatch):
        monkeypatch.delenv("ENABLE_QUEUES", raising=False)
        survey = await make_survey(acme["tenant"]["id"], "sales")
        res = await client.post(f"/api/responses/public/{survey['id']}", json={"answers": answers()})
        assert res.status_code == 201
        body = res.json()
        assert body["status"] == "submitted"

        # BackgroundTasks complete before the ASGI call returns
        response = await db.survey_responses.find_one({"id": body["responseId"]}, {"_id": 0})
        assert response["analysis"]["sentiment"] == "positive"
        assert (await db.surveys.find_one({"id": survey["id"]}))["totalResponses"] == 1
        print("✅ public submission enriched in background")

    @pytest.mark.asyncio
    async def test_invalid_answers(self, client, acme, make_survey, fake_ai):
        survey = await make_survey(acme["tenant"]["id"], "sales")
        res = await client.post(f"/api/responses/public/{survey['id']}",
                                json={"answers": [{"questionId": "q_nps", "value": 42}]})
        assert res.status_code == 400
        assert res.json()["detail"]["errors"][0]["field"] == "q_nps"
        assert await db.survey_responses.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_unknown_survey(self, client):
        res = await client.post("/api/responses/public/nope", json={"answers": []})
        assert res.status_code == 404

    @pytest.mark.asyncio
    async def test_durable_mode_enqueues(self, client, acme, make_survey, fake_ai, answers, monkeypatch):
        monkeypatch.setenv("ENABLE_QUEUES", "true")
        survey = await make_survey(acme["tenant"]["id"], "sales")
        res = await client.post(f"/api/responses/public/{survey['id']}", json={"answers": answers()})
        assert res.status_code == 201
        job = await db.job_queue.find_one({}, {"_id": 0})
        assert job["name"] == "process-response"
        assert job["tenant"] == acme["tenant"]["id"]
        assert fake_ai.calls == 0
