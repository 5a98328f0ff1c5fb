"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Invite Registry & Audience Tests                                  ║
║                                                                              ║
║  1. Audience: union dédupliquée (email, puis téléphone)                      ║
║  2. Un invite par (survey, destinataire), republication idempotente          ║
║  3. pending -> responded: une seule transition gagne                         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import asyncio
import pytest

from config import db
from services import invites
from services.audience import load_audience, resolve_audience, segment_query
from services.errors import AlreadyResponded, InvalidToken


class TestResolveAudience:
    """resolve_audience() est pure"""

    def test_dedupe_by_email_case_insensitive(self):
        explicit = [{"id": "c1", "email": "Ann@Example.com", "name": "Ann"}]
        embedded = [{"email": "ann@example.com", "name": "Ann copy"}]
        recipients = resolve_audience([], [], explicit, embedded)
        assert len(recipients) == 1
        assert recipients[0]["contactId"] == "c1"
        assert recipients[0]["source"] == "contact"

    def test_phone_only_recipients(self):
        embedded = [{"phone": "+33600000000"}, {"phone": "+33600000000"}, {"name": "nobody"}]
        recipients = resolve_audience([], [], [], embedded)
        assert [r["phone"] for r in recipients] == ["+33600000000"]

    def test_union_of_sources(self):
        segment = [{"id": "c1", "email": "a@x.test"}]
        category = [{"id": "c2", "email": "b@x.test"}, {"id": "c1", "email": "a@x.test"}]
        recipients = resolve_audience(segment, category, [], [])
        assert {r["email"] for r in recipients} == {"a@x.test", "b@x.test"}

    def test_segment_query_ignores_unknown_keys(self):
        query = segment_query({"filter": {"tags": ["vip"], "country": "FR", "$where": "1"}})
        assert query == {"tags": {"$in": ["vip"]}, "enrichment.country": "FR"}


class TestLoadAudience:
    """Résolution sur la base, toujours filtrée par tenant"""

    @pytest.mark.asyncio
    async def test_tenant_filtered(self, make_contact):
        mine = await make_contact("t1", "mine@x.test", categories=["vip"])
        await make_contact("t2", "theirs@x.test", categories=["vip"])
        survey = {"id": "s1", "tenant": "t1", "targetAudience": {"categories": ["vip"], "contacts": []}}
        recipients = await load_audience(survey)
        assert [r["contactId"] for r in recipients] == [mine["id"]]

    @pytest.mark.asyncio
    async def test_segments(self, make_contact):
        vip = await make_contact("t1", "vip@x.test", tags=["vip"])
        await make_contact("t1", "other@x.test", tags=["new"])
        await db.segments.insert_one({"id": "seg1", "tenant": "t1", "filter": {"tags": ["vip"]}})
        survey = {"id": "s1", "tenant": "t1", "targetAudience": {"segments": ["seg1"]}}
        recipients = await load_audience(survey)
        assert [r["contactId"] for r in recipients] == [vip["id"]]


class TestCreateInvites:
    """Un invite par (survey, destinataire)"""

    @pytest.mark.asyncio
    async def test_tokens_are_opaque_and_unique(self, make_contact):
        c1 = await make_contact("t1", "a@x.test")
        c2 = await make_contact("t1", "b@x.test")
        survey = {"id": "s1", "tenant": "t1"}
        result = await invites.create_invites(survey, [
            {"contactId": c1["id"], "email": "a@x.test"},
            {"contactId": c2["id"], "email": "b@x.test"},
        ])
        tokens = [i["token"] for i in result["created"]]
        assert len(tokens) == 2
        assert len(set(tokens)) == 2
        assert all(len(t) == 64 for t in tokens)
        assert all(i["status"] == "pending" for i in result["created"])
        assert all(i["submittedAt"] is None for i in result["created"])
        print(f"✅ {len(tokens)} invites minted")

    @pytest.mark.asyncio
    async def test_republish_skips_existing_recipients(self, make_contact):
        contact = await make_contact("t1", "a@x.test")
        survey = {"id": "s1", "tenant": "t1"}
        recipients = [{"contactId": contact["id"], "email": "a@x.test"}]
        first = await invites.create_invites(survey, recipients)
        second = await invites.create_invites(survey, recipients + [{"email": "A@X.test", "name": "dup"}])
        assert len(first["created"]) == 1
        assert second["created"] == []
        assert second["skipped"] == 2
        assert await db.survey_invites.count_documents({"survey": "s1"}) == 1

    @pytest.mark.asyncio
    async def test_invited_count_recorded(self, make_contact):
        contact = await make_contact("t1", "a@x.test")
        await invites.create_invites({"id": "s1", "tenant": "t1"}, [{"contactId": contact["id"], "email": "a@x.test"}])
        await invites.create_invites({"id": "s2", "tenant": "t1"}, [{"contactId": contact["id"], "email": "a@x.test"}])
        stored = await db.contacts.find_one({"id": contact["id"]}, {"_id": 0})
        assert stored["surveyStats"]["invitedCount"] == 2
        assert stored["surveyStats"]["lastInvitedDate"] is not None


class TestRespondedTransition:
    """Compare-and-set pending -> responded"""

    async def _invite(self):
        result = await invites.create_invites({"id": "s1", "tenant": "t1"}, [{"email": "a@x.test"}])
        return result["created"][0]

    @pytest.mark.asyncio
    async def test_validate(self):
        invite = await self._invite()
        assert (await invites.validate(invite["token"]))["id"] == invite["id"]
        with pytest.raises(InvalidToken):
            await invites.validate("nope")
        with pytest.raises(InvalidToken):
            await invites.validate("")

    @pytest.mark.asyncio
    async def test_second_claim_rejected(self):
        invite = await self._invite()
        claimed = await invites.mark_responded(invite["token"], "r1")
        assert claimed["status"] == "responded"
        assert claimed["response"] == "r1"
        assert claimed["submittedAt"] is not None
        with pytest.raises(AlreadyResponded):
            await invites.mark_responded(invite["token"], "r2")
        with pytest.raises(AlreadyResponded):
            await invites.validate(invite["token"])

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self):
        invite = await self._invite()
        results = await asyncio.gather(
            *[invites.mark_responded(invite["token"], f"r{i}") for i in range(5)],
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, dict)]
        losers = [r for r in results if isinstance(r, AlreadyResponded)]
        assert len(winners) == 1
        assert len(losers) == 4
        stored = await db.survey_invites.find_one({"id": invite["id"]}, {"_id": 0})
        assert stored["response"] == winners[0]["response"]
        print("✅ exactly one responded transition")

    @pytest.mark.asyncio
    async def test_unknown_token_claim(self):
        with pytest.raises(InvalidToken):
            await invites.mark_responded("missing", "r1")

    @pytest.mark.asyncio
    async def test_release_only_own_claim(self):
        invite = await self._invite()
        await invites.mark_responded(invite["token"], "r1")
        await invites.release(invite["id"], "other-response")
        assert (await db.survey_invites.find_one({"id": invite["id"]}))["status"] == "responded"
        await invites.release(invite["id"], "r1")
        stored = await db.survey_invites.find_one({"id": invite["id"]}, {"_id": 0})
        assert stored["status"] == "pending"
        assert stored["response"] is None
        assert stored["submittedAt"] is None
