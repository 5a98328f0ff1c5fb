"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Actions & Assignment Rules Tests                                  ║
║                                                                              ║
║  1. Priorité dérivée de l'analyse                                            ║
║  2. Règles: single_owner, round_robin, least_load, priorityOverride          ║
║  3. Fallback sur l'actionManager de la survey                                ║
║  4. Assignation manuelle et statut                                           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import pytest

from config import db, now_iso
from services import actions
from services.errors import AccessDenied, NotFound, ValidationFailed


async def _flagged_response(survey: dict, complaint: bool = True, flagged: bool = True) -> dict:
    rules = ["nps_detractor"] + (["complaint"] if complaint else [])
    response = {
        "id": str(uuid.uuid4()),
        "survey": survey["id"],
        "tenant": survey["tenant"],
        "status": "submitted",
        "score": 2,
        "review": "Bad experience",
        "analysis": {
            "sentiment": "negative",
            "flaggedForReview": flagged,
            "triggeredRules": rules if flagged else [],
            "themes": ["delivery"],
            "classification": {"isComplaint": complaint},
            "summary": "Unhappy customer",
        },
        "createdAt": now_iso(),
    }
    await db.survey_responses.insert_one(dict(response))
    return response


async def _rule(tenant: str, **data) -> dict:
    data.setdefault("name", "rule")
    data.setdefault("priority", 0)
    data.setdefault("conditions", [])
    data.setdefault("assignmentMode", "single_owner")
    data.setdefault("isActive", True)
    return await actions.create_rule(tenant, data, "tester")


class TestPriority:
    def test_derive_priority(self):
        assert actions.derive_priority(True, True) == "high"
        assert actions.derive_priority(True, False) == "medium"
        assert actions.derive_priority(False, True) is None

    def test_conditions(self):
        action = {"category": "Delivery", "priority": "high", "metadata": {"triggeredRules": ["complaint"]}}
        assert actions.condition_matches({"field": "category", "operator": "==", "value": "delivery"}, action)
        assert actions.condition_matches(
            {"field": "metadata.triggeredRules", "operator": "contains", "value": "complaint"}, action
        )
        assert not actions.condition_matches({"field": "missing", "operator": "==", "value": "x"}, action)
        assert actions.rule_matches({"conditions": []}, action)


class TestGeneration:
    """generate_action_for_response()"""

    @pytest.mark.asyncio
    async def test_one_action_per_response(self, acme, make_survey):
        survey = await make_survey(acme["tenant"]["id"], "sales")
        response = await _flagged_response(survey)
        first = await actions.generate_action_for_response(response["id"], survey["tenant"])
        second = await actions.generate_action_for_response(response["id"], survey["tenant"])
        assert first["id"] == second["id"]
        assert first["priority"] == "high"
        assert first["category"] == "delivery"
        assert first["department"] == "sales"
        assert await db.actions.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_insert_keeps_single_action(self, acme, make_survey, monkeypatch):
        """Deux générations simultanées: l'index unique tranche, la perdante renvoie l'existante"""
        await db.actions.create_index(
            "metadata.responseId", unique=True,
            partialFilterExpression={"metadata.responseId": {"$type": "string"}},
        )
        survey = await make_survey(acme["tenant"]["id"], "sales")
        response = await _flagged_response(survey)
        resolve = actions.resolve_assignment

        async def _competing_insert(action, target):
            await db.actions.insert_one({
                "id": "first-writer", "tenant": action["tenant"],
                "metadata": {"responseId": action["metadata"]["responseId"]},
            })
            return await resolve(action, target)

        monkeypatch.setattr(actions, "resolve_assignment", _competing_insert)
        result = await actions.generate_action_for_response(response["id"], survey["tenant"])
        assert result["id"] == "first-writer"
        assert await db.actions.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_not_flagged_creates_nothing(self, acme, make_survey):
        survey = await make_survey(acme["tenant"]["id"])
        response = await _flagged_response(survey, flagged=False)
        assert await actions.generate_action_for_response(response["id"], survey["tenant"]) is None

    @pytest.mark.asyncio
    async def test_other_tenant_creates_nothing(self, acme, make_survey):
        survey = await make_survey(acme["tenant"]["id"])
        response = await _flagged_response(survey)
        assert await actions.generate_action_for_response(response["id"], "another-tenant") is None

    @pytest.mark.asyncio
    async def test_fallback_to_action_manager(self, acme, make_survey):
        member = acme["member"]
        survey = await make_survey(acme["tenant"]["id"], "sales", actionManager=member["id"])
        action = await actions.generate_action_for_response((await _flagged_response(survey))["id"], survey["tenant"])
        assert action["assignedTo"] == member["id"]
        assert action["autoAssigned"] is True
        assert action["metadata"]["assignmentRule"] is None


class TestAssignmentRules:
    """Règles actives, priorité décroissante"""

    @pytest.mark.asyncio
    async def test_invalid_rule_rejected(self, acme):
        with pytest.raises(ValidationFailed):
            await _rule(acme["tenant"]["id"], assignmentMode="random")
        with pytest.raises(ValidationFailed):
            await _rule(acme["tenant"]["id"], conditions=[{"field": "category", "operator": "~=", "value": "x"}])

    @pytest.mark.asyncio
    async def test_round_robin(self, acme, make_survey):
        tenant = acme["tenant"]["id"]
        a, b = acme["member"]["id"], acme["loner"]["id"]
        await _rule(tenant, assignmentMode="round_robin", assignees=[a, b])
        survey = await make_survey(tenant)

        assigned = []
        for _ in range(3):
            response = await _flagged_response(survey)
            assigned.append((await actions.generate_action_for_response(response["id"], tenant))["assignedTo"])
        assert assigned == [a, b, a]

    @pytest.mark.asyncio
    async def test_least_load(self, acme, make_survey):
        tenant = acme["tenant"]["id"]
        busy, free = acme["member"]["id"], acme["loner"]["id"]
        for status in ("open", "in-progress", "resolved"):
            await db.actions.insert_one({"id": str(uuid.uuid4()), "tenant": tenant, "assignedTo": busy,
                                         "status": status, "metadata": {}})
        await db.actions.insert_one({"id": str(uuid.uuid4()), "tenant": tenant, "assignedTo": free,
                                     "status": "open", "metadata": {}})
        await _rule(tenant, assignmentMode="least_load", assignees=[busy, free])

        survey = await make_survey(tenant)
        action = await actions.generate_action_for_response((await _flagged_response(survey))["id"], tenant)
        assert action["assignedTo"] == free

    @pytest.mark.asyncio
    async def test_inactive_assignee_skipped(self, acme, make_survey, make_user):
        tenant = acme["tenant"]["id"]
        gone = await make_user("member", tenant, "sales", isActive=False)
        foreign = await make_user("member", "other-tenant", "sales")
        await _rule(tenant, assignees=[gone["id"], foreign["id"], acme["member"]["id"]])

        survey = await make_survey(tenant)
        action = await actions.generate_action_for_response((await _flagged_response(survey))["id"], tenant)
        assert action["assignedTo"] == acme["member"]["id"]

    @pytest.mark.asyncio
    async def test_priority_override_and_rule_order(self, acme, make_survey):
        tenant = acme["tenant"]["id"]
        await _rule(tenant, name="low", priority=1, assignees=[acme["loner"]["id"]])
        top = await _rule(tenant, name="escalate", priority=10, assignees=[acme["member"]["id"]],
                          conditions=[{"field": "priority", "operator": "==", "value": "medium"}],
                          priorityOverride="high")

        survey = await make_survey(tenant)
        medium = await actions.generate_action_for_response(
            (await _flagged_response(survey, complaint=False))["id"], tenant
        )
        assert medium["priority"] == "high"
        assert medium["assignedTo"] == acme["member"]["id"]
        assert medium["metadata"]["assignmentRule"] == top["id"]

        high = await actions.generate_action_for_response((await _flagged_response(survey))["id"], tenant)
        assert high["assignedTo"] == acme["loner"]["id"]

    @pytest.mark.asyncio
    async def test_delete_rule_scoped(self, acme):
        rule = await _rule(acme["tenant"]["id"], assignees=[])
        with pytest.raises(NotFound):
            await actions.delete_rule("other-tenant", rule["id"])
        await actions.delete_rule(acme["tenant"]["id"], rule["id"])
        assert await actions.list_rules(acme["tenant"]["id"]) == []


class TestManualOperations:
    """assign_action() / update_action_status()"""

    @pytest.mark.asyncio
    async def test_assign_requires_gate(self, acme, make_survey):
        tenant = acme["tenant"]["id"]
        survey = await make_survey(tenant, "sales", actionManager=acme["member"]["id"])
        action = await actions.generate_action_for_response((await _flagged_response(survey))["id"], tenant)

        with pytest.raises(AccessDenied):
            await actions.assign_action(acme["company_admin"], action["id"], acme["loner"]["id"])

        await db.surveys.update_one({"id": survey["id"]}, {"$set": {"actionManager": acme["company_admin"]["id"]}})
        updated = await actions.assign_action(acme["company_admin"], action["id"], acme["loner"]["id"])
        assert updated["assignedTo"] == acme["loner"]["id"]
        assert updated["autoAssigned"] is False

    @pytest.mark.asyncio
    async def test_assign_unknown_user(self, acme, make_survey):
        tenant = acme["tenant"]["id"]
        survey = await make_survey(tenant, "sales", actionManager=acme["company_admin"]["id"])
        action = await actions.generate_action_for_response((await _flagged_response(survey))["id"], tenant)
        with pytest.raises(ValidationFailed):
            await actions.assign_action(acme["company_admin"], action["id"], "ghost")

    @pytest.mark.asyncio
    async def test_status_transitions(self, acme, make_survey):
        tenant = acme["tenant"]["id"]
        survey = await make_survey(tenant, "sales")
        action = await actions.generate_action_for_response((await _flagged_response(survey))["id"], tenant)
        boss = acme["company_admin"]

        resolved = await actions.update_action_status(boss, action["id"], "resolved", "Called the customer")
        assert resolved["completedAt"] is not None
        assert resolved["resolution"] == "Called the customer"

        reopened = await actions.update_action_status(boss, action["id"], "open")
        assert "completedAt" not in reopened

        with pytest.raises(ValidationFailed):
            await actions.update_action_status(boss, action["id"], "done")

    @pytest.mark.asyncio
    async def test_other_tenant_action_not_found(self, acme, make_survey, make_tenant, make_user):
        other = await make_tenant("Other")
        other_boss = await make_user("companyAdmin", other["id"], "sales")
        survey = await make_survey(acme["tenant"]["id"], "sales")
        action = await actions.generate_action_for_response(
            (await _flagged_response(survey))["id"], acme["tenant"]["id"]
        )
        with pytest.raises(NotFound):
            await actions.get_scoped_action(other_boss, action["id"])
