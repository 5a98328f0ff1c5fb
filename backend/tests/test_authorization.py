"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Authorization Engine Tests                                        ║
║                                                                              ║
║  1. Scope avant rôle: plateforme / tenant / dual                             ║
║  2. Permissions: companyAdmin implicite, rôles custom, assignations          ║
║  3. Cross-tenant = 404 (indiscernable d'une absence)                         ║
║  4. Portée département des surveys                                           ║
║  5. Gate d'assignation des actions                                           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import pytest
from mongomock_motor import AsyncCursor

from config import db, now_iso
from services.errors import NotFound
from services.permissions import (
    MATCH_NOTHING,
    Scope,
    authorize,
    can_view_survey_actions,
    check_assignment_gate,
    check_scope,
    get_department_filter,
    get_effective_permissions,
    scoped_filter,
    survey_in_department_scope,
    user_has_permission,
)

ADMIN = {"id": "u-admin", "role": "admin", "tenant": None}
BOSS = {"id": "u-boss", "role": "companyAdmin", "tenant": "t1", "department": "sales"}
MEMBER = {"id": "u-member", "role": "member", "tenant": "t1", "department": "sales"}


async def _grant_role(user: dict, *names, active=True, deleted=False) -> str:
    perms = await db.permissions.find({"name": {"$in": list(names)}}, {"_id": 0, "id": 1}).to_list(50)
    role_id = str(uuid.uuid4())
    await db.custom_roles.insert_one({
        "id": role_id,
        "tenant": user["tenant"],
        "name": f"role-{role_id[:6]}",
        "permissions": [p["id"] for p in perms],
        "isActive": active,
        "deleted": deleted,
        "createdAt": now_iso(),
    })
    await db.users.update_one({"id": user["id"]}, {"$push": {"customRoles": role_id}})
    user.setdefault("customRoles", []).append(role_id)
    return role_id


class TestScope:
    """Séparation plateforme / tenant"""

    def test_platform_scope_rejects_tenant_users(self):
        """Une route plateforme refuse le companyAdmin"""
        decision = check_scope(BOSS, Scope.PLATFORM)
        assert not decision.allow
        assert decision.reason == "PLATFORM_ACCESS_DENIED"

    def test_tenant_scope_rejects_admin(self):
        """Une route tenant refuse l'admin plateforme"""
        decision = check_scope(ADMIN, Scope.TENANT)
        assert not decision.allow
        assert decision.reason == "TENANT_ACCESS_DENIED"

    def test_tenant_scope_requires_tenant(self):
        """Un member sans tenant n'a pas de contexte"""
        decision = check_scope({"id": "x", "role": "member", "tenant": None}, Scope.TENANT)
        assert decision.reason == "NO_TENANT_CONTEXT"

    def test_dual_scope_admin_and_own_tenant(self):
        """Dual: admin ok, tenant user ok sur sa tenant"""
        assert check_scope(ADMIN, Scope.DUAL, "t2").allow
        assert check_scope(MEMBER, Scope.DUAL, "t1").allow

    def test_dual_scope_other_tenant_denied(self):
        """Dual: un tenant user ne peut viser une autre tenant"""
        decision = check_scope(MEMBER, Scope.DUAL, "t2")
        assert not decision.allow
        assert decision.reason == "TENANT_OWNERSHIP_DENIED"

    def test_shared_scope_allows_everyone(self):
        assert check_scope(ADMIN, Scope.SHARED).allow
        assert check_scope(MEMBER, Scope.SHARED).allow


class TestAuthorize:
    """authorize(principal, action, target)"""

    @pytest.mark.asyncio
    async def test_unauthenticated(self):
        decision = await authorize(None, "survey:read")
        assert decision.reason == "AUTH_REQUIRED"

    @pytest.mark.asyncio
    async def test_unknown_action_denied(self):
        decision = await authorize(BOSS, "survey:teleport")
        assert not decision.allow

    @pytest.mark.asyncio
    async def test_admin_never_touches_surveys(self):
        """L'admin plateforme est refusé sur toute opération survey"""
        for action in ("survey:read", "survey:create", "survey:publish", "surveyAction:assign"):
            decision = await authorize(ADMIN, action)
            assert decision.reason == "SURVEY_ACTION_DENIED", action
        print("✅ admin denied on survey operations")

    @pytest.mark.asyncio
    async def test_company_admin_has_implicit_permissions(self):
        assert (await authorize(BOSS, "survey:publish")).allow
        assert (await authorize(BOSS, "analytics:view")).allow

    @pytest.mark.asyncio
    async def test_member_without_permission_denied(self, acme):
        decision = await authorize(acme["member"], "survey:read")
        assert not decision.allow
        assert decision.reason == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_member_with_custom_role(self, acme):
        member = acme["member"]
        await _grant_role(member, "survey:read")
        assert (await authorize(member, "survey:read")).allow
        assert not (await authorize(member, "survey:delete")).allow

    @pytest.mark.asyncio
    async def test_inactive_or_deleted_role_grants_nothing(self, acme):
        member = acme["member"]
        await _grant_role(member, "survey:read", active=False)
        await _grant_role(member, "survey:read", deleted=True)
        assert not await user_has_permission(member, "survey:read")

    @pytest.mark.asyncio
    async def test_direct_assignment_scoped_to_tenant(self, acme):
        """Une assignation directe ne vaut que dans la tenant de l'utilisateur"""
        member = acme["member"]
        perm = await db.permissions.find_one({"name": "analytics:view"}, {"_id": 0})
        await db.permission_assignments.insert_one({
            "id": "pa-1", "userId": member["id"], "permissionId": perm["id"], "tenantId": "other-tenant",
        })
        assert not await user_has_permission(member, "analytics:view")

        await db.permission_assignments.insert_one({
            "id": "pa-2", "userId": member["id"], "permissionId": perm["id"], "tenantId": member["tenant"],
        })
        assert await user_has_permission(member, "analytics:view")
        assert "analytics:view" in await get_effective_permissions(member)

    @pytest.mark.asyncio
    async def test_unknown_permission_never_granted(self, acme):
        assert not await user_has_permission(acme["member"], "rockets:launch")

    @pytest.mark.asyncio
    async def test_cross_tenant_target_is_not_found(self):
        """Une cible d'une autre tenant se présente comme absente"""
        decision = await authorize(BOSS, "survey:read", {"tenant": "t2", "_kind": "survey", "department": None})
        assert not decision.allow
        assert decision.error is NotFound

    @pytest.mark.asyncio
    async def test_dual_action_other_tenant(self):
        decision = await authorize(BOSS, "analytics:view", {"tenant": "t2", "_kind": "tenant"})
        assert decision.reason == "TENANT_OWNERSHIP_DENIED"

    @pytest.mark.asyncio
    async def test_survey_out_of_department_is_not_found(self):
        target = {"tenant": "t1", "_kind": "survey", "department": "support"}
        decision = await authorize(BOSS, "survey:read", target)
        assert decision.reason == "SURVEY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_platform_actions(self):
        assert (await authorize(ADMIN, "config:manage")).allow
        assert (await authorize(BOSS, "config:manage")).reason == "PLATFORM_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_role_gate(self):
        """role:manage est réservé au companyAdmin"""
        decision = await authorize(MEMBER, "role:manage")
        assert decision.reason == "ROLE_NOT_AUTHORIZED"


class TestDepartmentScope:
    """Filtre département des surveys"""

    def test_company_admin_sees_own_department_and_shared(self):
        assert get_department_filter(BOSS) == {"$or": [{"department": "sales"}, {"department": None}]}

    def test_company_admin_cross_department(self):
        assert get_department_filter({**BOSS, "crossDepartmentSurveyAccess": True}) == {}

    def test_company_admin_without_department(self):
        assert get_department_filter({**BOSS, "department": None}) == {"department": None}

    def test_member_sees_own_department_only(self):
        assert get_department_filter(MEMBER) == {"department": "sales"}

    def test_member_without_department_sees_nothing(self):
        assert get_department_filter({**MEMBER, "department": None}) == MATCH_NOTHING

    def test_in_memory_mirror(self):
        assert survey_in_department_scope(BOSS, {"department": None})
        assert survey_in_department_scope(BOSS, {"department": "sales"})
        assert not survey_in_department_scope(BOSS, {"department": "support"})
        assert not survey_in_department_scope(MEMBER, {"department": None})
        assert not survey_in_department_scope({**MEMBER, "department": None}, {"department": None})

    @pytest.mark.asyncio
    async def test_scoped_filter_on_database(self, acme, make_survey):
        """Les surveys hors portée ne sont jamais chargées"""
        tenant = acme["tenant"]["id"]
        sales = await make_survey(tenant, "sales", title="Sales")
        support = await make_survey(tenant, "support", title="Support")
        shared = await make_survey(tenant, None, title="Shared")
        await make_survey("other-tenant", "sales", title="Foreign")
        deleted = await make_survey(tenant, "sales", title="Gone", deleted=True)

        async def visible(user):
            query = await scoped_filter(user, "surveys")
            return {s["id"] for s in await db.surveys.find(query, {"_id": 0, "id": 1}).to_list(100)}

        assert await visible(acme["company_admin"]) == {sales["id"], shared["id"]}
        assert await visible(acme["member"]) == {sales["id"]}
        assert await visible(acme["loner"]) == set()
        assert deleted["id"] not in await visible({**acme["company_admin"], "crossDepartmentSurveyAccess": True})
        assert support["id"] in await visible({**acme["company_admin"], "crossDepartmentSurveyAccess": True})

    @pytest.mark.asyncio
    async def test_action_permissions_do_not_widen_survey_scope(self, acme, make_survey):
        """restrictToDepartment ne rend pas visible une survey d'un autre département"""
        tenant = acme["tenant"]["id"]
        sales = await make_survey(tenant, "sales", title="Sales")
        support = await make_survey(tenant, "support", title="Support", actionPermissions={
            "enabled": True, "allowedAssigners": [], "allowedViewers": [acme["member"]["id"]],
            "restrictToDepartment": "sales",
        })
        query = await scoped_filter(acme["member"], "surveys")
        ids = {s["id"] for s in await db.surveys.find(query, {"_id": 0, "id": 1}).to_list(100)}
        assert ids == {sales["id"]}
        assert support["id"] not in ids

    @pytest.mark.asyncio
    async def test_response_scope_covers_every_visible_survey(self, acme, monkeypatch):
        """Aucun plafond sur les surveys visibles: la 5001e garde ses réponses"""
        original = AsyncCursor.to_list

        async def _to_list(self, length=None):
            docs = await original(self)
            return docs if length is None else docs[:length]

        monkeypatch.setattr(AsyncCursor, "to_list", _to_list)
        tenant = acme["tenant"]["id"]
        await db.surveys.insert_many([
            {"id": f"s-{n}", "tenant": tenant, "department": "sales", "deleted": False, "createdAt": now_iso()}
            for n in range(5001)
        ])
        await db.survey_responses.insert_one({"id": "r-last", "tenant": tenant, "survey": "s-5000"})

        query = await scoped_filter(acme["company_admin"], "responses")
        assert await db.survey_responses.count_documents(query) == 1


class TestAssignmentGate:
    """surveyAction:assign"""

    def test_action_manager_allowed(self):
        survey = {"actionManager": MEMBER["id"], "actionPermissions": {}}
        assert check_assignment_gate(MEMBER, survey).allow

    def test_cross_department_allowed(self):
        survey = {"actionManager": "someone", "actionPermissions": {}}
        assert check_assignment_gate({**BOSS, "crossDepartmentSurveyAccess": True}, survey).allow

    def test_legacy_allowed_assigners(self):
        survey = {"actionManager": None, "actionPermissions": {"allowedAssigners": [MEMBER["id"]]}}
        assert check_assignment_gate(MEMBER, survey).allow

    def test_other_users_denied(self):
        survey = {"actionManager": "someone", "actionPermissions": {}}
        assert check_assignment_gate(MEMBER, survey).reason == "ASSIGNMENT_NOT_ALLOWED"

    def test_restrict_to_department(self):
        survey = {"actionManager": MEMBER["id"], "actionPermissions": {"restrictToDepartment": "support"}}
        assert check_assignment_gate(MEMBER, survey).reason == "DEPARTMENT_RESTRICTED"

    def test_viewers_only_when_enabled(self):
        disabled = {"actionPermissions": {"enabled": False, "allowedViewers": ["nobody"]}}
        enabled = {"actionPermissions": {"enabled": True, "allowedViewers": ["nobody"]}}
        assert can_view_survey_actions(MEMBER, disabled)
        assert not can_view_survey_actions(MEMBER, enabled)
        assert can_view_survey_actions(BOSS, enabled)

    @pytest.mark.asyncio
    async def test_authorize_runs_gate_on_survey_target(self):
        target = {"tenant": "t1", "_kind": "survey", "department": "sales", "actionManager": "someone"}
        decision = await authorize(BOSS, "surveyAction:assign", target)
        assert decision.reason == "ASSIGNMENT_NOT_ALLOWED"
        decision = await authorize(BOSS, "surveyAction:assign", {**target, "actionManager": BOSS["id"]})
        assert decision.allow
