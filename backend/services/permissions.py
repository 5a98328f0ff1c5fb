"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Authorization Engine                                              ║
║                                                                              ║
║  ORDRE D'ÉVALUATION (authorize):                                             ║
║  1. Scope de la route: platform | tenant | shared | dual                     ║
║  2. Role gate                                                                ║
║  3. Permission gate (companyAdmin implicite, sinon CustomRole actif          ║
║     ou PermissionAssignment direct)                                          ║
║  4. Department scope (surveys et actions dérivées)                           ║
║  5. Assignment gate (surveyAction:assign)                                    ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - admin n'a jamais de tenant; tout autre rôle en a un                       ║
║  - admin est refusé sur toute opération survey (SURVEY_ACTION_DENIED)        ║
║  - un refus cross-tenant sur une cible par id est un 404, jamais un 403      ║
║  - les filtres de liste excluent en base, ils ne masquent pas après coup     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from enum import Enum
from typing import Optional, Dict, List, Any, Iterable, Type
from fastapi import Depends, Request

from config import db
from services.errors import (
    AppError,
    Unauthenticated,
    AccessDenied,
    PlatformAccessDenied,
    TenantAccessDenied,
    TenantOwnershipDenied,
    NoTenantContext,
    RoleNotAuthorized,
    PermissionDenied,
    SurveyActionDenied,
    NotFound,
)

logger = logging.getLogger("authorization")

ADMIN = "admin"
COMPANY_ADMIN = "companyAdmin"
MEMBER = "member"
TENANT_ROLES = (COMPANY_ADMIN, MEMBER)

# ════════════════════════════════════════════════════════════════════════
# PERMISSION CATALOGUE
# ════════════════════════════════════════════════════════════════════════

PERMISSION_KEYS = [
    "survey:create",
    "survey:read",
    "survey:update",
    "survey:delete",
    "survey:activate",
    "survey:publish",
    "survey:responses:view",

    "surveyAction:assign",
    "surveyAction:view",

    "action:read",
    "action:update",

    "analytics:view",

    "user:create",
    "user:read",
    "user:update",
    "user:delete",

    "role:manage",
    "permission:assign",

    "template:read",
    "notification:create",
    "contact:read",
]


class Scope(str, Enum):
    PLATFORM = "platform"
    TENANT = "tenant"
    SHARED = "shared"
    DUAL = "dual"


class Policy:
    """Declared attributes of an operation."""

    def __init__(
        self,
        scope: Scope,
        roles: Optional[Iterable[str]] = None,
        permission: Optional[str] = None,
        survey: bool = False,
        assignment: bool = False,
    ):
        self.scope = scope
        self.roles = tuple(roles) if roles else None
        self.permission = permission
        self.survey = survey
        self.assignment = assignment


ACTION_POLICIES: Dict[str, Policy] = {
    # Surveys (tenant scope, department-scoped)
    "survey:create": Policy(Scope.TENANT, permission="survey:create", survey=True),
    "survey:read": Policy(Scope.TENANT, permission="survey:read", survey=True),
    "survey:update": Policy(Scope.TENANT, permission="survey:update", survey=True),
    "survey:delete": Policy(Scope.TENANT, permission="survey:delete", survey=True),
    "survey:activate": Policy(Scope.TENANT, permission="survey:activate", survey=True),
    "survey:publish": Policy(Scope.TENANT, permission="survey:publish", survey=True),
    "survey:responses:view": Policy(Scope.TENANT, permission="survey:responses:view", survey=True),

    # Actions derived from surveys
    "surveyAction:assign": Policy(Scope.TENANT, permission="surveyAction:assign", survey=True, assignment=True),
    "surveyAction:view": Policy(Scope.TENANT, permission="surveyAction:view", survey=True),
    "action:read": Policy(Scope.TENANT, permission="action:read"),
    "action:update": Policy(Scope.TENANT, permission="action:update"),

    # Analytics: tenant users, or admin with an explicit tenant
    "analytics:view": Policy(Scope.DUAL, permission="analytics:view"),

    # Users
    "user:create": Policy(Scope.DUAL, roles=(ADMIN, COMPANY_ADMIN), permission="user:create"),
    "user:read": Policy(Scope.DUAL, permission="user:read"),
    "user:update": Policy(Scope.DUAL, permission="user:update"),
    "user:delete": Policy(Scope.DUAL, roles=(ADMIN, COMPANY_ADMIN), permission="user:delete"),

    # Roles & permissions
    "role:manage": Policy(Scope.TENANT, roles=(COMPANY_ADMIN,), permission="role:manage"),
    "permission:assign": Policy(Scope.TENANT, roles=(COMPANY_ADMIN,), permission="permission:assign"),

    # Misc
    "template:read": Policy(Scope.SHARED),
    "notification:create": Policy(Scope.DUAL, roles=(ADMIN, COMPANY_ADMIN)),
    "contact:read": Policy(Scope.TENANT, permission="contact:read"),

    # Platform
    "config:manage": Policy(Scope.PLATFORM),
    "queue:manage": Policy(Scope.PLATFORM),
}


# ════════════════════════════════════════════════════════════════════════
# DECISION
# ════════════════════════════════════════════════════════════════════════

class Decision:
    """Result of an authorization evaluation"""

    def __init__(
        self,
        allow: bool,
        reason: Optional[str] = None,
        error: Optional[Type[AppError]] = None,
        message: Optional[str] = None,
    ):
        self.allow = allow
        self.reason = reason
        self.error = error
        self.message = message

    @classmethod
    def allowed(cls) -> "Decision":
        return cls(True)

    @classmethod
    def denied(cls, error: Type[AppError], message: Optional[str] = None, code: Optional[str] = None) -> "Decision":
        return cls(False, reason=code or error.code, error=error, message=message)

    def raise_if_denied(self):
        if not self.allow:
            raise self.error(self.message, code=self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"allow": self.allow, "reason": self.reason}


def _describe_target(target: Optional[Dict[str, Any]]) -> str:
    # Identifiers only: never log target fields
    if not target:
        return "-"
    return f"{target.get('_kind', 'entity')}:{target.get('id', '-')}"


def log_denial(principal: Optional[dict], route: str, action: str, target: Optional[dict], decision: Decision):
    logger.warning(
        f"[ACCESS_DENIED] user={(principal or {}).get('id', 'anonymous')} "
        f"role={(principal or {}).get('role', '-')} route={route} action={action} "
        f"target={_describe_target(target)} reason={decision.reason}"
    )


# ════════════════════════════════════════════════════════════════════════
# STEP 1/2 - SCOPE & ROLE
# ════════════════════════════════════════════════════════════════════════

def check_scope(principal: dict, scope: Scope, target_tenant: Optional[str] = None) -> Decision:
    """Platform/tenant separation, evaluated before any role check."""
    role = principal.get("role")
    tenant = principal.get("tenant")

    if scope == Scope.PLATFORM:
        if role != ADMIN:
            return Decision.denied(PlatformAccessDenied)
        return Decision.allowed()

    if scope == Scope.TENANT:
        if role == ADMIN:
            return Decision.denied(TenantAccessDenied)
        if not tenant:
            return Decision.denied(NoTenantContext)
        return Decision.allowed()

    if scope == Scope.DUAL:
        if role == ADMIN:
            return Decision.allowed()
        if role not in TENANT_ROLES:
            return Decision.denied(AccessDenied)
        if not tenant:
            return Decision.denied(NoTenantContext, code="NO_TENANT_ASSOCIATION")
        if target_tenant is not None and str(target_tenant) != str(tenant):
            return Decision.denied(TenantOwnershipDenied)
        return Decision.allowed()

    # SHARED: any authenticated principal
    return Decision.allowed()


def check_roles(principal: dict, roles: Optional[Iterable[str]]) -> Decision:
    if roles and principal.get("role") not in roles:
        return Decision.denied(RoleNotAuthorized)
    return Decision.allowed()


# ════════════════════════════════════════════════════════════════════════
# STEP 3 - PERMISSIONS
# ════════════════════════════════════════════════════════════════════════

def _active_role_filter(user: dict) -> Optional[dict]:
    role_ids = user.get("customRoles") or []
    if not role_ids:
        return None
    return {
        "id": {"$in": role_ids},
        "tenant": user.get("tenant"),
        "isActive": True,
        "deleted": {"$ne": True},
    }


async def user_has_permission(user: dict, name: str) -> bool:
    """
    companyAdmin: implicit.
    Others: via an active, non-deleted CustomRole, or a direct
    PermissionAssignment scoped to the user's tenant.
    An unknown permission name is never granted.
    """
    if user.get("role") == COMPANY_ADMIN:
        return True

    perm = await db.permissions.find_one({"name": name}, {"_id": 0, "id": 1})
    if not perm:
        return False

    role_filter = _active_role_filter(user)
    if role_filter:
        role = await db.custom_roles.find_one({**role_filter, "permissions": perm["id"]}, {"_id": 0, "id": 1})
        if role:
            return True

    assignment = await db.permission_assignments.find_one({
        "userId": user.get("id"),
        "permissionId": perm["id"],
        "tenantId": user.get("tenant"),
    })
    return assignment is not None


async def get_effective_permissions(user: dict) -> List[str]:
    """Union of role-mediated and directly assigned permission names."""
    if user.get("role") == COMPANY_ADMIN:
        return list(PERMISSION_KEYS)
    if user.get("role") == ADMIN:
        return []

    perm_ids = set()
    role_filter = _active_role_filter(user)
    if role_filter:
        roles = await db.custom_roles.find(role_filter, {"_id": 0, "permissions": 1}).to_list(100)
        for role in roles:
            perm_ids.update(role.get("permissions", []))

    assignments = await db.permission_assignments.find(
        {"userId": user.get("id"), "tenantId": user.get("tenant")},
        {"_id": 0, "permissionId": 1}
    ).to_list(500)
    perm_ids.update(a["permissionId"] for a in assignments)

    if not perm_ids:
        return []
    perms = await db.permissions.find({"id": {"$in": list(perm_ids)}}, {"_id": 0, "name": 1}).to_list(500)
    return sorted(p["name"] for p in perms)


async def ensure_permissions_seeded():
    """Insert missing catalogue entries (unique by name)."""
    import uuid
    for name in PERMISSION_KEYS:
        await db.permissions.update_one(
            {"name": name},
            {"$setOnInsert": {"id": str(uuid.uuid4()), "name": name}},
            upsert=True,
        )


# ════════════════════════════════════════════════════════════════════════
# STEP 4 - DEPARTMENT SCOPE
# ════════════════════════════════════════════════════════════════════════

MATCH_NOTHING = {"id": {"$in": []}}


def get_department_filter(user: dict) -> dict:
    """
    Department predicate for surveys.
    - companyAdmin + crossDepartmentSurveyAccess: no restriction
    - companyAdmin: own department or no department
    - member: own department only (no department = nothing)
    """
    role = user.get("role")
    department = user.get("department")

    if role == ADMIN:
        raise SurveyActionDenied()

    if role == COMPANY_ADMIN:
        if user.get("crossDepartmentSurveyAccess"):
            return {}
        if department:
            return {"$or": [{"department": department}, {"department": None}]}
        return {"department": None}

    if department:
        return {"department": department}
    return dict(MATCH_NOTHING)


def survey_in_department_scope(user: dict, survey: dict) -> bool:
    """In-memory mirror of get_department_filter."""
    role = user.get("role")
    department = user.get("department")
    survey_dept = survey.get("department")

    if role == COMPANY_ADMIN:
        if user.get("crossDepartmentSurveyAccess"):
            return True
        return survey_dept is None or (department is not None and survey_dept == department)
    if role == MEMBER:
        return department is not None and survey_dept == department
    return False


def and_filters(*filters: dict) -> dict:
    """Combine Mongo predicates without key collisions ($or, etc.)."""
    parts = [f for f in filters if f]
    if not parts:
        return {}
    if len(parts) == 1:
        return dict(parts[0])
    return {"$and": parts}


# ════════════════════════════════════════════════════════════════════════
# STEP 5 - ACTION PERMISSIONS ON SURVEYS
# ════════════════════════════════════════════════════════════════════════

def check_assignment_gate(user: dict, survey: dict) -> Decision:
    """
    surveyAction:assign is allowed for the survey's actionManager, a
    crossDepartmentSurveyAccess holder, or a legacy allowedAssigners entry.
    restrictToDepartment, when set, must match the user's department.
    """
    perms = survey.get("actionPermissions") or {}
    restrict = perms.get("restrictToDepartment")
    if restrict and user.get("department") != restrict:
        return Decision.denied(AccessDenied, "Action assignment restricted to another department",
                               code="DEPARTMENT_RESTRICTED")

    user_id = user.get("id")
    if survey.get("actionManager") and survey.get("actionManager") == user_id:
        return Decision.allowed()
    if user.get("crossDepartmentSurveyAccess"):
        return Decision.allowed()
    if user_id in (perms.get("allowedAssigners") or []):
        return Decision.allowed()
    return Decision.denied(AccessDenied, "Not allowed to assign actions for this survey",
                           code="ASSIGNMENT_NOT_ALLOWED")


def can_view_survey_actions(user: dict, survey: dict) -> bool:
    """allowedViewers / restrictToDepartment, only when actionPermissions.enabled."""
    perms = survey.get("actionPermissions") or {}
    if not perms.get("enabled"):
        return True
    if user.get("role") == COMPANY_ADMIN and user.get("crossDepartmentSurveyAccess"):
        return True
    restrict = perms.get("restrictToDepartment")
    if restrict and user.get("department") != restrict:
        return False
    viewers = perms.get("allowedViewers") or []
    if viewers and user.get("role") != COMPANY_ADMIN and user.get("id") not in viewers:
        return False
    return True


# ════════════════════════════════════════════════════════════════════════
# AUTHORIZE
# ════════════════════════════════════════════════════════════════════════

async def authorize(
    principal: Optional[dict],
    action: str,
    target: Optional[Dict[str, Any]] = None,
    route: str = "-",
) -> Decision:
    """
    Evaluate (principal, action, target) -> Decision.

    target keys: tenant, department, actionManager, actionPermissions,
    id, _kind ("survey" for survey targets).
    """
    decision = await _evaluate(principal, action, target)
    if not decision.allow:
        log_denial(principal, route, action, target, decision)
    return decision


async def _evaluate(principal: Optional[dict], action: str, target: Optional[Dict[str, Any]]) -> Decision:
    if not principal:
        return Decision.denied(Unauthenticated)

    policy = ACTION_POLICIES.get(action)
    if policy is None:
        return Decision.denied(AccessDenied, f"Unknown action {action}")

    role = principal.get("role")

    # Survey operations are never available to the platform admin
    if policy.survey and role == ADMIN:
        return Decision.denied(SurveyActionDenied)

    target_tenant = (target or {}).get("tenant")
    decision = check_scope(principal, policy.scope, target_tenant)
    if not decision.allow:
        return decision

    decision = check_roles(principal, policy.roles)
    if not decision.allow:
        return decision

    if policy.permission and role != ADMIN:
        if not await user_has_permission(principal, policy.permission):
            return Decision.denied(PermissionDenied, f"Missing permission: {policy.permission}")

    if target and role != ADMIN and target_tenant is not None:
        if str(target_tenant) != str(principal.get("tenant")):
            # Cross-tenant lookup: indistinguishable from absence
            return Decision.denied(NotFound)

    if policy.survey and target and target.get("_kind") == "survey":
        if not survey_in_department_scope(principal, target):
            return Decision.denied(NotFound, code="SURVEY_NOT_FOUND")

        if policy.assignment:
            decision = check_assignment_gate(principal, target)
            if not decision.allow:
                return decision

    return Decision.allowed()


# ════════════════════════════════════════════════════════════════════════
# SCOPED FILTERS (list queries)
# ════════════════════════════════════════════════════════════════════════

def tenant_filter(principal: dict, tenant_id: Optional[str] = None, field: str = "tenant") -> dict:
    """
    Tenant equality predicate.
    - tenant users: always their own tenant (tenant_id ignored)
    - admin: must pass an explicit tenant_id
    """
    if principal.get("role") == ADMIN:
        if not tenant_id:
            raise NoTenantContext("A tenant id is required for this request")
        return {field: tenant_id}
    if not principal.get("tenant"):
        raise NoTenantContext()
    return {field: principal["tenant"]}


async def scoped_filter(principal: dict, entity: str, tenant_id: Optional[str] = None) -> dict:
    """
    Predicate narrowing list queries so out-of-scope rows are never fetched.

    surveys:   tenant + not deleted + department predicate
    actions:   tenant + (linked survey visible and its actionPermissions allow
               viewing, or no linked survey and within department/assignee)
    responses: tenant + survey visible
    other:     tenant equality
    """
    base = tenant_filter(principal, tenant_id)

    if entity == "surveys":
        if principal.get("role") == ADMIN:
            raise SurveyActionDenied()
        return and_filters(base, {"deleted": {"$ne": True}}, get_department_filter(principal))

    if entity in ("actions", "responses"):
        if principal.get("role") == ADMIN:
            # Platform reads (analytics) see the whole tenant
            return base
        survey_filter = await scoped_filter(principal, "surveys")
        surveys = await db.surveys.find(
            survey_filter, {"_id": 0, "id": 1, "actionPermissions": 1, "department": 1}
        ).to_list(None)

        if entity == "responses":
            return and_filters(base, {"survey": {"$in": [s["id"] for s in surveys]}})

        visible = [s["id"] for s in surveys if can_view_survey_actions(principal, s)]
        standalone = {"metadata.surveyId": None}
        if principal.get("role") == MEMBER:
            standalone = and_filters(
                standalone,
                {"$or": [{"assignedTo": principal.get("id")}, {"department": principal.get("department")}]},
            )
        return and_filters(base, {"$or": [{"metadata.surveyId": {"$in": visible}}, standalone]})

    return base


async def get_scoped_survey(principal: dict, survey_id: str, projection: Optional[dict] = None) -> dict:
    """Load one survey through the scoped filter. Out of scope = 404."""
    query = and_filters({"id": survey_id}, await scoped_filter(principal, "surveys"))
    survey = await db.surveys.find_one(query, projection or {"_id": 0})
    if not survey:
        raise NotFound("Survey not found", code="SURVEY_NOT_FOUND")
    return survey


# ════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ════════════════════════════════════════════════════════════════════════

def require_scope(scope: Scope, roles: Optional[Iterable[str]] = None):
    """
    FastAPI dependency factory: scope then role gate.
    Usage: user: dict = Depends(require_scope(Scope.PLATFORM))
    """
    from routes.auth import get_current_user

    async def _check(request: Request, user: dict = Depends(get_current_user)):
        decision = check_scope(user, scope)
        if decision.allow:
            decision = check_roles(user, roles)
        if not decision.allow:
            log_denial(user, request.url.path, f"scope:{scope.value}", None, decision)
            decision.raise_if_denied()
        return user

    return _check


def require_action(action: str, tenant_param: Optional[str] = None):
    """
    FastAPI dependency factory running the full policy of an action.
    tenant_param: name of a path/query parameter holding the target tenant (dual scope).
    """
    from routes.auth import get_current_user

    async def _check(request: Request, user: dict = Depends(get_current_user)):
        target = None
        if tenant_param:
            value = request.path_params.get(tenant_param) or request.query_params.get(tenant_param)
            if value:
                target = {"tenant": value, "_kind": "tenant", "id": value}
        decision = await authorize(user, action, target, route=request.url.path)
        decision.raise_if_denied()
        return user

    return _check


def require_permission(permission_key: str):
    """Shortcut: policy of the action named like the permission."""
    return require_action(permission_key)


def require_survey_permission(action: str, survey_param: str = "survey_id"):
    """
    Survey-touching operations: admin denied, permission required, survey
    loaded through the department-scoped filter (404 when out of scope).
    The loaded survey is exposed on request.state.survey.
    """
    from routes.auth import get_current_user

    async def _check(request: Request, user: dict = Depends(get_current_user)):
        decision = await authorize(user, action, None, route=request.url.path)
        decision.raise_if_denied()

        survey_id = request.path_params.get(survey_param)
        if survey_id:
            try:
                survey = await get_scoped_survey(user, survey_id)
            except NotFound:
                log_denial(user, request.url.path, action, {"_kind": "survey", "id": survey_id},
                           Decision.denied(NotFound, code="SURVEY_NOT_FOUND"))
                raise
            decision = await authorize(user, action, {**survey, "_kind": "survey"}, route=request.url.path)
            decision.raise_if_denied()
            request.state.survey = survey
        return user

    return _check
