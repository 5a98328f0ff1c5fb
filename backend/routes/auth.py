"""
RatePro - Routes Auth
Login / Logout / Session / User CRUD with role-keyed projections.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from datetime import datetime, timezone, timedelta
from typing import Optional
import uuid

from models.auth import UserLogin, UserCreate, UserUpdate
from config import db, hash_password, generate_token, now_iso, SESSION_TTL_DAYS
from services.errors import Unauthenticated, AccessDenied, NotFound, Conflict, ValidationFailed, RoleNotAuthorized
from services.event_logger import log_event
from services.rate_limit import rate_limit
from services.permissions import (
    ADMIN,
    COMPANY_ADMIN,
    MEMBER,
    authorize,
    get_effective_permissions,
    tenant_filter,
)

router = APIRouter(prefix="/auth", tags=["Auth"])
users_router = APIRouter(prefix="/users", tags=["Users"])
security = HTTPBearer(auto_error=False)

# Champs visibles selon le rôle de l'appelant
SECURITY_FIELDS = ("password", "otp", "resetToken", "resetTokenExpiresAt", "loginAttempts")
ADMIN_PROJECTION = {"_id": 0, "password": 0}
COMPANY_ADMIN_PROJECTION = {"_id": 0, **{f: 0 for f in SECURITY_FIELDS}}
MEMBER_PROJECTION = {"_id": 0, "id": 1, "name": 1, "email": 1, "role": 1, "department": 1, "isActive": 1}

MEMBER_EDITABLE_FIELDS = {"name", "isActive"}


# ==================== HELPERS ====================

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Récupère l'utilisateur connecté depuis le token."""
    if not credentials:
        raise Unauthenticated()

    session = await db.sessions.find_one({
        "token": credentials.credentials,
        "expires_at": {"$gt": now_iso()}
    })
    if not session:
        raise Unauthenticated("Session expired", code="SESSION_EXPIRED")

    user = await db.users.find_one({"id": session["user_id"]}, {"_id": 0, "password": 0})
    if not user:
        raise Unauthenticated("User not found")

    if not user.get("isActive", True):
        raise AccessDenied("Account disabled", code="ACCOUNT_DISABLED")

    return user


async def get_optional_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Utilisateur connecté ou None (soumissions publiques)."""
    if not credentials:
        return None
    try:
        return await get_current_user(credentials)
    except (Unauthenticated, AccessDenied):
        return None


def projection_for(viewer: dict) -> dict:
    role = viewer.get("role")
    if role == ADMIN:
        return ADMIN_PROJECTION
    if role == COMPANY_ADMIN:
        return COMPANY_ADMIN_PROJECTION
    return MEMBER_PROJECTION


async def _load_target(viewer: dict, user_id: str, projection: Optional[dict] = None) -> dict:
    """Target user inside the viewer's reach; other tenants look absent."""
    query = {"id": user_id}
    if viewer.get("role") != ADMIN:
        query.update(tenant_filter(viewer))
    target = await db.users.find_one(query, projection or {"_id": 0, "password": 0})
    if not target:
        raise NotFound("User not found", code="USER_NOT_FOUND")
    return target


async def _authorize(viewer: dict, action: str, request: Request, tenant: Optional[str] = None, target_id: str = None):
    target = {"tenant": tenant, "_kind": "user", "id": target_id} if tenant or target_id else None
    decision = await authorize(viewer, action, target, route=request.url.path)
    decision.raise_if_denied()


# ==================== LOGIN / LOGOUT ====================

@router.post("/login", dependencies=[Depends(rate_limit("auth"))])
async def login(data: UserLogin, request: Request):
    """Connexion utilisateur."""
    user = await db.users.find_one({"email": data.email.lower().strip()}, {"_id": 0})

    if not user or user.get("password") != hash_password(data.password):
        raise Unauthenticated("Invalid email or password", code="INVALID_CREDENTIALS")

    if not user.get("isActive", True):
        raise AccessDenied("Account disabled", code="ACCOUNT_DISABLED")

    token = generate_token()
    expires_at = (datetime.now(timezone.utc) + timedelta(days=SESSION_TTL_DAYS)).isoformat()

    await db.sessions.insert_one({
        "token": token,
        "user_id": user["id"],
        "created_at": now_iso(),
        "expires_at": expires_at
    })
    await db.users.update_one({"id": user["id"]}, {"$set": {"lastLoginAt": now_iso()}})

    await log_event("login", "user", user["id"], user=user["id"], tenant=user.get("tenant"),
                    details={"ip": request.client.host if request.client else None})

    user.pop("password", None)
    return {
        "token": token,
        "expiresAt": expires_at,
        "user": {
            "id": user["id"],
            "email": user["email"],
            "name": user.get("name", ""),
            "role": user.get("role"),
            "tenant": user.get("tenant"),
            "department": user.get("department"),
            "permissions": await get_effective_permissions(user),
        }
    }


@router.post("/logout")
async def logout(
    user: dict = Depends(get_current_user),
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    if credentials:
        await db.sessions.delete_one({"token": credentials.credentials})
    return {"success": True}


@router.get("/me")
async def get_me(user: dict = Depends(get_current_user)):
    """Retourne user + permissions effectives."""
    user["permissions"] = await get_effective_permissions(user)
    return user


# ==================== USER CRUD ====================

@users_router.get("")
async def list_users(
    request: Request,
    tenant_id: Optional[str] = None,
    role: Optional[str] = None,
    department: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    user: dict = Depends(get_current_user)
):
    """Liste utilisateurs (admin: toutes les tenants ou une seule)."""
    await _authorize(user, "user:read", request, tenant=tenant_id)

    query = {}
    if user.get("role") != ADMIN:
        query.update(tenant_filter(user))
    elif tenant_id:
        query["tenant"] = tenant_id
    if role:
        query["role"] = role
    if department:
        query["department"] = department

    total = await db.users.count_documents(query)
    users = await db.users.find(query, projection_for(user)).sort("createdAt", -1).skip(skip).to_list(min(limit, 500))
    return {"users": users, "total": total}


@users_router.get("/{user_id}")
async def get_user(user_id: str, request: Request, user: dict = Depends(get_current_user)):
    target = await _load_target(user, user_id, projection_for(user))
    if user_id != user["id"]:
        await _authorize(user, "user:read", request, tenant=target.get("tenant"), target_id=user_id)
    return target


@users_router.post("", status_code=201)
async def create_user(data: UserCreate, request: Request, user: dict = Depends(get_current_user)):
    """Créer un utilisateur. admin: tout rôle; companyAdmin: sa tenant, jamais admin."""
    if user.get("role") == ADMIN:
        tenant = data.tenant if data.role != ADMIN else None
        if data.role != ADMIN and not tenant:
            raise ValidationFailed("Non-admin users need a tenant",
                                   errors=[{"field": "tenant", "message": "required"}])
        if tenant and not await db.tenants.find_one({"id": tenant}, {"_id": 1}):
            raise NotFound("Tenant not found", code="TENANT_NOT_FOUND")
    else:
        if data.role == ADMIN:
            raise RoleNotAuthorized("Only platform admins can create admins")
        tenant = user.get("tenant")
        if data.tenant and data.tenant != tenant:
            raise NotFound("Tenant not found", code="TENANT_NOT_FOUND")
    await _authorize(user, "user:create", request, tenant=tenant)

    if await db.users.find_one({"email": data.email}, {"_id": 1}):
        raise Conflict("Email already in use", code="EMAIL_EXISTS")

    new_user = {
        "id": str(uuid.uuid4()),
        "email": data.email,
        "password": hash_password(data.password),
        "name": data.name,
        "role": data.role,
        "tenant": tenant,
        "department": data.department if data.role != ADMIN else None,
        "crossDepartmentSurveyAccess": data.crossDepartmentSurveyAccess if data.role != ADMIN else False,
        "customRoles": data.customRoles if data.role != ADMIN else [],
        "isActive": True,
        "isVerified": False,
        "createdAt": now_iso(),
        "createdBy": user["id"],
    }
    await db.users.insert_one(dict(new_user))
    await log_event("user_create", "user", new_user["id"], user=user["id"], tenant=tenant,
                    details={"role": data.role})

    new_user.pop("password", None)
    return {"success": True, "user": new_user}


@users_router.put("/{user_id}")
async def update_user(user_id: str, data: UserUpdate, request: Request, user: dict = Depends(get_current_user)):
    """Mettre à jour un utilisateur. Un member ne peut modifier que name/isActive."""
    target = await _load_target(user, user_id)
    if user_id != user["id"]:
        await _authorize(user, "user:update", request, tenant=target.get("tenant"), target_id=user_id)

    changes = data.model_dump(exclude_unset=True)
    if user.get("role") == MEMBER:
        disallowed = sorted(set(changes) - MEMBER_EDITABLE_FIELDS)
        if disallowed:
            raise ValidationFailed(
                "Members may only change name and isActive",
                code="FIELDS_NOT_ALLOWED",
                errors=[{"field": f, "message": "not allowed"} for f in disallowed],
            )

    if changes.get("role") == ADMIN and user.get("role") != ADMIN:
        raise RoleNotAuthorized("Only platform admins can grant the admin role")
    if "role" in changes and (changes["role"] == ADMIN) != (target.get("role") == ADMIN):
        raise ValidationFailed("Cannot move a user between platform and tenant scope",
                               errors=[{"field": "role", "message": "scope change not allowed"}])
    if "email" in changes:
        changes["email"] = changes["email"].strip().lower()
        if await db.users.find_one({"email": changes["email"], "id": {"$ne": user_id}}, {"_id": 1}):
            raise Conflict("Email already in use", code="EMAIL_EXISTS")
    if "customRoles" in changes and changes["customRoles"]:
        count = await db.custom_roles.count_documents(
            {"id": {"$in": changes["customRoles"]}, "tenant": target.get("tenant"), "deleted": {"$ne": True}}
        )
        if count != len(set(changes["customRoles"])):
            raise ValidationFailed(errors=[{"field": "customRoles", "message": "unknown role"}])

    if not changes:
        return {"success": True, "user": await _load_target(user, user_id, projection_for(user))}

    changes["updatedAt"] = now_iso()
    await db.users.update_one({"id": user_id}, {"$set": changes})
    if changes.get("isActive") is False:
        await db.sessions.delete_many({"user_id": user_id})

    await log_event("user_update", "user", user_id, user=user["id"], tenant=target.get("tenant"),
                    details={k: v for k, v in changes.items() if k != "updatedAt"})

    return {"success": True, "user": await _load_target(user, user_id, projection_for(user))}


@users_router.patch("/{user_id}/toggle-active")
async def toggle_active(user_id: str, request: Request, user: dict = Depends(get_current_user)):
    target = await _load_target(user, user_id)
    await _authorize(user, "user:update", request, tenant=target.get("tenant"), target_id=user_id)
    if user_id == user["id"]:
        raise Conflict("Cannot deactivate your own account")

    active = not target.get("isActive", True)
    await db.users.update_one({"id": user_id}, {"$set": {"isActive": active, "updatedAt": now_iso()}})
    if not active:
        await db.sessions.delete_many({"user_id": user_id})
    await log_event("user_toggle_active", "user", user_id, user=user["id"], tenant=target.get("tenant"),
                    details={"isActive": active})
    return {"success": True, "isActive": active}


@users_router.delete("/{user_id}")
async def delete_user(user_id: str, request: Request, user: dict = Depends(get_current_user)):
    target = await _load_target(user, user_id)
    await _authorize(user, "user:delete", request, tenant=target.get("tenant"), target_id=user_id)
    if user_id == user["id"]:
        raise Conflict("Cannot delete your own account")

    await db.users.delete_one({"id": user_id})
    await db.sessions.delete_many({"user_id": user_id})
    await db.permission_assignments.delete_many({"userId": user_id})
    await log_event("user_delete", "user", user_id, user=user["id"], tenant=target.get("tenant"))
    return {"success": True}
