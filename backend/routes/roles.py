"""
RatePro - Routes Rôles & Permissions
CustomRole CRUD (tenant), assignations directes, permissions effectives.
"""

from fastapi import APIRouter, Depends
import uuid

from models.auth import RoleCreate, RoleUpdate, PermissionAssignmentCreate
from config import db, now_iso
from routes.auth import get_current_user
from services.errors import NotFound, Conflict, ValidationFailed
from services.event_logger import log_event
from services.permissions import (
    PERMISSION_KEYS,
    require_action,
    get_effective_permissions,
)

router = APIRouter(tags=["Roles & Permissions"])


async def _permission_ids(names) -> list:
    unknown = sorted(set(names) - set(PERMISSION_KEYS))
    if unknown:
        raise ValidationFailed("Unknown permissions", errors=[{"field": "permissions", "message": n} for n in unknown])
    perms = await db.permissions.find({"name": {"$in": list(names)}}, {"_id": 0, "id": 1}).to_list(len(names) or 1)
    return [p["id"] for p in perms]


async def _with_names(role: dict) -> dict:
    ids = role.get("permissions") or []
    perms = await db.permissions.find({"id": {"$in": ids}}, {"_id": 0, "name": 1}).to_list(len(ids) or 1)
    return {**role, "permissionNames": sorted(p["name"] for p in perms)}


async def _load_role(user: dict, role_id: str) -> dict:
    role = await db.custom_roles.find_one(
        {"id": role_id, "tenant": user["tenant"], "deleted": {"$ne": True}}, {"_id": 0}
    )
    if not role:
        raise NotFound("Role not found", code="ROLE_NOT_FOUND")
    return role


# ==================== PERMISSIONS ====================

@router.get("/permissions")
async def list_permissions(user: dict = Depends(get_current_user)):
    perms = await db.permissions.find({}, {"_id": 0}).sort("name", 1).to_list(500)
    return {"permissions": perms}


@router.get("/permissions/me")
async def my_permissions(user: dict = Depends(get_current_user)):
    """Permissions effectives (toutes pour un companyAdmin)."""
    return {"role": user.get("role"), "permissions": await get_effective_permissions(user)}


@router.post("/permissions/assignments", status_code=201)
async def assign_permission(data: PermissionAssignmentCreate, user: dict = Depends(require_action("permission:assign"))):
    target = await db.users.find_one({"id": data.userId, "tenant": user["tenant"]}, {"_id": 0, "id": 1})
    if not target:
        raise NotFound("User not found", code="USER_NOT_FOUND")
    perm = await db.permissions.find_one({"name": data.permission}, {"_id": 0, "id": 1})
    if not perm:
        raise ValidationFailed(errors=[{"field": "permission", "message": "unknown permission"}])

    existing = await db.permission_assignments.find_one(
        {"userId": data.userId, "permissionId": perm["id"], "tenantId": user["tenant"]}, {"_id": 0}
    )
    if existing:
        raise Conflict("Permission already assigned", code="ASSIGNMENT_EXISTS")

    assignment = {
        "id": str(uuid.uuid4()),
        "userId": data.userId,
        "permissionId": perm["id"],
        "permission": data.permission,
        "tenantId": user["tenant"],
        "assignedBy": user["id"],
        "createdAt": now_iso(),
    }
    await db.permission_assignments.insert_one(dict(assignment))
    await log_event("permission_assign", "permission", perm["id"], user=user["id"], tenant=user["tenant"],
                    related={"userId": data.userId})
    return assignment


@router.get("/permissions/assignments")
async def list_assignments(user_id: str = None, user: dict = Depends(require_action("permission:assign"))):
    query = {"tenantId": user["tenant"]}
    if user_id:
        query["userId"] = user_id
    items = await db.permission_assignments.find(query, {"_id": 0}).to_list(1000)
    return {"assignments": items}


@router.delete("/permissions/assignments/{assignment_id}")
async def revoke_permission(assignment_id: str, user: dict = Depends(require_action("permission:assign"))):
    result = await db.permission_assignments.delete_one({"id": assignment_id, "tenantId": user["tenant"]})
    if not result.deleted_count:
        raise NotFound("Assignment not found")
    await log_event("permission_revoke", "permission", assignment_id, user=user["id"], tenant=user["tenant"])
    return {"success": True}


# ==================== CUSTOM ROLES ====================

@router.get("/roles")
async def list_roles(user: dict = Depends(require_action("role:manage"))):
    roles = await db.custom_roles.find(
        {"tenant": user["tenant"], "deleted": {"$ne": True}}, {"_id": 0}
    ).sort("name", 1).to_list(200)
    return {"roles": [await _with_names(r) for r in roles]}


@router.get("/roles/{role_id}")
async def get_role(role_id: str, user: dict = Depends(require_action("role:manage"))):
    return await _with_names(await _load_role(user, role_id))


@router.post("/roles", status_code=201)
async def create_role(data: RoleCreate, user: dict = Depends(require_action("role:manage"))):
    name = data.name.strip()
    if not name:
        raise ValidationFailed(errors=[{"field": "name", "message": "required"}])
    if await db.custom_roles.find_one({"tenant": user["tenant"], "name": name, "deleted": {"$ne": True}}):
        raise Conflict("A role with this name already exists", code="ROLE_EXISTS")

    role = {
        "id": str(uuid.uuid4()),
        "tenant": user["tenant"],
        "name": name,
        "description": data.description,
        "permissions": await _permission_ids(data.permissions),
        "isActive": True,
        "deleted": False,
        "createdBy": user["id"],
        "createdAt": now_iso(),
    }
    await db.custom_roles.insert_one(dict(role))
    await log_event("role_create", "role", role["id"], user=user["id"], tenant=user["tenant"],
                    details={"name": name, "permissions": data.permissions})
    return await _with_names(role)


@router.put("/roles/{role_id}")
async def update_role(role_id: str, data: RoleUpdate, user: dict = Depends(require_action("role:manage"))):
    role = await _load_role(user, role_id)
    changes = data.model_dump(exclude_unset=True)
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        clash = await db.custom_roles.find_one({
            "tenant": user["tenant"], "name": changes["name"], "id": {"$ne": role_id}, "deleted": {"$ne": True}
        })
        if clash:
            raise Conflict("A role with this name already exists", code="ROLE_EXISTS")
    if "permissions" in changes:
        changes["permissions"] = await _permission_ids(changes["permissions"])
    changes["updatedAt"] = now_iso()

    await db.custom_roles.update_one({"id": role_id, "tenant": user["tenant"]}, {"$set": changes})
    await log_event("role_update", "role", role_id, user=user["id"], tenant=user["tenant"],
                    details={k: v for k, v in changes.items() if k != "updatedAt"})
    return await _with_names({**role, **changes})


@router.delete("/roles/{role_id}")
async def delete_role(role_id: str, user: dict = Depends(require_action("role:manage"))):
    """Soft delete; users keep the id but the role no longer grants anything."""
    await _load_role(user, role_id)
    await db.custom_roles.update_one(
        {"id": role_id, "tenant": user["tenant"]},
        {"$set": {"deleted": True, "isActive": False, "deletedAt": now_iso()}}
    )
    await log_event("role_delete", "role", role_id, user=user["id"], tenant=user["tenant"])
    return {"success": True}
