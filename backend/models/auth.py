"""
RatePro - Modeles Auth, Utilisateurs, Rôles
Role = scope (admin: plateforme, companyAdmin/member: tenant).
Permissions fines via CustomRole ou PermissionAssignment.
"""

from enum import Enum
from pydantic import BaseModel, field_validator
from typing import Optional, List


class UserRole(str, Enum):
    ADMIN = "admin"                  # platform scope, no tenant
    COMPANY_ADMIN = "companyAdmin"   # tenant owner
    MEMBER = "member"                # tenant member


VALID_ROLES = [r.value for r in UserRole]


class UserLogin(BaseModel):
    email: str
    password: str


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    role: str = UserRole.MEMBER.value
    tenant: Optional[str] = None
    department: Optional[str] = None
    crossDepartmentSurveyAccess: bool = False
    customRoles: List[str] = []

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}. Valid: {VALID_ROLES}")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email")
        return v


class UserUpdate(BaseModel):
    """All fields optional; which ones an editor may touch depends on its role."""
    name: Optional[str] = None
    isActive: Optional[bool] = None
    role: Optional[str] = None
    department: Optional[str] = None
    crossDepartmentSurveyAccess: Optional[bool] = None
    customRoles: Optional[List[str]] = None
    email: Optional[str] = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v is not None and v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}")
        return v


class RoleCreate(BaseModel):
    name: str
    description: str = ""
    permissions: List[str] = []  # permission names


class RoleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    isActive: Optional[bool] = None


class PermissionAssignmentCreate(BaseModel):
    userId: str
    permission: str  # permission name
