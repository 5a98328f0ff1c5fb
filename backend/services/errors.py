"""
RatePro - Error taxonomy

Every error carries an HTTP status and a machine code.
detail = {"code": ..., "message": ..., "errors": [...]} (errors only for validation)
"""

from typing import Optional, List, Dict, Any
from fastapi import HTTPException


class AppError(HTTPException):
    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.code = code or self.code
        self.message = message or self.default_message
        self.errors = errors
        detail = {"code": self.code, "message": self.message}
        if errors is not None:
            detail["errors"] = errors
        super().__init__(status_code=self.status_code, detail=detail)


# ---- 400 ----

class ValidationFailed(AppError):
    status_code = 400
    code = "VALIDATION_FAILED"
    default_message = "Validation failed"


# ---- 401 ----

class Unauthenticated(AppError):
    status_code = 401
    code = "AUTH_REQUIRED"
    default_message = "Authentication required"


class PasswordRequired(AppError):
    status_code = 401
    code = "PASSWORD_REQUIRED"
    default_message = "This survey is password protected"


# ---- 403 ----

class AccessDenied(AppError):
    status_code = 403
    code = "ACCESS_DENIED"
    default_message = "Access denied"


class PlatformAccessDenied(AccessDenied):
    code = "PLATFORM_ACCESS_DENIED"
    default_message = "Platform administrator access required"


class TenantAccessDenied(AccessDenied):
    code = "TENANT_ACCESS_DENIED"
    default_message = "This route is reserved to tenant users"


class TenantOwnershipDenied(AccessDenied):
    code = "TENANT_OWNERSHIP_DENIED"
    default_message = "Resource belongs to another tenant"


class NoTenantContext(AccessDenied):
    code = "NO_TENANT_CONTEXT"
    default_message = "User is not associated with a tenant"


class RoleNotAuthorized(AccessDenied):
    code = "ROLE_NOT_AUTHORIZED"
    default_message = "Role not authorized for this operation"


class PermissionDenied(AccessDenied):
    code = "PERMISSION_DENIED"
    default_message = "Missing required permission"


class SurveyActionDenied(AccessDenied):
    code = "SURVEY_ACTION_DENIED"
    default_message = "Survey operations are not available to this principal"


# ---- 404 ----

class NotFound(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class InvalidToken(NotFound):
    code = "INVALID_INVITE_TOKEN"
    default_message = "Invalid or expired invite token"


# ---- 409 ----

class Conflict(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict"


class AlreadyResponded(Conflict):
    code = "ALREADY_RESPONDED"
    default_message = "This invite has already been used"


class SurveyClosed(Conflict):
    code = "SURVEY_CLOSED"
    default_message = "Survey is not accepting responses"


# ---- 429 ----

class RateLimited(AppError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many requests, retry later"


# ---- 5xx ----

class ConfigMissing(AppError):
    status_code = 500
    code = "CONFIG_MISSING"
    default_message = "Required configuration is not set"


class TransientError(AppError):
    """AI / email / SMS failure eligible for retry."""
    status_code = 500
    code = "UPSTREAM_UNAVAILABLE"
    default_message = "Upstream service unavailable"
