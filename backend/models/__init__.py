"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Models Package                                                    ║
║                                                                              ║
║  Exporte tous les modèles pour import facile                                 ║
║  from models import SurveyCreate, ResponseSubmit, etc.                       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Auth / Users / Roles
from .auth import (
    UserRole,
    VALID_ROLES,
    UserLogin,
    UserCreate,
    UserUpdate,
    RoleCreate,
    RoleUpdate,
    PermissionAssignmentCreate,
)

# Survey
from .survey import (
    SurveyStatus,
    VALID_SURVEY_STATUSES,
    QuestionType,
    CHOICE_TYPES,
    TEXT_TYPES,
    RATING_TYPES,
    Question,
    TargetAudience,
    ActionPermissions,
    SurveySettings,
    SurveySchedule,
    SurveyCreate,
    SurveyUpdate,
    PasswordVerify,
)

# Responses
from .response import (
    Answer,
    ResponseSubmit,
    Classification,
    Analysis,
)

# Actions
from .action import (
    ActionPriority,
    ActionStatus,
    VALID_ACTION_STATUSES,
    DUE_DAYS_BY_PRIORITY,
    ActionAssign,
    ActionStatusUpdate,
    RuleCondition,
    AssignmentRuleCreate,
)

# Notifications
from .notification import (
    NOTIFICATION_TYPES,
    NOTIFICATION_PRIORITIES,
    NotificationReference,
    NotificationCreate,
    BatchNotificationCreate,
)

# System config
from .system_config import (
    ConfigUpsert,
    TestEmailRequest,
)

__all__ = [
    # Auth
    "UserRole",
    "VALID_ROLES",
    "UserLogin",
    "UserCreate",
    "UserUpdate",
    "RoleCreate",
    "RoleUpdate",
    "PermissionAssignmentCreate",
    # Survey
    "SurveyStatus",
    "VALID_SURVEY_STATUSES",
    "QuestionType",
    "CHOICE_TYPES",
    "TEXT_TYPES",
    "RATING_TYPES",
    "Question",
    "TargetAudience",
    "ActionPermissions",
    "SurveySettings",
    "SurveySchedule",
    "SurveyCreate",
    "SurveyUpdate",
    "PasswordVerify",
    # Responses
    "Answer",
    "ResponseSubmit",
    "Classification",
    "Analysis",
    # Actions
    "ActionPriority",
    "ActionStatus",
    "VALID_ACTION_STATUSES",
    "DUE_DAYS_BY_PRIORITY",
    "ActionAssign",
    "ActionStatusUpdate",
    "RuleCondition",
    "AssignmentRuleCreate",
    # Notifications
    "NOTIFICATION_TYPES",
    "NOTIFICATION_PRIORITIES",
    "NotificationReference",
    "NotificationCreate",
    "BatchNotificationCreate",
    # System config
    "ConfigUpsert",
    "TestEmailRequest",
]
