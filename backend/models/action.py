"""
RatePro - Modèles Actions & règles d'assignation
"""

from enum import Enum
from typing import Optional, List, Any
from pydantic import BaseModel


class ActionPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    LONG_TERM = "long-term"


class ActionStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"


VALID_ACTION_STATUSES = [s.value for s in ActionStatus]

# Echéance par priorité (jours)
DUE_DAYS_BY_PRIORITY = {"high": 1, "medium": 3, "low": 7, "long-term": 30}


class ActionAssign(BaseModel):
    assignedTo: str


class ActionStatusUpdate(BaseModel):
    status: ActionStatus
    resolution: Optional[str] = None


class RuleCondition(BaseModel):
    field: str          # e.g. category, priority, metadata.surveyId
    operator: str = "=="  # == | contains
    value: Any


class AssignmentRuleCreate(BaseModel):
    name: str
    priority: int = 0
    conditions: List[RuleCondition] = []
    assignmentMode: str = "single_owner"  # single_owner | round_robin | least_load
    assignees: List[str] = []
    priorityOverride: Optional[ActionPriority] = None
    isActive: bool = True
