"""
RatePro - Modèles Notifications
"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, field_validator

NOTIFICATION_TYPES = ["info", "success", "warning", "error", "alert", "action", "survey", "system"]
NOTIFICATION_PRIORITIES = ["low", "medium", "high", "urgent"]
NOTIFICATION_STATUSES = ["unread", "read", "archived"]
REFERENCE_TYPES = ["Action", "Survey", "SurveyResponse", "User"]


class NotificationReference(BaseModel):
    type: str
    id: str

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v not in REFERENCE_TYPES:
            raise ValueError(f"Invalid reference type: {v}")
        return v


class NotificationCreate(BaseModel):
    title: str
    message: str
    type: str = "info"
    priority: str = "medium"
    reference: Optional[NotificationReference] = None
    actionUrl: Optional[str] = None
    metadata: Dict[str, Any] = {}
    expiresAt: Optional[str] = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        if v not in NOTIFICATION_TYPES:
            raise ValueError(f"Invalid type: {v}")
        return v

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v):
        if v not in NOTIFICATION_PRIORITIES:
            raise ValueError(f"Invalid priority: {v}")
        return v


class BatchNotificationCreate(NotificationCreate):
    userIds: List[str]
