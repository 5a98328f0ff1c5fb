"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RatePro - Modèle Survey                                                     ║
║                                                                              ║
║  RÈGLES:                                                                     ║
║  1. Création toujours en draft (version 0, pas de snapshot)                  ║
║  2. Publication = snapshot figé {questions, lockedAt} + version += 1         ║
║  3. Une survey non-draft n'est plus éditable (sauf republication)            ║
║  4. Les réponses sont validées contre publishedSnapshot, jamais questions    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from enum import Enum
from typing import Optional, List, Any, Dict
from pydantic import BaseModel, Field, field_validator
import uuid


class SurveyStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SCHEDULED = "scheduled"
    INACTIVE = "inactive"
    CLOSED = "closed"


VALID_SURVEY_STATUSES = [s.value for s in SurveyStatus]


class QuestionType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    EMAIL = "email"
    NUMERIC = "numeric"
    NPS = "nps"
    RATING = "rating"
    SCALE = "scale"
    LIKERT = "likert"
    RADIO = "radio"
    SELECT = "select"
    CHECKBOX = "checkbox"
    IMAGE_CHOICE = "imageChoice"
    RANKING = "ranking"
    MATRIX = "matrix"
    DATE = "date"


CHOICE_TYPES = {"radio", "select", "checkbox", "imageChoice", "ranking"}
TEXT_TYPES = {"text", "textarea", "email"}
RATING_TYPES = {"rating", "scale", "likert"}


class Question(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: QuestionType
    title: str
    required: bool = False
    options: List[str] = []
    rows: List[str] = []      # matrix
    min: Optional[float] = None
    max: Optional[float] = None


class TargetAudience(BaseModel):
    segments: List[str] = []
    categories: List[str] = []
    contacts: List[str] = []
    embedded: List[Dict[str, Any]] = []  # legacy inline {name, email, phone}


class ActionPermissions(BaseModel):
    enabled: bool = False
    allowedAssigners: List[str] = []
    allowedViewers: List[str] = []
    restrictToDepartment: Optional[str] = None


class SurveySettings(BaseModel):
    isPublic: bool = False
    isAnonymous: bool = False
    isPasswordProtected: bool = False
    password: Optional[str] = None


class SurveySchedule(BaseModel):
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    timezone: str = "UTC"


class SurveyCreate(BaseModel):
    title: str
    description: str = ""
    department: Optional[str] = None
    questions: List[Question] = []
    targetAudience: TargetAudience = TargetAudience()
    actionManager: Optional[str] = None
    responsibleUser: Optional[str] = None
    actionPermissions: ActionPermissions = ActionPermissions()
    settings: SurveySettings = SurveySettings()
    schedule: SurveySchedule = SurveySchedule()

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v):
        if not v.strip():
            raise ValueError("Title is required")
        return v.strip()


class SurveyUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    department: Optional[str] = None
    questions: Optional[List[Question]] = None
    targetAudience: Optional[TargetAudience] = None
    actionManager: Optional[str] = None
    responsibleUser: Optional[str] = None
    actionPermissions: Optional[ActionPermissions] = None
    settings: Optional[SurveySettings] = None
    schedule: Optional[SurveySchedule] = None
    status: Optional[SurveyStatus] = None


class PasswordVerify(BaseModel):
    password: str
