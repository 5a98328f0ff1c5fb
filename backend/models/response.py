"""
RatePro - Modèles Réponses & Analyse
"""

from typing import Optional, List, Any
from pydantic import BaseModel, Field


class Answer(BaseModel):
    questionId: str
    value: Any = None
    media: List[str] = []


class ResponseSubmit(BaseModel):
    """Payload commun: soumission via invite ou publique."""
    answers: List[Answer] = []
    rating: Optional[float] = None
    score: Optional[float] = None
    review: Optional[str] = None
    completionTime: Optional[float] = Field(default=None, ge=0)
    resumeToken: Optional[str] = None
    accessToken: Optional[str] = None  # preuve verify-password


class Classification(BaseModel):
    isComplaint: bool = False
    isPraise: bool = False
    isSuggestion: bool = False


class Analysis(BaseModel):
    sentiment: str = "neutral"
    sentimentScore: float = 0.0
    confidence: float = 0.0
    emotions: List[str] = []
    keywords: List[str] = []
    themes: List[str] = []
    classification: Classification = Classification()
    summary: str = ""
    npsCategory: Optional[str] = None
    ratingCategory: Optional[str] = None
    flaggedForReview: bool = False
    triggeredRules: List[str] = []
    analyzedAt: Optional[str] = None
