"""
RatePro - Modèles System Config (plateforme)
"""

from pydantic import BaseModel


class ConfigUpsert(BaseModel):
    value: str


class TestEmailRequest(BaseModel):
    to: str
