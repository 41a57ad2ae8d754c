from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlmodel import SQLModel, Field

from callinsights.models.recording import utcnow


class InsightType(str, Enum):
    QUOTE = "quote"
    PAIN_POINT = "pain_point"
    SOLUTION = "solution"
    PROOF = "proof"


INSIGHT_TYPES = frozenset(t.value for t in InsightType)


class Insight(SQLModel, table=True):
    __tablename__ = "insights"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    recording_id: str = Field(index=True, foreign_key="recordings.id")
    user_id: str = Field(index=True)
    type: str  # quote|pain_point|solution|proof
    text: str
    speaker: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    confidence: float = Field(default=0.0)
    is_starred: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
