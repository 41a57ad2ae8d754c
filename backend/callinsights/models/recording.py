from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordingStatus(str, Enum):
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    READY = "ready"
    FAILED = "failed"


class Recording(SQLModel, table=True):
    __tablename__ = "recordings"

    id: str = Field(primary_key=True)  # uuid generated by the uploader
    user_id: str = Field(index=True)
    filename: str
    file_path: str = Field(default="")  # {user_id}/{recording_id}/{filename}
    file_size: int = Field(default=0)
    duration_seconds: Optional[float] = None
    transcript_text: Optional[str] = None
    speaker_segments: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default=RecordingStatus.UPLOADING.value, index=True)
    error_message: Optional[str] = None  # set only when status == failed
    # Held by the pipeline run currently working on this recording
    lease_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)


class RecordingRead(SQLModel):
    """API view of a recording; the pipeline lease stays server-side."""

    id: str
    user_id: str
    filename: str
    file_path: str
    file_size: int
    duration_seconds: Optional[float] = None
    transcript_text: Optional[str] = None
    speaker_segments: Optional[List[Dict[str, Any]]] = None
    status: str
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, recording: Recording) -> "RecordingRead":
        return cls.model_validate(recording.model_dump())


def blob_path_for(user_id: str, recording_id: str, filename: str) -> str:
    return f"{user_id}/{recording_id}/{filename}"


def lease_is_live(recording: Recording, now: Optional[datetime] = None) -> bool:
    """True while some pipeline run holds an unexpired lease on ``recording``."""
    if not recording.lease_token:
        return False
    expires = recording.lease_expires_at
    if expires is None:
        return True
    # SQLite hands datetimes back without tzinfo
    if expires.tzinfo is None:
        expires = expires.replace(tzinfo=timezone.utc)
    return expires >= (now or utcnow())
