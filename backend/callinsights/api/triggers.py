from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel

from callinsights.deps import Container, get_container, get_current_user
from callinsights.errors import InvalidRecordingIdError
from callinsights.services.identity import AuthenticatedUser

logger = logging.getLogger("callinsights.api")


router = APIRouter(tags=["pipeline"])

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class TriggerRequest(BaseModel):
    recording_id: Optional[Any] = None


def require_recording_id(body: TriggerRequest) -> str:
    recording_id = body.recording_id
    if not recording_id:
        raise InvalidRecordingIdError("Missing recording_id")
    if not isinstance(recording_id, str) or not UUID_RE.match(recording_id):
        raise InvalidRecordingIdError("Invalid recording_id format")
    return recording_id.lower()


@router.post("/transcribe")
async def transcribe(
    body: TriggerRequest,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    recording_id = require_recording_id(body)
    logger.info("Processing transcription request for %s", recording_id)
    outcome = await container.orchestrator.run_transcription(recording_id, user.id)
    if container.settings.auto_extract_insights:
        background_tasks.add_task(container.orchestrator.extract_in_background, recording_id, user.id)
    return {
        "success": True,
        "recording_id": outcome.recording_id,
        "duration_seconds": outcome.duration_seconds,
        "segment_count": outcome.segment_count,
    }


@router.post("/extract-insights")
async def extract_insights(
    body: TriggerRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    recording_id = require_recording_id(body)
    logger.info("Extracting insights for recording %s", recording_id)
    outcome = await container.orchestrator.run_insight_extraction(recording_id, user.id)
    return {"success": True, "recording_id": outcome.recording_id, "insight_count": outcome.insight_count}
