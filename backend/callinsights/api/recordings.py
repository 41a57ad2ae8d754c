from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, UploadFile
from pydantic import BaseModel

from callinsights.deps import Container, get_container, get_current_user
from callinsights.models.insight import Insight
from callinsights.models.recording import RecordingRead, RecordingStatus
from callinsights.services.identity import AuthenticatedUser
from callinsights.services.upload_workflow import (
    AudioUpload,
    BackgroundTaskDispatcher,
    UploadWorkflow,
    check_content_type,
    read_upload,
)

logger = logging.getLogger("callinsights.api")


router = APIRouter(tags=["recordings"])


@router.get("/recordings")
def list_recordings(
    limit: int = 50,
    offset: int = 0,
    status: Optional[RecordingStatus] = None,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> List[RecordingRead]:
    recordings = container.recordings.list_recordings(user.id, limit=limit, offset=offset, status=status)
    return [RecordingRead.from_row(r) for r in recordings]


@router.post("/recordings", status_code=201)
async def upload_recording(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> RecordingRead:
    # Reject before buffering the body
    check_content_type(file.content_type)
    data = await read_upload(file, container.settings.max_upload_bytes)
    upload = AudioUpload(
        filename=file.filename or "",
        content_type=file.content_type or "",
        data=data,
    )
    dispatcher = container.trigger or BackgroundTaskDispatcher(background_tasks, container.orchestrator.run_pipeline)
    workflow = UploadWorkflow(container.settings, container.session_factory, container.blob_store, dispatcher)
    recording = await workflow.upload(
        upload,
        user,
        on_progress=lambda p: logger.debug("Upload progress for %s: %d%%", upload.filename, p),
    )
    return RecordingRead.from_row(recording)


@router.get("/recordings/{recording_id}")
def get_recording(
    recording_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    detail = container.recordings.get_detail(recording_id, user.id)
    return {"recording": RecordingRead.from_row(detail.recording), "insights": detail.insights}


@router.delete("/recordings/{recording_id}")
async def delete_recording(
    recording_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    await container.recordings.delete_recording(recording_id, user.id)
    return {"ok": True}


@router.post("/recordings/{recording_id}/retry")
def retry_recording(
    recording_id: str,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Dict[str, Any]:
    orchestrator = container.orchestrator
    status = orchestrator.retry(recording_id, user.id)
    if status == RecordingStatus.TRANSCRIBING:
        background_tasks.add_task(orchestrator.run_pipeline, recording_id, user.id)
    else:
        background_tasks.add_task(orchestrator.extract_in_background, recording_id, user.id)
    return {"recording_id": recording_id, "status": status.value}


class StarRequest(BaseModel):
    is_starred: bool


@router.patch("/insights/{insight_id}")
def star_insight(
    insight_id: str,
    body: StarRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Insight:
    return container.recordings.set_starred(insight_id, user.id, body.is_starred)
