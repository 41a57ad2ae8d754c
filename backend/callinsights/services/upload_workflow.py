"""Uploader side of the pipeline: validate, store, hand off to transcription.

Drives a recording from nothing to ``transcribing``::

    validate (no I/O) -> create row (uploading) -> upload blob
        -> status transcribing -> dispatch transcription trigger

A blob upload failure deletes the row it just created, so no row ever points
at audio that does not exist.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Callable, Optional, Protocol, Set
from uuid import uuid4

import httpx
from fastapi import BackgroundTasks, UploadFile
from sqlmodel import Session

from callinsights.config import Settings
from callinsights.errors import (
    BlobStoreError,
    FileTooLargeError,
    PersistenceError,
    TriggerDispatchError,
    UnsupportedFileTypeError,
    UploadFailedError,
    ValidationError,
)
from callinsights.models.recording import Recording, RecordingStatus, blob_path_for
from callinsights.repositories.recordings import RecordingsRepository
from callinsights.services.blob_store import BlobStore
from callinsights.services.identity import AuthenticatedUser

logger = logging.getLogger("callinsights.upload")

ALLOWED_MIME_TYPES = frozenset(
    {
        "audio/mpeg",
        "audio/mp3",
        "audio/wav",
        "audio/m4a",
        "audio/x-m4a",
        "audio/mp4",
        "audio/webm",
        "audio/ogg",
    }
)

PROGRESS_RECORD_CREATED = 5
PROGRESS_UPLOAD_STARTED = 15
PROGRESS_UPLOAD_COMPLETE = 85
PROGRESS_DONE = 100

READ_CHUNK_BYTES = 1024 * 1024


@dataclass
class AudioUpload:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class TriggerDispatcher(Protocol):
    async def dispatch(self, recording_id: str, user: AuthenticatedUser) -> None:
        """Hand the recording to the transcription stage.

        At-most-once and best-effort: returning does not mean the work has
        completed, or even started. Raises TriggerDispatchError when the
        hand-off itself fails.
        """
        ...


class BackgroundTaskDispatcher:
    """In-process dispatch: runs the pipeline after the HTTP response is sent."""

    def __init__(self, background_tasks: BackgroundTasks, run: Callable[[str, str], object]) -> None:
        self._background_tasks = background_tasks
        self._run = run

    async def dispatch(self, recording_id: str, user: AuthenticatedUser) -> None:
        self._background_tasks.add_task(self._run, recording_id, user.id)
        logger.info("Queued pipeline for recording %s", recording_id)


class HttpTriggerDispatcher:
    """POSTs ``/transcribe`` with the user's session token.

    Waits at most ``trigger_handoff_seconds`` so connection-level failures
    surface to the uploader; past that window the request finishes in the
    background and its outcome is only logged.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._handoff = settings.trigger_handoff_seconds
        self._client = httpx.AsyncClient(
            base_url=settings.trigger_base_url.rstrip("/"),
            timeout=httpx.Timeout(settings.transcription_timeout + settings.chat_timeout, connect=10.0),
            transport=transport,
        )
        self._pending: Set[asyncio.Task] = set()

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self._client.aclose()

    async def dispatch(self, recording_id: str, user: AuthenticatedUser) -> None:
        task = asyncio.create_task(self._post(recording_id, user.access_token))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        try:
            await asyncio.wait_for(asyncio.shield(task), self._handoff)
        except asyncio.TimeoutError:
            logger.info("Transcription trigger for %s still running; continuing in background", recording_id)

    async def _post(self, recording_id: str, access_token: str) -> None:
        try:
            response = await self._client.post(
                "/transcribe",
                json={"recording_id": recording_id},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise TriggerDispatchError("Failed to reach the transcription service") from exc
        if response.is_success:
            logger.info("Transcription trigger for %s succeeded", recording_id)
        else:
            # The trigger records its own failure on the recording
            logger.error("Transcription trigger for %s returned HTTP %s", recording_id, response.status_code)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Transcription trigger failed: %s", task.exception())


class _Progress:
    """Clamps to [0, 100] and never reports a lower value than before."""

    def __init__(self, callback: Optional[Callable[[int], None]]) -> None:
        self._callback = callback
        self.value = 0

    def report(self, value: int) -> None:
        value = min(100, max(0, int(value)))
        if value <= self.value:
            return
        self.value = value
        if self._callback is not None:
            self._callback(value)


def clean_filename(name: str) -> str:
    base = PurePosixPath((name or "").replace("\\", "/")).name.strip()
    if base in ("", ".", ".."):
        raise ValidationError("File name is missing")
    return base


def check_content_type(content_type: Optional[str]) -> None:
    if content_type not in ALLOWED_MIME_TYPES:
        raise UnsupportedFileTypeError("Invalid file type. Please upload an MP3, WAV, M4A, WebM, or OGG file.")


def check_size(size: int, limit: int) -> None:
    if size > limit:
        limit_mb = max(1, limit // (1024 * 1024))
        raise FileTooLargeError(f"File too large. Maximum size is {limit_mb}MB.")


async def read_upload(file: UploadFile, limit: int) -> bytes:
    """Read a multipart upload, giving up as soon as it exceeds ``limit`` bytes."""
    if file.size is not None:
        check_size(file.size, limit)
    chunks = []
    total = 0
    while True:
        chunk = await file.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        check_size(total, limit)
        chunks.append(chunk)
    return b"".join(chunks)


class UploadWorkflow:
    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        blob_store: BlobStore,
        dispatcher: TriggerDispatcher,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._dispatcher = dispatcher
        self._id_factory = id_factory

    def validate(self, upload: AudioUpload) -> None:
        check_content_type(upload.content_type)
        check_size(upload.size, self._settings.max_upload_bytes)
        clean_filename(upload.filename)

    async def upload(
        self,
        upload: AudioUpload,
        user: AuthenticatedUser,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> Recording:
        # Local checks only; nothing is created for a rejected file
        self.validate(upload)
        progress = _Progress(on_progress)

        filename = clean_filename(upload.filename)
        recording_id = self._id_factory()
        file_path = blob_path_for(user.id, recording_id, filename)

        with self._session_factory() as session:
            repo = RecordingsRepository(session)
            try:
                repo.create(
                    Recording(
                        id=recording_id,
                        user_id=user.id,
                        filename=filename,
                        file_path=file_path,
                        file_size=upload.size,
                        status=RecordingStatus.UPLOADING.value,
                    )
                )
            except PersistenceError as exc:
                raise UploadFailedError("Failed to create recording") from exc
            logger.info("Created recording %s (%d bytes)", recording_id, upload.size)
            progress.report(PROGRESS_RECORD_CREATED)

            progress.report(PROGRESS_UPLOAD_STARTED)
            try:
                await asyncio.wait_for(
                    self._blob_store.put(file_path, upload.data, upload.content_type),
                    self._settings.blob_timeout,
                )
            except (BlobStoreError, asyncio.TimeoutError) as exc:
                logger.error("Blob upload failed for recording %s: %s", recording_id, exc.__class__.__name__)
                await self._discard(repo, recording_id, user.id, file_path)
                raise UploadFailedError("Failed to upload audio file") from exc
            progress.report(PROGRESS_UPLOAD_COMPLETE)

            try:
                moved = repo.transition(
                    recording_id,
                    user.id,
                    expected_status=RecordingStatus.UPLOADING,
                    status=RecordingStatus.TRANSCRIBING,
                )
            except PersistenceError as exc:
                await self._discard(repo, recording_id, user.id, file_path)
                raise UploadFailedError("Failed to start transcription") from exc
            if not moved:
                await self._discard(repo, recording_id, user.id, file_path)
                raise UploadFailedError("Recording changed during upload")

            try:
                await self._dispatcher.dispatch(recording_id, user)
            except TriggerDispatchError:
                # Row stays in transcribing; the user can retry or delete it
                logger.error("Could not dispatch transcription for recording %s", recording_id)
                raise
            progress.report(PROGRESS_DONE)

            recording = repo.get(recording_id, user.id)
            if recording is None:
                raise UploadFailedError("Recording disappeared after upload")
            return recording

    async def _discard(self, repo: RecordingsRepository, recording_id: str, user_id: str, file_path: str) -> None:
        try:
            await self._blob_store.delete(file_path)
        except BlobStoreError:
            logger.exception("Failed to remove blob for recording %s", recording_id)
        try:
            repo.delete(recording_id, user_id)
        except PersistenceError:
            logger.exception("Failed to remove orphan recording %s", recording_id)
        else:
            logger.info("Removed orphan recording %s", recording_id)
