"""Recording pipeline: transcription, diarization and insight extraction.

Status machine::

    uploading -> transcribing -> analyzing -> ready
         \\____________\\______________> failed

Each run first takes a lease on the recording (a compare-and-swap on status
plus an empty or expired lease token). Every later write of that run is
conditional on still holding the lease, so a duplicate trigger for the same
recording either loses up front or cannot overwrite the winner's result.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from sqlmodel import Session

from callinsights.config import Settings
from callinsights.errors import (
    BlobStoreError,
    ConflictError,
    NoSpeechError,
    NoTranscriptError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    QuotaExhaustedError,
    RateLimitedError,
    UpstreamTimeoutError,
)
from callinsights.models.recording import Recording, RecordingStatus, lease_is_live, utcnow
from callinsights.repositories.insights import InsightsRepository
from callinsights.repositories.recordings import RecordingsRepository
from callinsights.services.blob_store import BlobStore
from callinsights.services.diarization_service import DiarizationService, SpeakerSegment, fallback_segments
from callinsights.services.insight_service import InsightExtractionService, attach_time_references
from callinsights.services.transcription_service import TranscriptionService, TranscriptSegment, resolve_duration

logger = logging.getLogger("callinsights.pipeline")

T = TypeVar("T")

MSG_NO_AUDIO = "Recording has no audio file"
MSG_DOWNLOAD_FAILED = "Failed to download audio file"
MSG_TRANSCRIPTION_FAILED = "Transcription service error"
MSG_TRANSCRIPTION_TIMEOUT = "Transcription timed out"
MSG_TRANSCRIPTION_RATE_LIMITED = "Transcription rate limit exceeded, please try again later"
MSG_TRANSCRIPTION_QUOTA = "AI credits exhausted"
MSG_SAVE_FAILED = "Failed to save transcript"
MSG_NO_SPEECH = "No speech detected in recording"
MSG_UNEXPECTED = "An unexpected error occurred"

LEASE_MARGIN_SECONDS = 60.0


@dataclass
class TranscriptionOutcome:
    recording_id: str
    duration_seconds: float
    segment_count: int


@dataclass
class ExtractionOutcome:
    recording_id: str
    insight_count: int


class PipelineOrchestrator:
    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[[], Session],
        blob_store: BlobStore,
        transcription: TranscriptionService,
        diarization: DiarizationService,
        insights: InsightExtractionService,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._transcription = transcription
        self._diarization = diarization
        self._insights = insights

    async def run_transcription(self, recording_id: str, user_id: str) -> TranscriptionOutcome:
        s = self._settings
        lease_seconds = s.blob_timeout + s.transcription_timeout + s.chat_timeout + LEASE_MARGIN_SECONDS
        with self._session_factory() as session:
            repo = RecordingsRepository(session)
            recording, lease = self._claim(repo, recording_id, user_id, RecordingStatus.TRANSCRIBING, lease_seconds)
            logger.info("Transcription started for recording %s", recording_id)
            try:
                return await self._transcribe_claimed(repo, recording, user_id, lease)
            except PipelineError:
                raise
            except Exception:
                logger.exception("Unexpected transcription error for recording %s", recording_id)
                self._mark_failed(repo, recording_id, user_id, lease, MSG_UNEXPECTED)
                raise
            finally:
                self._release(repo, recording_id, user_id, lease)

    async def _transcribe_claimed(
        self,
        repo: RecordingsRepository,
        recording: Recording,
        user_id: str,
        lease: str,
    ) -> TranscriptionOutcome:
        recording_id = recording.id
        if not recording.file_path:
            self._mark_failed(repo, recording_id, user_id, lease, MSG_NO_AUDIO)
            raise BlobStoreError(MSG_NO_AUDIO)

        try:
            audio = await self._call(
                lambda: self._blob_store.get(recording.file_path), self._settings.blob_timeout, "Blob download"
            )
        except PipelineError:
            logger.error("Failed to download audio for recording %s", recording_id)
            self._mark_failed(repo, recording_id, user_id, lease, MSG_DOWNLOAD_FAILED)
            raise

        try:
            result = await self._call(
                lambda: self._transcription.transcribe(audio, recording.filename),
                self._settings.transcription_timeout,
                "Transcription",
            )
        except PipelineError as exc:
            logger.error("Transcription failed for recording %s (%s)", recording_id, exc.code)
            self._mark_failed(repo, recording_id, user_id, lease, _transcription_failure_message(exc))
            raise

        if not result.text.strip():
            # Extraction needs a transcript
            logger.warning("No speech detected in recording %s", recording_id)
            self._mark_failed(repo, recording_id, user_id, lease, MSG_NO_SPEECH)
            raise NoSpeechError(MSG_NO_SPEECH)

        duration = resolve_duration(result)
        speaker_segments = await self._diarize(result.text, result.segments)

        try:
            saved = repo.transition(
                recording_id,
                user_id,
                expected_status=RecordingStatus.TRANSCRIBING,
                holding_lease=lease,
                transcript_text=result.text,
                speaker_segments=[s.to_dict() for s in speaker_segments],
                duration_seconds=duration,
                status=RecordingStatus.ANALYZING,
                error_message=None,
            )
        except PersistenceError:
            logger.exception("Failed to save transcript for recording %s", recording_id)
            self._mark_failed(repo, recording_id, user_id, lease, MSG_SAVE_FAILED)
            raise
        if not saved:
            raise ConflictError("Recording was modified while it was being transcribed")

        logger.info(
            "Transcription completed for recording %s: %.1fs, %d speaker segments",
            recording_id,
            duration,
            len(speaker_segments),
        )
        return TranscriptionOutcome(recording_id=recording_id, duration_seconds=duration, segment_count=len(speaker_segments))

    async def _diarize(self, text: str, segments: Sequence[TranscriptSegment]) -> List[SpeakerSegment]:
        # Diarization quality is best-effort; it never fails the recording
        try:
            return await asyncio.wait_for(self._diarization.diarize(text, segments), self._settings.chat_timeout)
        except (PipelineError, asyncio.TimeoutError) as exc:
            logger.warning("Diarization unavailable (%s), using fallback", exc.__class__.__name__)
            return fallback_segments(segments, text)

    async def run_insight_extraction(self, recording_id: str, user_id: str) -> ExtractionOutcome:
        """Extract insights for a transcribed recording and mark it ready.

        If the extraction call itself fails the recording stays in
        ``analyzing`` and the error propagates; calling this again is the
        retry. Rate-limit and quota errors keep their own types so the caller
        can show an actionable message.
        """
        lease_seconds = self._settings.chat_timeout + LEASE_MARGIN_SECONDS
        with self._session_factory() as session:
            repo = RecordingsRepository(session)
            insights_repo = InsightsRepository(session)

            recording = repo.get(recording_id, user_id)
            if recording is None:
                raise NotFoundError("Recording not found")
            if not recording.transcript_text:
                raise NoTranscriptError("No transcript available")
            recording, lease = self._claim(repo, recording_id, user_id, RecordingStatus.ANALYZING, lease_seconds)
            logger.info("Insight extraction started for recording %s", recording_id)

            try:
                return await self._extract_claimed(repo, insights_repo, recording, user_id, lease)
            finally:
                self._release(repo, recording_id, user_id, lease)

    async def _extract_claimed(
        self,
        repo: RecordingsRepository,
        insights_repo: InsightsRepository,
        recording: Recording,
        user_id: str,
        lease: str,
    ) -> ExtractionOutcome:
        recording_id = recording.id
        try:
            extracted = await self._call(
                lambda: self._insights.extract(recording.transcript_text or ""),
                self._settings.chat_timeout,
                "Insight extraction",
            )
        except (RateLimitedError, QuotaExhaustedError) as exc:
            logger.warning("Insight extraction for recording %s hit %s", recording_id, exc.code)
            raise
        except PipelineError as exc:
            logger.error(
                "Insight extraction failed for recording %s (%s); left in analyzing for retry",
                recording_id,
                exc.code,
            )
            raise

        attach_time_references(extracted, recording.speaker_segments or [])
        persisted = 0
        try:
            # A previous attempt may have inserted rows before losing its final write
            insights_repo.delete_for_recording(recording_id, user_id)
            if extracted:
                insights_repo.add_many(e.to_row(recording_id, user_id) for e in extracted)
            persisted = len(extracted)
        except PersistenceError:
            logger.exception("Failed to insert insights for recording %s", recording_id)

        ready = repo.transition(
            recording_id,
            user_id,
            expected_status=RecordingStatus.ANALYZING,
            holding_lease=lease,
            status=RecordingStatus.READY,
            error_message=None,
        )
        if not ready:
            raise ConflictError("Recording was modified while insights were being extracted")

        logger.info("Insight extraction complete for recording %s: %d insights", recording_id, persisted)
        return ExtractionOutcome(recording_id=recording_id, insight_count=persisted)

    async def run_pipeline(self, recording_id: str, user_id: str) -> Optional[ExtractionOutcome]:
        """Transcribe, then extract. Used by in-process trigger dispatch."""
        try:
            await self.run_transcription(recording_id, user_id)
        except PipelineError as exc:
            logger.warning("Pipeline stopped at transcription for recording %s (%s)", recording_id, exc.code)
            return None
        return await self.extract_in_background(recording_id, user_id)

    async def extract_in_background(self, recording_id: str, user_id: str) -> Optional[ExtractionOutcome]:
        try:
            return await self.run_insight_extraction(recording_id, user_id)
        except PipelineError as exc:
            logger.warning("Background insight extraction failed for recording %s (%s)", recording_id, exc.code)
            return None

    def retry(self, recording_id: str, user_id: str) -> RecordingStatus:
        """Re-queue a failed or stalled recording.

        Covers failed transcriptions, rows left in ``transcribing`` by a lost
        trigger or a dead worker, and extractions left in ``analyzing``. A
        recording whose lease is still live is being worked on and is refused.
        Returns the status the recording is in afterwards; the caller
        dispatches the matching stage.
        """
        with self._session_factory() as session:
            repo = RecordingsRepository(session)
            recording = repo.get(recording_id, user_id)
            if recording is None:
                raise NotFoundError("Recording not found")
            status = RecordingStatus(recording.status)
            if status not in (RecordingStatus.FAILED, RecordingStatus.TRANSCRIBING, RecordingStatus.ANALYZING):
                raise ConflictError(f"Recording is {status.value}; nothing to retry")
            if lease_is_live(recording):
                raise ConflictError("Recording is already being processed")
            if status == RecordingStatus.ANALYZING and recording.transcript_text:
                return status
            if not recording.file_path:
                raise ConflictError("Recording has no audio file; upload it again")
            if status != RecordingStatus.TRANSCRIBING:
                moved = repo.transition(
                    recording_id,
                    user_id,
                    expected_status=status,
                    status=RecordingStatus.TRANSCRIBING,
                    transcript_text=None,
                    speaker_segments=None,
                    error_message=None,
                )
                if not moved:
                    raise ConflictError("Recording was modified concurrently")
            logger.info("Recording %s re-queued for transcription", recording_id)
            return RecordingStatus.TRANSCRIBING

    @staticmethod
    def _claim(
        repo: RecordingsRepository,
        recording_id: str,
        user_id: str,
        expected: RecordingStatus,
        lease_seconds: float,
    ) -> tuple[Recording, str]:
        recording = repo.get(recording_id, user_id)
        if recording is None:
            raise NotFoundError("Recording not found")
        if recording.status != expected.value:
            raise ConflictError(f"Recording is {recording.status}, expected {expected.value}")
        lease = uuid.uuid4().hex
        acquired = repo.acquire_lease(
            recording_id,
            user_id,
            expected_status=expected,
            token=lease,
            expires_at=utcnow() + timedelta(seconds=lease_seconds),
        )
        if not acquired:
            raise ConflictError("Recording is already being processed")
        repo.session.expire(recording)
        refreshed = repo.get(recording_id, user_id)
        if refreshed is None:
            raise NotFoundError("Recording not found")
        return refreshed, lease

    @staticmethod
    def _release(repo: RecordingsRepository, recording_id: str, user_id: str, lease: str) -> None:
        try:
            repo.release_lease(recording_id, user_id, lease)
        except PersistenceError:
            # The lease expires on its own
            logger.exception("Failed to release lease on recording %s", recording_id)

    @staticmethod
    def _mark_failed(repo: RecordingsRepository, recording_id: str, user_id: str, lease: str, message: str) -> None:
        try:
            written = repo.transition(
                recording_id,
                user_id,
                expected_status=RecordingStatus.TRANSCRIBING,
                holding_lease=lease,
                status=RecordingStatus.FAILED,
                error_message=message,
            )
        except PersistenceError:
            logger.exception("Failed to update status of recording %s", recording_id)
            return
        if not written:
            logger.warning("Recording %s changed concurrently; not marking it failed", recording_id)

    @staticmethod
    async def _call(factory: Callable[[], Awaitable[T]], timeout: float, stage: str) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeoutError(f"{stage} timed out after {timeout:.0f}s") from exc


def _transcription_failure_message(exc: PipelineError) -> str:
    if isinstance(exc, RateLimitedError):
        return MSG_TRANSCRIPTION_RATE_LIMITED
    if isinstance(exc, QuotaExhaustedError):
        return MSG_TRANSCRIPTION_QUOTA
    if isinstance(exc, UpstreamTimeoutError):
        return MSG_TRANSCRIPTION_TIMEOUT
    return MSG_TRANSCRIPTION_FAILED
