from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlmodel import Session

from callinsights.errors import NotFoundError
from callinsights.models.insight import Insight
from callinsights.models.recording import Recording, RecordingStatus
from callinsights.repositories.insights import InsightsRepository
from callinsights.repositories.recordings import RecordingsRepository
from callinsights.services.blob_store import BlobStore

logger = logging.getLogger("callinsights.recordings")


@dataclass
class RecordingDetail:
    recording: Recording
    insights: List[Insight]


class RecordingService:
    """Read and delete operations on a user's recordings."""

    def __init__(self, session_factory: Callable[[], Session], blob_store: BlobStore) -> None:
        self._session_factory = session_factory
        self._blob_store = blob_store

    def list_recordings(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        status: Optional[RecordingStatus] = None,
    ) -> List[Recording]:
        with self._session_factory() as session:
            return RecordingsRepository(session).list(user_id, limit=limit, offset=offset, status=status)

    def get_detail(self, recording_id: str, user_id: str) -> RecordingDetail:
        with self._session_factory() as session:
            recording = RecordingsRepository(session).get(recording_id, user_id)
            if recording is None:
                raise NotFoundError("Recording not found")
            insights = InsightsRepository(session).list_by_recording(recording_id, user_id)
            return RecordingDetail(recording=recording, insights=insights)

    async def delete_recording(self, recording_id: str, user_id: str) -> None:
        """Remove the blob, the insights and the row, in that order.

        A blob store failure aborts before any row is touched so the delete
        can simply be repeated.
        """
        with self._session_factory() as session:
            recordings = RecordingsRepository(session)
            recording = recordings.get(recording_id, user_id)
            if recording is None:
                raise NotFoundError("Recording not found")
            if recording.file_path:
                await self._blob_store.delete(recording.file_path)
            removed = InsightsRepository(session).delete_for_recording(recording_id, user_id)
            recordings.delete(recording_id, user_id)
            logger.info("Deleted recording %s and %d insights", recording_id, removed)

    def set_starred(self, insight_id: str, user_id: str, starred: bool) -> Insight:
        with self._session_factory() as session:
            insight = InsightsRepository(session).set_starred(insight_id, user_id, starred)
            if insight is None:
                raise NotFoundError("Insight not found")
            return insight
