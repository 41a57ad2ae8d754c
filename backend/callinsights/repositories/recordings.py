from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from callinsights.errors import PersistenceError
from callinsights.models.recording import Recording, RecordingStatus, utcnow


def _coerce(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: (v.value if isinstance(v, RecordingStatus) else v) for k, v in fields.items()}


class RecordingsRepository:
    """Owner-scoped access to the ``recordings`` table.

    Every query filters on ``user_id``; a row owned by someone else behaves
    exactly like a missing row.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, recording: Recording) -> Recording:
        try:
            self.session.add(recording)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Failed to create recording") from exc
        self.session.refresh(recording)
        return recording

    def get(self, recording_id: str, user_id: str) -> Optional[Recording]:
        statement = select(Recording).where(Recording.id == recording_id, Recording.user_id == user_id)
        return self.session.exec(statement).first()

    def list(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        status: Optional[RecordingStatus] = None,
    ) -> list[Recording]:
        statement = select(Recording).where(Recording.user_id == user_id)
        if status is not None:
            statement = statement.where(Recording.status == status.value)
        statement = statement.order_by(Recording.created_at.desc()).limit(limit).offset(offset)
        return list(self.session.exec(statement))

    def transition(
        self,
        recording_id: str,
        user_id: str,
        *,
        expected_status: RecordingStatus,
        holding_lease: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """Compare-and-swap update.

        Applies ``fields`` only while the row still has ``expected_status``
        (and, when ``holding_lease`` is given, is still leased with that
        token). Returns False when another writer got there first.
        """
        conditions = [Recording.status == expected_status.value]
        if holding_lease is not None:
            conditions.append(Recording.lease_token == holding_lease)
        return self._update(recording_id, user_id, conditions, fields)

    def acquire_lease(
        self,
        recording_id: str,
        user_id: str,
        *,
        expected_status: RecordingStatus,
        token: str,
        expires_at: datetime,
    ) -> bool:
        """Take the single-writer lease if nobody holds a live one."""
        now = utcnow()
        conditions = [
            Recording.status == expected_status.value,
            or_(Recording.lease_token.is_(None), Recording.lease_expires_at < now),
        ]
        return self._update(recording_id, user_id, conditions, {"lease_token": token, "lease_expires_at": expires_at})

    def release_lease(self, recording_id: str, user_id: str, token: str) -> bool:
        return self._update(
            recording_id,
            user_id,
            [Recording.lease_token == token],
            {"lease_token": None, "lease_expires_at": None},
        )

    def delete(self, recording_id: str, user_id: str) -> bool:
        recording = self.get(recording_id, user_id)
        if recording is None:
            return False
        try:
            self.session.delete(recording)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Failed to delete recording") from exc
        return True

    def _update(self, recording_id: str, user_id: str, conditions: list, fields: dict[str, Any]) -> bool:
        values = _coerce(fields)
        values["updated_at"] = utcnow()
        statement = (
            update(Recording)
            .where(Recording.id == recording_id, Recording.user_id == user_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(statement)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Failed to update recording") from exc
        return result.rowcount == 1
