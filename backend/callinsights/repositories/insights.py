from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from callinsights.errors import PersistenceError
from callinsights.models.insight import Insight


class InsightsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add_many(self, insights: Iterable[Insight]) -> List[Insight]:
        saved: List[Insight] = []
        try:
            for item in insights:
                self.session.add(item)
                saved.append(item)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Failed to insert insights") from exc
        for item in saved:
            self.session.refresh(item)
        return saved

    def list_by_recording(self, recording_id: str, user_id: str) -> list[Insight]:
        # Insights without a time reference sort last
        statement = (
            select(Insight)
            .where(Insight.recording_id == recording_id, Insight.user_id == user_id)
            .order_by(Insight.start_time.is_(None), Insight.start_time.asc(), Insight.created_at.asc())
        )
        return list(self.session.exec(statement))

    def get(self, insight_id: str, user_id: str) -> Optional[Insight]:
        statement = select(Insight).where(Insight.id == insight_id, Insight.user_id == user_id)
        return self.session.exec(statement).first()

    def set_starred(self, insight_id: str, user_id: str, starred: bool) -> Optional[Insight]:
        insight = self.get(insight_id, user_id)
        if insight is None:
            return None
        insight.is_starred = starred
        try:
            self.session.add(insight)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Failed to update insight") from exc
        self.session.refresh(insight)
        return insight

    def delete_for_recording(self, recording_id: str, user_id: str) -> int:
        statement = delete(Insight).where(Insight.recording_id == recording_id, Insight.user_id == user_id)
        try:
            result = self.session.execute(statement)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceError("Failed to delete insights") from exc
        return int(result.rowcount or 0)
