from typing import Any, Dict, List, Optional

from sqlalchemy import asc, desc
from sqlalchemy.orm import Session

from creditsync.models.events import (
    AppliedEventKey as AppliedEventKeyModel,
    ParkedEvent as ParkedEventModel,
    ParkedStatus,
)
from creditsync.schemas.events import ParkedEventEntry
from creditsync.repositories.base import BaseRepository
from creditsync.utils.timezone_utils import utc_now


class EventRepository(BaseRepository[ParkedEventModel, ParkedEventEntry]):
    """멱등성 저장소와 보류 이벤트 저장소"""

    def __init__(self, db: Session):
        super().__init__(ParkedEventModel, ParkedEventEntry, db)

    def get_applied(self, key: str) -> Optional[AppliedEventKeyModel]:
        return (
            self.db.query(AppliedEventKeyModel)
            .filter(AppliedEventKeyModel.key == key)
            .populate_existing()
            .first()
        )

    def record_applied(
        self, key: str, event_type: str, result: Dict[str, Any]
    ) -> AppliedEventKeyModel:
        """처리 결과 기록 - 키 중복 시 IntegrityError 전파"""
        return self.add(
            AppliedEventKeyModel(key=key, event_type=event_type, result=result)
        )

    def get_parked(self, event_key: str) -> Optional[ParkedEventModel]:
        return (
            self.db.query(ParkedEventModel)
            .filter(ParkedEventModel.event_key == event_key)
            .populate_existing()
            .first()
        )

    def park(
        self,
        event_key: str,
        external_ref: str,
        event_type: str,
        payload: Dict[str, Any],
        reason: str,
        error: Optional[str] = None,
    ) -> ParkedEventModel:
        """이벤트 원문 보류 (재전송 시 시도 횟수만 갱신)"""
        parked = self.get_parked(event_key)
        if parked is None:
            parked = ParkedEventModel(
                event_key=event_key,
                external_ref=external_ref,
                event_type=event_type,
                payload=payload,
                status=ParkedStatus.PENDING.value,
                reason=reason,
                attempts=1,
                last_error=error,
            )
            return self.add(parked)

        parked.reason = reason
        parked.attempts = (parked.attempts or 0) + 1
        parked.last_error = error
        self.db.flush()
        return parked

    def pending_for_ref(self, external_ref: str) -> List[ParkedEventModel]:
        """재처리 대상 (도착 순서)"""
        return (
            self.db.query(ParkedEventModel)
            .filter(
                ParkedEventModel.external_ref == external_ref,
                ParkedEventModel.status == ParkedStatus.PENDING.value,
            )
            .order_by(asc(ParkedEventModel.id))
            .all()
        )

    def mark_applied(self, parked: ParkedEventModel) -> None:
        parked.status = ParkedStatus.APPLIED.value
        parked.applied_at = utc_now()
        parked.last_error = None
        self.db.flush()

    def record_failed_attempt(self, parked: ParkedEventModel, error: str) -> None:
        parked.attempts = (parked.attempts or 0) + 1
        parked.last_error = error
        self.db.flush()

    def abandon(self, parked: ParkedEventModel, error: Optional[str]) -> None:
        """재처리해도 성공할 수 없는 이벤트 (원문은 감사 용도로 보존)"""
        parked.status = ParkedStatus.ABANDONED.value
        parked.last_error = error
        self.db.flush()

    def abandon_for_ref(self, external_ref: str) -> int:
        parked_events = self.pending_for_ref(external_ref)
        for parked in parked_events:
            parked.status = ParkedStatus.ABANDONED.value
        self.db.flush()
        return len(parked_events)

    def list_parked(
        self,
        status: Optional[str] = ParkedStatus.PENDING.value,
        external_ref: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ParkedEventEntry]:
        query = self.db.query(ParkedEventModel)
        if status:
            query = query.filter(ParkedEventModel.status == status)
        if external_ref:
            query = query.filter(ParkedEventModel.external_ref == external_ref)
        rows = query.order_by(desc(ParkedEventModel.id)).offset(offset).limit(limit).all()
        return self._to_schemas(rows)
