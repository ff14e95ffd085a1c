"""
ReconciliationWarning Repository

정합성 경고 기록/조회를 위한 데이터 액세스 계층
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from creditsync.models.internal import ReconciliationWarning
from creditsync.schemas.admin import ReconciliationWarningEntry
from creditsync.repositories.base import BaseRepository


class WarningKind:
    EXPIRY_CLAMPED = "EXPIRY_CLAMPED"
    REPLAY_FAILED = "REPLAY_FAILED"
    INTEGRITY_MISMATCH = "INTEGRITY_MISMATCH"
    STALE_LINK_DEACTIVATED = "STALE_LINK_DEACTIVATED"


class WarningRepository(BaseRepository[ReconciliationWarning, ReconciliationWarningEntry]):
    """ReconciliationWarning 전용 Repository (commit 은 호출 서비스가 수행)"""

    def __init__(self, db: Session):
        super().__init__(ReconciliationWarning, ReconciliationWarningEntry, db)

    def record(
        self, kind: str, user_id: Optional[str], details: Dict[str, Any]
    ) -> ReconciliationWarning:
        return self.add(
            ReconciliationWarning(kind=kind, user_id=user_id, details=details)
        )

    def get_recent(
        self,
        limit: int = 50,
        kind: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[ReconciliationWarningEntry]:
        query = self.db.query(ReconciliationWarning)
        if kind:
            query = query.filter(ReconciliationWarning.kind == kind)
        if user_id:
            query = query.filter(ReconciliationWarning.user_id == user_id)
        rows = query.order_by(desc(ReconciliationWarning.id)).limit(limit).all()
        return [ReconciliationWarningEntry.model_validate(row) for row in rows]
