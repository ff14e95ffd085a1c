from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from creditsync.models.base import Base, BigIntPK
from creditsync.utils.timezone_utils import utc_now


class ReconciliationWarning(Base):
    """
    정합성 경고 기록용 모델

    만료 차감 클램프, 재처리 실패, 무결성 불일치 등 작업은 완료되었지만
    운영자가 확인해야 하는 상황을 추적합니다.
    """

    __tablename__ = "reconciliation_warnings"
    __table_args__ = (Index("idx_reconciliation_warnings_kind", "kind"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="경고 타입 (EXPIRY_CLAMPED, REPLAY_FAILED, INTEGRITY_MISMATCH 등)",
    )
    user_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, comment="관련 사용자 (해당되는 경우)"
    )
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True, comment="경고 상세 정보"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), comment="경고 발생 시각"
    )
