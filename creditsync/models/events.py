"""
이벤트 정합성 모델

- applied_event_keys: 처리 완료된 결제사 이벤트 키와 그 결과 (재전송 시 조회만 수행)
- parked_events: 사용자 매칭 실패로 보류된 이벤트 원문
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from creditsync.models.base import Base, BaseModel, BigIntPK
from creditsync.utils.timezone_utils import utc_now


class ParkedStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    ABANDONED = "abandoned"


class AppliedEventKey(Base):
    """멱등성 저장소 - 키당 1행, 최초 처리 결과를 그대로 보존"""

    __tablename__ = "applied_event_keys"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), nullable=False
    )


class ParkedEvent(BaseModel):
    """매칭 실패로 보류된 이벤트 (도착 순서대로 재처리)"""

    __tablename__ = "parked_events"
    __table_args__ = (
        Index("idx_parked_events_ref_status", "external_ref", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ParkedStatus.PENDING.value
    )
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    applied_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
