"""
고객 식별 매핑 모델

결제사 고객 참조(external_ref)와 로컬 사용자 간의 1:1 링크, 그리고
아직 사용자를 찾지 못한 참조의 대기열을 정의합니다.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from creditsync.models.base import BaseModel, BigIntPK


class LinkSource(str, enum.Enum):
    DIRECT = "direct"
    METADATA = "metadata"
    EMAIL = "email"
    FUZZY_NAME = "fuzzy_name"
    MANUAL = "manual"
    RELINK = "relink"


class UnresolvedStatus(str, enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class CustomerLink(BaseModel):
    """
    결제사 고객 참조 <-> 로컬 사용자 링크

    - 활성 링크는 양방향으로 유일 (사용자당 1개, 참조당 1개)
    - 절대 삭제하지 않음: 대체/정리된 링크는 is_active=False로 보존
    """

    __tablename__ = "customer_links"
    __table_args__ = (
        Index(
            "uq_customer_links_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index(
            "uq_customer_links_active_ref",
            "external_ref",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("idx_customer_links_ref", "external_ref"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    linked_by: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="링크 생성 경로 (direct, metadata, email, fuzzy_name, manual, relink)"
    )
    confidence: Mapped[str] = mapped_column(String(16), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deactivated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deactivation_reason: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, comment="user_missing, superseded"
    )


class UnresolvedReference(BaseModel):
    """
    매칭 실패한 결제사 고객 참조 대기열

    external_ref 기준으로 멱등하게 enqueue 되며(pending 상태는 참조당 1건),
    상태 전이는 단방향 (pending -> resolved | abandoned) 입니다.
    처리 완료 후 같은 참조가 다시 실패하면 새 pending 항목이 생성됩니다.
    """

    __tablename__ = "unresolved_references"
    __table_args__ = (
        # 대기 중인 항목은 참조당 1건 (처리 완료된 이력은 보존)
        Index(
            "uq_unresolved_pending_ref",
            "external_ref",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_unresolved_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=UnresolvedStatus.PENDING.value
    )
    reason: Mapped[str] = mapped_column(
        String(32), nullable=False, default="unresolved", comment="unresolved, ambiguous, conflict, upstream_unavailable"
    )
    context: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSON, nullable=True, comment="진단용 이벤트 컨텍스트 스냅샷 (구독 ID, 이메일 힌트, 메타데이터 등)"
    )
    candidates: Mapped[Optional[list[Any]]] = mapped_column(
        JSON, nullable=True, comment="모호/저신뢰 후보 사용자 목록"
    )
    occurrences: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
