"""
크레딧 원장 데이터 모델

잔액(credit_balances)과 추가 전용 거래 내역(credit_transactions),
구독 기간별 크레딧 지급(subscription_grants)을 정의합니다.

잔액은 항상 total_recharged - total_consumed 로 재계산되며
모든 잔액 변경은 같은 트랜잭션 안에서 거래 내역 한 건과 함께 기록됩니다.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from creditsync.models.base import BaseModel, BigIntPK


class TransactionType(str, enum.Enum):
    CONSUMPTION = "consumption"
    BONUS = "bonus"
    RECHARGE = "recharge"
    EXPIRY = "expiry"


class GrantStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class CreditBalance(BaseModel):
    """사용자별 크레딧 잔액 (사용자당 1행)"""

    __tablename__ = "credit_balances"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),
        CheckConstraint(
            "balance = total_recharged - total_consumed",
            name="ck_credit_balances_identity",
        ),
    )

    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), primary_key=True
    )
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_recharged: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_consumed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class CreditTransaction(BaseModel):
    """
    크레딧 거래 내역 - 불변 레코드

    - amount: 부호 있는 변동량 (소비/만료는 음수)
    - balance_after: 거래 직후 잔액 (사용자별 누적합과 항상 일치)
    - dedupe_key: 외부 키 기반 멱등 처리용 (사용자 내 유일)
    """

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "dedupe_key", name="uq_credit_transactions_dedupe"),
        Index("idx_credit_transactions_user", "user_id", "id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # "metadata"는 Declarative 예약어라 속성명만 다르게 매핑
    meta: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )
    grant_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("subscription_grants.id"), nullable=True
    )
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class SubscriptionGrant(BaseModel):
    """
    구독 기간별 크레딧 지급

    (external_subscription_ref, start_at) 당 1건만 존재합니다.
    소비 시 활성 지급분의 remaining_credits가 만료 임박 순으로 우선 차감됩니다.
    """

    __tablename__ = "subscription_grants"
    __table_args__ = (
        UniqueConstraint(
            "external_subscription_ref", "start_at", name="uq_subscription_grants_period"
        ),
        Index("idx_subscription_grants_user_status", "user_id", "status"),
        Index("idx_subscription_grants_status_end", "status", "end_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id"), nullable=False
    )
    external_subscription_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    total_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    remaining_credits: Mapped[int] = mapped_column(BigInteger, nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=GrantStatus.ACTIVE.value
    )
