"""
크레딧 원장 리포지토리

잔액 행의 원자적 조건부 갱신, 거래 내역 추가, 구독 지급 조회를 담당합니다.

핵심 특징:
- 잔액은 항상 total_recharged - total_consumed 로 같은 UPDATE 문에서 재계산됩니다
- 차감은 "WHERE total_recharged - total_consumed >= amount" 조건부 UPDATE 로
  잔액이 음수가 되는 것을 DB 수준에서 차단합니다
- 커밋은 하지 않습니다 (잔액 갱신 + 거래 기록이 하나의 작업 단위)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import asc, desc, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from creditsync.models.credits import (
    CreditBalance as CreditBalanceModel,
    CreditTransaction as CreditTransactionModel,
    GrantStatus,
    SubscriptionGrant as SubscriptionGrantModel,
)
from creditsync.schemas.credits import (
    CreditBalanceResponse,
    CreditTransactionEntry,
    SubscriptionGrantEntry,
)
from creditsync.repositories.base import BaseRepository


class LedgerRepository(BaseRepository[CreditTransactionModel, CreditTransactionEntry]):
    def __init__(self, db: Session):
        super().__init__(CreditTransactionModel, CreditTransactionEntry, db)

    # ------------------------------------------------------------------
    # Balance rows
    # ------------------------------------------------------------------
    def get_balance_row(
        self, user_id: str, for_update: bool = False
    ) -> Optional[CreditBalanceModel]:
        stmt = select(CreditBalanceModel).where(CreditBalanceModel.user_id == user_id)
        if for_update:
            # SQLite 방언은 FOR UPDATE 를 생략 (쓰기 잠금은 DB 파일 단위)
            stmt = stmt.with_for_update()
        return self.db.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def ensure_balance(self, user_id: str) -> CreditBalanceModel:
        """
        잔액 행 보장 (최초 접근 시 0 으로 생성)

        동시 생성 경합은 INSERT ... ON CONFLICT DO NOTHING 으로 흡수하고
        기존 행을 재조회합니다.
        """
        row = self.get_balance_row(user_id)
        if row is not None:
            return row
        values = dict(user_id=user_id, balance=0, total_recharged=0, total_consumed=0)
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            self.db.execute(
                pg_insert(CreditBalanceModel).values(**values).on_conflict_do_nothing()
            )
        elif dialect == "sqlite":
            self.db.execute(
                sqlite_insert(CreditBalanceModel).values(**values).on_conflict_do_nothing()
            )
        else:
            self.add(CreditBalanceModel(**values))
        row = self.get_balance_row(user_id)
        if row is None:
            raise RuntimeError(f"credit balance row for {user_id} could not be created")
        return row

    def get_balance_response(self, user_id: str) -> CreditBalanceResponse:
        row = self.get_balance_row(user_id)
        if row is None:
            return CreditBalanceResponse(user_id=user_id)
        return CreditBalanceResponse.model_validate(row)

    def _read_balance(self, user_id: str) -> int:
        return int(
            self.db.execute(
                select(CreditBalanceModel.balance).where(
                    CreditBalanceModel.user_id == user_id
                )
            ).scalar_one()
        )

    def credit(self, user_id: str, amount: int) -> int:
        """잔액 증가 (total_recharged 누적) - 갱신 후 잔액 반환"""
        table = CreditBalanceModel.__table__
        self.db.execute(
            update(table)
            .where(table.c.user_id == user_id)
            .values(
                total_recharged=table.c.total_recharged + amount,
                balance=(table.c.total_recharged + amount) - table.c.total_consumed,
            )
        )
        return self._read_balance(user_id)

    def debit(self, user_id: str, amount: int) -> Optional[int]:
        """
        조건부 잔액 차감 (total_consumed 누적)

        Returns:
            갱신 후 잔액, 잔액이 부족하면 None (아무것도 변경되지 않음)
        """
        table = CreditBalanceModel.__table__
        result = self.db.execute(
            update(table)
            .where(
                table.c.user_id == user_id,
                table.c.total_recharged - table.c.total_consumed >= amount,
            )
            .values(
                total_consumed=table.c.total_consumed + amount,
                balance=table.c.total_recharged - (table.c.total_consumed + amount),
            )
        )
        if result.rowcount == 0:
            return None
        return self._read_balance(user_id)

    # ------------------------------------------------------------------
    # Transactions (append-only)
    # ------------------------------------------------------------------
    def append_transaction(
        self,
        user_id: str,
        amount: int,
        balance_after: int,
        type: str,
        description: str,
        meta: Optional[Dict[str, Any]] = None,
        grant_id: Optional[int] = None,
        dedupe_key: Optional[str] = None,
    ) -> CreditTransactionModel:
        transaction = CreditTransactionModel(
            user_id=user_id,
            amount=amount,
            balance_after=balance_after,
            type=type,
            description=description,
            meta=meta,
            grant_id=grant_id,
            dedupe_key=dedupe_key,
        )
        return self.add(transaction)

    def find_by_dedupe_key(
        self, user_id: str, dedupe_key: str
    ) -> Optional[CreditTransactionModel]:
        return (
            self.db.query(CreditTransactionModel)
            .filter(
                CreditTransactionModel.user_id == user_id,
                CreditTransactionModel.dedupe_key == dedupe_key,
            )
            .first()
        )

    def list_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> Tuple[List[CreditTransactionEntry], int]:
        """거래 내역 페이지 조회 (최신순) 와 전체 건수"""
        base = self.db.query(CreditTransactionModel).filter(
            CreditTransactionModel.user_id == user_id
        )
        total = base.count()
        rows = (
            base.order_by(desc(CreditTransactionModel.id)).offset(offset).limit(limit).all()
        )
        return self._to_schemas(rows), total

    def iter_transactions_ordered(self, user_id: str) -> List[CreditTransactionModel]:
        """정합성 검증용 - 생성 순서대로 전체 거래"""
        return (
            self.db.query(CreditTransactionModel)
            .filter(CreditTransactionModel.user_id == user_id)
            .order_by(asc(CreditTransactionModel.id))
            .all()
        )

    # ------------------------------------------------------------------
    # Subscription grants
    # ------------------------------------------------------------------
    def get_grant_by_period(
        self, external_subscription_ref: str, start_at: datetime
    ) -> Optional[SubscriptionGrantModel]:
        return (
            self.db.query(SubscriptionGrantModel)
            .filter(
                SubscriptionGrantModel.external_subscription_ref == external_subscription_ref,
                SubscriptionGrantModel.start_at == start_at,
            )
            .first()
        )

    def create_grant(
        self,
        user_id: str,
        external_subscription_ref: str,
        credits: int,
        start_at: datetime,
        end_at: datetime,
    ) -> SubscriptionGrantModel:
        grant = SubscriptionGrantModel(
            user_id=user_id,
            external_subscription_ref=external_subscription_ref,
            total_credits=credits,
            remaining_credits=credits,
            start_at=start_at,
            end_at=end_at,
            status=GrantStatus.ACTIVE.value,
        )
        return self.add(grant)

    def drawable_grants(self, user_id: str, now: datetime) -> List[SubscriptionGrantModel]:
        """소비 시 우선 차감 대상 (만료 임박 순)"""
        return (
            self.db.query(SubscriptionGrantModel)
            .filter(
                SubscriptionGrantModel.user_id == user_id,
                SubscriptionGrantModel.status.in_(
                    [GrantStatus.ACTIVE.value, GrantStatus.CANCELED.value]
                ),
                SubscriptionGrantModel.remaining_credits > 0,
                SubscriptionGrantModel.end_at > now,
            )
            .order_by(asc(SubscriptionGrantModel.end_at), asc(SubscriptionGrantModel.id))
            .with_for_update()
            .all()
        )

    def _due_filter(self, now: datetime):
        # 활성 지급분은 기간 종료 시 만료, 취소된 지급분은 남은 크레딧만 회수
        return or_(
            SubscriptionGrantModel.status == GrantStatus.ACTIVE.value,
            (SubscriptionGrantModel.status == GrantStatus.CANCELED.value)
            & (SubscriptionGrantModel.remaining_credits > 0),
        ) & (SubscriptionGrantModel.end_at <= now)

    def find_due_grant_owners(self, now: datetime, limit: int) -> List[str]:
        rows = (
            self.db.query(SubscriptionGrantModel.user_id)
            .filter(self._due_filter(now))
            .distinct()
            .order_by(SubscriptionGrantModel.user_id)
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    def due_grants_for_user(
        self, user_id: str, now: datetime
    ) -> List[SubscriptionGrantModel]:
        return (
            self.db.query(SubscriptionGrantModel)
            .filter(SubscriptionGrantModel.user_id == user_id, self._due_filter(now))
            .order_by(asc(SubscriptionGrantModel.id))
            .with_for_update()
            .populate_existing()
            .all()
        )

    def active_grants_for_subscription(
        self, external_subscription_ref: str
    ) -> List[SubscriptionGrantModel]:
        return (
            self.db.query(SubscriptionGrantModel)
            .filter(
                SubscriptionGrantModel.external_subscription_ref == external_subscription_ref,
                SubscriptionGrantModel.status == GrantStatus.ACTIVE.value,
            )
            .order_by(asc(SubscriptionGrantModel.start_at))
            .all()
        )

    def list_grants(
        self, user_id: str, status: Optional[str] = None
    ) -> List[SubscriptionGrantEntry]:
        query = self.db.query(SubscriptionGrantModel).filter(
            SubscriptionGrantModel.user_id == user_id
        )
        if status:
            query = query.filter(SubscriptionGrantModel.status == status)
        grants = query.order_by(desc(SubscriptionGrantModel.start_at)).all()
        return [SubscriptionGrantEntry.model_validate(grant) for grant in grants]
