"""
크레딧 원장 엔진

소비(consume), 보너스(grant_bonus), 충전(recharge), 만료(expire_grants)를
사용자별 직렬화된 원자적 작업 단위로 적용합니다.

- 잔액 변경과 거래 기록은 항상 같은 커밋에 포함됩니다
- 잔액 부족은 예외가 아닌 InsufficientBalance 결과로 반환됩니다
- dedupe_key 가 있는 호출은 같은 키로 재호출 시 최초 결과를 그대로 반환합니다
- commit=False 로 호출하면 호출자(이벤트 정합성 서비스)의 작업 단위에 합류합니다
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creditsync import config
from creditsync.config import Settings
from creditsync.core.exceptions import ConflictError, NotFoundError, ValidationError
from creditsync.core.locks import KeyedLockRegistry, ledger_locks, user_key
from creditsync.models.credits import (
    CreditTransaction,
    GrantStatus,
    TransactionType,
)
from creditsync.repositories.ledger_repository import LedgerRepository
from creditsync.repositories.user_repository import UserRepository
from creditsync.repositories.warning_repository import WarningKind, WarningRepository
from creditsync.schemas.credits import (
    ConsumeResult,
    CreditBalanceResponse,
    CreditTransactionsResponse,
    ExpirySweepResult,
    GrantDraw,
    InsufficientBalance,
    IntegrityCheckResponse,
    LedgerCreditResult,
    SubscriptionGrantEntry,
    SubscriptionGrantResult,
)
from creditsync.utils.timezone_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


def subscription_period_key(subscription_ref: str, start_at: datetime) -> str:
    """구독 기간 지급의 원장 중복 방지 키 (활성화/인보이스 이벤트가 공유)"""
    return f"subscription_{subscription_ref}_{int(ensure_utc(start_at).timestamp())}"


class CreditLedgerService:
    """크레딧 원장 관련 비즈니스 로직을 담당하는 서비스"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        locks: KeyedLockRegistry = ledger_locks,
    ):
        self.db = db
        self.settings = settings or config.settings
        self.locks = locks
        self.ledger_repo = LedgerRepository(db)
        self.user_repo = UserRepository(db)
        self.warning_repo = WarningRepository(db)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _unit(self, commit: bool) -> Iterator[None]:
        """작업 단위 - 실패 시 잔액/거래 어느 쪽도 남지 않음"""
        try:
            yield
            if commit:
                self.db.commit()
        except Exception:
            if commit:
                self.db.rollback()
            raise

    @staticmethod
    def _validate_amount(amount: Any, field: str = "amount") -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                f"{field} must be a positive integer", details={field: amount}
            )

    def _require_user(self, user_id: str) -> None:
        if not user_id or not self.user_repo.exists(user_id):
            raise NotFoundError(f"User {user_id} not found", details={"user_id": user_id})

    @staticmethod
    def _credit_result(transaction: CreditTransaction) -> LedgerCreditResult:
        if transaction.amount <= 0:
            raise ConflictError(
                "Dedupe key already used by a debit",
                details={"dedupe_key": transaction.dedupe_key, "transaction_id": transaction.id},
            )
        return LedgerCreditResult(
            user_id=transaction.user_id,
            balance=transaction.balance_after,
            added=transaction.amount,
            transaction_id=transaction.id,
        )

    @staticmethod
    def _consume_result(transaction: CreditTransaction) -> ConsumeResult:
        if transaction.type != TransactionType.CONSUMPTION.value:
            raise ConflictError(
                "Dedupe key already used by a different operation",
                details={"dedupe_key": transaction.dedupe_key, "transaction_id": transaction.id},
            )
        draws = (transaction.meta or {}).get("grants") or []
        return ConsumeResult(
            user_id=transaction.user_id,
            balance=transaction.balance_after,
            consumed=-transaction.amount,
            transaction_id=transaction.id,
            drawn_from_grants=[GrantDraw(**draw) for draw in draws],
        )

    # ------------------------------------------------------------------
    # consume
    # ------------------------------------------------------------------
    def consume(
        self,
        user_id: str,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        commit: bool = True,
    ) -> Union[ConsumeResult, InsufficientBalance]:
        """크레딧 소비

        Args:
            user_id: 사용자 ID
            amount: 소비량 (양의 정수)
            description: 거래 설명
            dedupe_key: 중복 방지 키 (선택)

        Returns:
            ConsumeResult: 소비 성공 (차감 후 잔액)
            InsufficientBalance: 잔액 부족 (아무것도 변경되지 않음)
        """
        self._validate_amount(amount)
        try:
            return self._consume(user_id, amount, description, metadata, dedupe_key, commit)
        except IntegrityError:
            # 다른 프로세스가 같은 dedupe_key 를 먼저 기록한 경우
            if not commit or not dedupe_key:
                raise
            existing = self.ledger_repo.find_by_dedupe_key(user_id, dedupe_key)
            if existing is None:
                raise
            logger.info(
                f"Consume for user {user_id} raced on dedupe key {dedupe_key}, "
                f"returning recorded result"
            )
            return self._consume_result(existing)

    def _consume(
        self,
        user_id: str,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]],
        dedupe_key: Optional[str],
        commit: bool,
    ) -> Union[ConsumeResult, InsufficientBalance]:
        with self.locks.hold(user_key(user_id)), self._unit(commit):
            self._require_user(user_id)

            if dedupe_key:
                existing = self.ledger_repo.find_by_dedupe_key(user_id, dedupe_key)
                if existing is not None:
                    logger.info(
                        f"Consume for user {user_id} skipped, dedupe key {dedupe_key} already applied"
                    )
                    return self._consume_result(existing)

            self.ledger_repo.ensure_balance(user_id)
            row = self.ledger_repo.get_balance_row(user_id, for_update=True)
            if row.balance < amount:
                logger.info(
                    f"Insufficient balance for user {user_id}: balance={row.balance}, required={amount}"
                )
                return InsufficientBalance(user_id=user_id, balance=row.balance, required=amount)

            new_balance = self.ledger_repo.debit(user_id, amount)
            if new_balance is None:
                current = self.ledger_repo.get_balance_row(user_id)
                return InsufficientBalance(
                    user_id=user_id, balance=current.balance if current else 0, required=amount
                )

            draws = self._draw_from_grants(user_id, amount)
            meta = dict(metadata or {})
            if draws:
                meta["grants"] = [draw.model_dump() for draw in draws]

            transaction = self.ledger_repo.append_transaction(
                user_id=user_id,
                amount=-amount,
                balance_after=new_balance,
                type=TransactionType.CONSUMPTION.value,
                description=description,
                meta=meta or None,
                grant_id=draws[0].grant_id if len(draws) == 1 else None,
                dedupe_key=dedupe_key,
            )
            logger.info(f"Consumed {amount} credits for user {user_id}, balance={new_balance}")
            return ConsumeResult(
                user_id=user_id,
                balance=new_balance,
                consumed=amount,
                transaction_id=transaction.id,
                drawn_from_grants=draws,
            )

    def _draw_from_grants(self, user_id: str, amount: int) -> List[GrantDraw]:
        """만료 임박 지급분부터 remaining_credits 차감"""
        draws: List[GrantDraw] = []
        left = amount
        for grant in self.ledger_repo.drawable_grants(user_id, utc_now()):
            if left <= 0:
                break
            take = min(grant.remaining_credits, left)
            grant.remaining_credits -= take
            left -= take
            draws.append(GrantDraw(grant_id=grant.id, amount=take))
        self.db.flush()
        return draws

    # ------------------------------------------------------------------
    # bonus / recharge
    # ------------------------------------------------------------------
    def _credit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        grant_id: Optional[int] = None,
        commit: bool = True,
    ) -> LedgerCreditResult:
        self._validate_amount(amount)
        try:
            with self.locks.hold(user_key(user_id)), self._unit(commit):
                self._require_user(user_id)

                if dedupe_key:
                    existing = self.ledger_repo.find_by_dedupe_key(user_id, dedupe_key)
                    if existing is not None:
                        logger.info(
                            f"{transaction_type.value} for user {user_id} skipped, "
                            f"dedupe key {dedupe_key} already applied"
                        )
                        return self._credit_result(existing)

                self.ledger_repo.ensure_balance(user_id)
                new_balance = self.ledger_repo.credit(user_id, amount)
                transaction = self.ledger_repo.append_transaction(
                    user_id=user_id,
                    amount=amount,
                    balance_after=new_balance,
                    type=transaction_type.value,
                    description=description,
                    meta=metadata,
                    grant_id=grant_id,
                    dedupe_key=dedupe_key,
                )
                logger.info(
                    f"Applied {transaction_type.value} of {amount} credits for user {user_id}, "
                    f"balance={new_balance}"
                )
                return LedgerCreditResult(
                    user_id=user_id,
                    balance=new_balance,
                    added=amount,
                    transaction_id=transaction.id,
                )
        except IntegrityError:
            # 다른 프로세스가 같은 dedupe_key 를 먼저 기록한 경우
            if not commit or not dedupe_key:
                raise
            existing = self.ledger_repo.find_by_dedupe_key(user_id, dedupe_key)
            if existing is None:
                raise
            return self._credit_result(existing)

    def grant_bonus(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
        commit: bool = True,
    ) -> LedgerCreditResult:
        """보너스 크레딧 지급 (잔액 행이 없으면 생성)"""
        return self._credit(
            user_id,
            amount,
            TransactionType.BONUS,
            reason,
            metadata=metadata,
            dedupe_key=dedupe_key,
            commit=commit,
        )

    def recharge(
        self,
        user_id: str,
        amount: int,
        description: str,
        dedupe_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> LedgerCreditResult:
        """충전 크레딧 적용 (결제 완료 인보이스)"""
        return self._credit(
            user_id,
            amount,
            TransactionType.RECHARGE,
            description,
            metadata=metadata,
            dedupe_key=dedupe_key,
            commit=commit,
        )

    def grant_signup_bonus(self, user_id: str) -> LedgerCreditResult:
        return self.grant_bonus(
            user_id,
            self.settings.SIGNUP_BONUS_CREDITS,
            "signup bonus",
            metadata={"source": "signup"},
            dedupe_key=f"signup_{user_id}",
        )

    # ------------------------------------------------------------------
    # subscription grants
    # ------------------------------------------------------------------
    def open_subscription_grant(
        self,
        user_id: str,
        subscription_ref: str,
        credits: int,
        start_at: datetime,
        end_at: datetime,
        transaction_type: TransactionType = TransactionType.BONUS,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> SubscriptionGrantResult:
        """구독 기간 지급 생성 + 크레딧 적용

        (구독, 기간 시작) 당 한 번만 적용되며, 같은 기간에 대한 재호출은
        최초 결과를 반환합니다.
        """
        self._validate_amount(credits, "credits")
        start_at = ensure_utc(start_at)
        end_at = ensure_utc(end_at)
        if start_at is None or end_at is None or end_at <= start_at:
            raise ValidationError(
                "Grant validity window is invalid",
                details={"start_at": str(start_at), "end_at": str(end_at)},
            )
        dedupe_key = subscription_period_key(subscription_ref, start_at)

        with self.locks.hold(user_key(user_id)), self._unit(commit):
            self._require_user(user_id)
            grant = self.ledger_repo.get_grant_by_period(subscription_ref, start_at)
            if grant is None:
                grant = self.ledger_repo.create_grant(
                    user_id, subscription_ref, credits, start_at, end_at
                )
                logger.info(
                    f"Opened grant {grant.id} for subscription {subscription_ref} "
                    f"({credits} credits, user {user_id})"
                )
            elif grant.user_id != user_id:
                raise ConflictError(
                    "Subscription period already granted to another user",
                    details={
                        "subscription_ref": subscription_ref,
                        "grant_id": grant.id,
                        "current_user_id": grant.user_id,
                    },
                )

            credit = self._credit(
                user_id,
                credits,
                transaction_type,
                description or f"subscription credits {subscription_ref}",
                metadata={**(metadata or {}), "subscription_ref": subscription_ref},
                dedupe_key=dedupe_key,
                grant_id=grant.id,
                commit=False,
            )
            return SubscriptionGrantResult(
                grant_id=grant.id,
                user_id=user_id,
                balance=credit.balance,
                added=credit.added,
                transaction_id=credit.transaction_id,
            )

    def cancel_subscription_grants(
        self, user_id: str, subscription_ref: str, commit: bool = True
    ) -> List[int]:
        """구독 취소 - 활성 지급분을 canceled 로 전환 (이미 소비된 크레딧은 회수하지 않음)"""
        with self.locks.hold(user_key(user_id)), self._unit(commit):
            grants = self.ledger_repo.active_grants_for_subscription(subscription_ref)
            for grant in grants:
                grant.status = GrantStatus.CANCELED.value
            self.db.flush()
            if grants:
                logger.info(
                    f"Canceled {len(grants)} grant(s) for subscription {subscription_ref}"
                )
            return [grant.id for grant in grants]

    def adjust_grant_window(
        self,
        user_id: str,
        subscription_ref: str,
        start_at: datetime,
        end_at: datetime,
        commit: bool = True,
    ) -> Optional[int]:
        """같은 기간 지급분의 종료 시각 갱신 (구독 변경 이벤트)"""
        start_at = ensure_utc(start_at)
        end_at = ensure_utc(end_at)
        with self.locks.hold(user_key(user_id)), self._unit(commit):
            grant = self.ledger_repo.get_grant_by_period(subscription_ref, start_at)
            if grant is None or grant.status != GrantStatus.ACTIVE.value:
                return None
            if ensure_utc(grant.end_at) != end_at and end_at > start_at:
                logger.info(
                    f"Grant {grant.id} window end moved {grant.end_at} -> {end_at}"
                )
                grant.end_at = end_at
                self.db.flush()
            return grant.id

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------
    def expire_grants(
        self, now: Optional[datetime] = None, batch_size: Optional[int] = None
    ) -> ExpirySweepResult:
        """기간이 지난 지급분의 남은 크레딧 회수

        반복/동시 실행에 안전합니다. 회수량이 현재 잔액보다 크면 잔액까지만
        차감하고 정합성 경고를 남깁니다.
        """
        now = ensure_utc(now) or utc_now()
        limit = batch_size or self.settings.EXPIRY_SWEEP_BATCH_SIZE
        owners = self.ledger_repo.find_due_grant_owners(now, limit)
        self.db.rollback()

        result = ExpirySweepResult()
        for user_id in owners:
            try:
                expired, recovered, clamped = self._expire_user_grants(user_id, now)
            except (SQLAlchemyError, ConflictError) as e:
                logger.error(f"Grant expiry failed for user {user_id}: {str(e)}")
                result.failed_users.append(user_id)
                continue
            result.expired_count += expired
            result.recovered_credits += recovered
            if clamped:
                result.clamped_users.append(user_id)

        logger.info(
            f"Expiry sweep at {now.isoformat()}: expired={result.expired_count}, "
            f"recovered={result.recovered_credits}, clamped={len(result.clamped_users)}, "
            f"failed={len(result.failed_users)}"
        )
        return result

    def _expire_user_grants(self, user_id: str, now: datetime) -> Tuple[int, int, bool]:
        with self.locks.hold(user_key(user_id)), self._unit(True):
            grants = self.ledger_repo.due_grants_for_user(user_id, now)
            if not grants:
                return 0, 0, False

            self.ledger_repo.ensure_balance(user_id)
            row = self.ledger_repo.get_balance_row(user_id, for_update=True)
            requested = sum(grant.remaining_credits for grant in grants)
            deduction = min(requested, row.balance)
            clamped = requested > row.balance
            grant_ids = [grant.id for grant in grants]

            for grant in grants:
                if grant.status == GrantStatus.ACTIVE.value:
                    grant.status = GrantStatus.EXPIRED.value
                grant.remaining_credits = 0
            self.db.flush()

            if deduction > 0:
                new_balance = self.ledger_repo.debit(user_id, deduction)
                if new_balance is None:
                    raise ConflictError(
                        "Balance changed during expiry",
                        details={"user_id": user_id, "deduction": deduction},
                    )
                self.ledger_repo.append_transaction(
                    user_id=user_id,
                    amount=-deduction,
                    balance_after=new_balance,
                    type=TransactionType.EXPIRY.value,
                    description="subscription credits expired",
                    meta={"grant_ids": grant_ids, "requested": requested, "clamped": clamped},
                    grant_id=grant_ids[0] if len(grant_ids) == 1 else None,
                )
                logger.info(
                    f"Expired {len(grants)} grant(s) for user {user_id}: -{deduction} credits, "
                    f"balance={new_balance}"
                )

            if clamped:
                details = {
                    "grant_ids": grant_ids,
                    "requested": requested,
                    "deducted": deduction,
                    "balance_before": row.balance,
                }
                self.warning_repo.record(WarningKind.EXPIRY_CLAMPED, user_id, details)
                logger.warning(
                    f"Expiry for user {user_id} clamped: requested={requested}, "
                    f"deducted={deduction}"
                )
            return len(grants), deduction, clamped

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_balance(self, user_id: str) -> CreditBalanceResponse:
        self._require_user(user_id)
        return self.ledger_repo.get_balance_response(user_id)

    def get_transactions(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> CreditTransactionsResponse:
        """거래 내역 조회 (최신순, 최대 100건)"""
        self._require_user(user_id)
        limit = max(1, min(limit, 100))
        offset = max(0, offset)
        entries, total = self.ledger_repo.list_transactions(user_id, limit, offset)
        balance = self.ledger_repo.get_balance_response(user_id).balance
        return CreditTransactionsResponse(
            user_id=user_id,
            balance=balance,
            entries=entries,
            total_count=total,
            has_next=offset + len(entries) < total,
        )

    def get_grants(
        self, user_id: str, status: Optional[str] = None
    ) -> List[SubscriptionGrantEntry]:
        self._require_user(user_id)
        return self.ledger_repo.list_grants(user_id, status)

    def verify_integrity(self, user_id: str) -> IntegrityCheckResponse:
        """원장 정합성 검증

        1. 거래 내역 누적합 == 각 거래의 balance_after
        2. 잔액 == total_recharged - total_consumed == 마지막 누적합
        """
        self._require_user(user_id)
        row = self.ledger_repo.get_balance_row(user_id)
        transactions = self.ledger_repo.iter_transactions_ordered(user_id)

        running = 0
        first_bad_id: Optional[int] = None
        for transaction in transactions:
            running += transaction.amount
            if first_bad_id is None and running != transaction.balance_after:
                first_bad_id = transaction.id

        balance = row.balance if row else 0
        computed = (row.total_recharged - row.total_consumed) if row else 0
        response = IntegrityCheckResponse(
            status="OK",
            user_id=user_id,
            balance=balance,
            computed_balance=computed,
            log_balance=running,
            entry_count=len(transactions),
        )

        if first_bad_id is not None:
            response.status = "MISMATCH"
            response.error = "running sum diverges from balance_after"
            response.entry_id = first_bad_id
        elif not (balance == computed == running):
            response.status = "MISMATCH"
            response.error = "balance row does not match transaction log"

        if response.status != "OK":
            self.warning_repo.record(
                WarningKind.INTEGRITY_MISMATCH, user_id, response.model_dump()
            )
            self.db.commit()
            logger.warning(f"Ledger integrity mismatch for user {user_id}: {response.error}")
        return response
