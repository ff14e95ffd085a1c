"""
이벤트 정합성 서비스

결제사 이벤트를 사용자 매칭 -> 원장 효과 적용 순서로 처리합니다.

상태 흐름:
- received -> matched -> applied              (정상 처리)
- received -> unresolved -> parked            (매칭 실패, 원문 보류)
- received -> applied(duplicate)              (재전송, 저장된 결과 반환)

멱등성 키 기록과 원장 효과는 같은 커밋에 포함되므로, 재전송은 조회만 수행합니다.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creditsync import config
from creditsync.config import Settings
from creditsync.core.exceptions import (
    BaseAPIException,
    ConflictError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from creditsync.core.locks import KeyedLockRegistry, event_key, ledger_locks, user_key
from creditsync.models.credits import TransactionType
from creditsync.models.events import ParkedStatus
from creditsync.providers.processor.stripe_directory import CustomerDirectory
from creditsync.repositories.event_repository import EventRepository
from creditsync.repositories.warning_repository import WarningKind, WarningRepository
from creditsync.schemas.events import (
    BillingEvent,
    BillingEventKind,
    ParkedEventEntry,
    ReconcileOutcome,
    ReconcileStatus,
    ReplaySummary,
)
from creditsync.schemas.identity import ContextHints, Unresolved
from creditsync.services.credit_ledger_service import CreditLedgerService
from creditsync.services.identity_matcher_service import IdentityMatcherService

logger = logging.getLogger(__name__)

CANCEL_STATUSES = {"canceled", "unpaid", "incomplete_expired"}
ACTIVE_STATUSES = {"active", "trialing"}


class EventReconcilerService:
    """결제사 이벤트 처리 및 보류 이벤트 재처리를 담당하는 서비스"""

    def __init__(
        self,
        db: Session,
        matcher: IdentityMatcherService,
        ledger: CreditLedgerService,
        settings: Optional[Settings] = None,
        locks: KeyedLockRegistry = ledger_locks,
    ):
        self.db = db
        self.matcher = matcher
        self.ledger = ledger
        self.settings = settings or config.settings
        self.locks = locks
        self.event_repo = EventRepository(db)
        self.warning_repo = WarningRepository(db)

        self.matcher.replay_handler = self.replay_parked_events

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def plan_credits(self, event: BillingEvent) -> int:
        """가격 단가 -> 플랜 크레딧 (단가 매핑 우선, 없으면 결제 주기 기준)"""
        by_amount = self.settings.PLAN_CREDITS_BY_UNIT_AMOUNT
        if event.unit_amount is not None and event.unit_amount in by_amount:
            return by_amount[event.unit_amount]
        if event.interval == "year":
            return self.settings.YEARLY_PLAN_CREDITS
        return self.settings.MONTHLY_PLAN_CREDITS

    def _hints(self, event: BillingEvent) -> ContextHints:
        metadata_user_id = event.metadata.get(
            self.settings.PROCESSOR_METADATA_USER_KEY
        ) or event.metadata.get("user_id")
        return ContextHints(
            email=event.email_hint,
            name=event.name_hint,
            subscription_ref=event.subscription_ref,
            metadata_user_id=str(metadata_user_id) if metadata_user_id else None,
            event_type=event.kind.value,
            observed_at=event.occurred_at,
            metadata=event.metadata,
        )

    def _prior_outcome(self, key: str) -> Optional[ReconcileOutcome]:
        applied = self.event_repo.get_applied(key)
        if applied is None:
            return None
        outcome = ReconcileOutcome.model_validate(applied.result)
        outcome.duplicate = True
        return outcome

    # ------------------------------------------------------------------
    # handle
    # ------------------------------------------------------------------
    def handle_event(self, event: BillingEvent) -> ReconcileOutcome:
        """이벤트 처리 (재전송 시 최초 결과 반환, 매칭 실패 시 보류)"""
        key = event.idempotency_key
        with self.locks.hold(event_key(key)):
            prior = self._prior_outcome(key)
            if prior is not None:
                logger.info(f"Event {key} already applied, returning recorded result")
                return prior

            try:
                match = self.matcher.resolve(event.external_ref, self._hints(event))
            except UpstreamUnavailable as e:
                return self._park(event, "upstream_unavailable", e.message)

            if isinstance(match, Unresolved):
                return self._park(event, match.reason, None)

            # 매칭 과정의 보류 이벤트 재처리에서 이미 적용되었을 수 있음
            prior = self._prior_outcome(key)
            if prior is not None:
                prior.duplicate = False
                return prior

            try:
                return self._apply(event, match.user_id)
            except NotFoundError as e:
                return self._park(event, "unresolved", e.message)
            except ConflictError as e:
                return self._park(event, "conflict", e.message)
            except ValidationError as e:
                # 원문 자체가 적용 불가: 재처리 대상에서 제외
                return self._park(event, "invalid_event", e.message, abandon=True)

    def _apply(self, event: BillingEvent, user_id: str) -> ReconcileOutcome:
        key = event.idempotency_key
        with self.locks.hold(user_key(user_id)):
            try:
                effect = self._apply_effect(event, user_id)
                outcome = ReconcileOutcome(
                    idempotency_key=key,
                    kind=event.kind.value,
                    status=ReconcileStatus.APPLIED,
                    user_id=user_id,
                    effect=effect,
                )
                self.event_repo.record_applied(
                    key, event.kind.value, outcome.model_dump(mode="json")
                )
                parked = self.event_repo.get_parked(key)
                if parked is not None and parked.status == ParkedStatus.PENDING.value:
                    self.event_repo.mark_applied(parked)
                self.db.commit()
            except IntegrityError:
                # 다른 프로세스가 같은 이벤트를 먼저 기록
                self.db.rollback()
                prior = self._prior_outcome(key)
                if prior is None:
                    raise
                return prior
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Applied event {key} ({event.kind.value}) for user {user_id}: {effect}")
        return outcome

    def _apply_effect(self, event: BillingEvent, user_id: str) -> Dict[str, Any]:
        kind = event.kind
        if kind == BillingEventKind.SUBSCRIPTION_ACTIVATED:
            return self._grant_period(event, user_id, TransactionType.BONUS)

        if kind == BillingEventKind.SUBSCRIPTION_UPDATED:
            status = event.subscription_status or ""
            if status in CANCEL_STATUSES:
                return self._cancel(event, user_id)
            if status in ACTIVE_STATUSES and event.period_start and event.period_end:
                grant_id = self.ledger.adjust_grant_window(
                    user_id,
                    self._subscription_ref(event),
                    event.period_start,
                    event.period_end,
                    commit=False,
                )
                if grant_id is not None:
                    return {"action": "adjust", "grant_id": grant_id, "subscription_status": status}
                return self._grant_period(event, user_id, TransactionType.BONUS)
            return {"action": "noop", "subscription_status": status}

        if kind == BillingEventKind.INVOICE_PAID:
            if event.subscription_ref and event.period_start and event.period_end:
                return self._grant_period(event, user_id, TransactionType.RECHARGE)
            if event.credits and event.credits > 0:
                invoice_ref = event.invoice_ref or event.idempotency_key
                result = self.ledger.recharge(
                    user_id,
                    event.credits,
                    f"credit purchase {invoice_ref}",
                    dedupe_key=f"invoice_{invoice_ref}",
                    metadata={"invoice_ref": invoice_ref, "event_key": event.idempotency_key},
                    commit=False,
                )
                return {
                    "action": "recharge",
                    "credits": result.added,
                    "balance": result.balance,
                    "transaction_id": result.transaction_id,
                }
            return {"action": "noop", "reason": "invoice carries no credit effect"}

        if kind == BillingEventKind.SUBSCRIPTION_CANCELED:
            return self._cancel(event, user_id)

        raise ValidationError(f"Unsupported event kind {kind}")

    @staticmethod
    def _subscription_ref(event: BillingEvent) -> str:
        if not event.subscription_ref:
            raise ValidationError(
                "Subscription reference is missing",
                details={"event_key": event.idempotency_key},
            )
        return event.subscription_ref

    def _grant_period(
        self, event: BillingEvent, user_id: str, transaction_type: TransactionType
    ) -> Dict[str, Any]:
        subscription_ref = self._subscription_ref(event)
        if event.period_start is None or event.period_end is None:
            raise ValidationError(
                "Subscription period is missing",
                details={"event_key": event.idempotency_key},
            )
        credits = self.plan_credits(event)
        result = self.ledger.open_subscription_grant(
            user_id,
            subscription_ref,
            credits,
            event.period_start,
            event.period_end,
            transaction_type=transaction_type,
            description=f"{event.kind.value} {subscription_ref}",
            metadata={"event_key": event.idempotency_key},
            commit=False,
        )
        return {
            "action": "grant",
            "subscription_ref": subscription_ref,
            "grant_id": result.grant_id,
            "credits": result.added,
            "balance": result.balance,
            "transaction_id": result.transaction_id,
        }

    def _cancel(self, event: BillingEvent, user_id: str) -> Dict[str, Any]:
        canceled = self.ledger.cancel_subscription_grants(
            user_id, self._subscription_ref(event), commit=False
        )
        return {"action": "cancel", "canceled_grant_ids": canceled}

    # ------------------------------------------------------------------
    # parking / replay
    # ------------------------------------------------------------------
    def _park(
        self, event: BillingEvent, reason: str, error: Optional[str], abandon: bool = False
    ) -> ReconcileOutcome:
        key = event.idempotency_key
        try:
            try:
                parked = self.event_repo.park(
                    key,
                    event.external_ref,
                    event.kind.value,
                    event.model_dump(mode="json"),
                    reason,
                    error,
                )
                self.db.flush()
            except IntegrityError:
                # 다른 프로세스가 같은 이벤트를 먼저 보류
                self.db.rollback()
                parked = self.event_repo.get_parked(key)
                if parked is None:
                    raise
            if abandon:
                self.event_repo.abandon(parked, error)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(
            f"Parked event {key} ({event.kind.value}) for {event.external_ref}: {reason}"
            + (" (abandoned)" if abandon else "")
        )
        return ReconcileOutcome(
            idempotency_key=key,
            kind=event.kind.value,
            status=ReconcileStatus.PARKED,
            reason=reason,
            effect={
                "parked_event_id": parked.id,
                "attempts": parked.attempts,
                "parked_status": parked.status,
            },
        )

    def replay_parked_events(self, external_ref: str, user_id: str) -> ReplaySummary:
        """참조에 묶인 보류 이벤트를 도착 순서대로 재처리 (각 이벤트는 정확히 한 번 적용)

        다른 작업자가 처리 중인(이벤트 락 보유) 이벤트는 기다리지 않고 넘깁니다.
        그 작업자가 자신의 이벤트를 직접 적용합니다.
        """
        summary = ReplaySummary(external_ref=external_ref)
        for pending in self.event_repo.pending_for_ref(external_ref):
            key = pending.event_key
            with self.locks.try_hold(event_key(key)) as acquired:
                if not acquired:
                    summary.deferred += 1
                    continue
                self._replay_one(key, user_id, summary)

        if summary.replayed or summary.failed or summary.abandoned:
            logger.info(
                f"Replayed parked events for {external_ref} -> {user_id}: "
                f"replayed={summary.replayed}, skipped={summary.skipped}, "
                f"failed={summary.failed}, abandoned={summary.abandoned}, "
                f"deferred={summary.deferred}"
            )
        return summary

    def _replay_one(self, key: str, user_id: str, summary: ReplaySummary) -> None:
        parked = self.event_repo.get_parked(key)
        if parked is None or parked.status != ParkedStatus.PENDING.value:
            return

        if self.event_repo.get_applied(key) is not None:
            self.event_repo.mark_applied(parked)
            self.db.commit()
            summary.skipped += 1
            return

        try:
            event = BillingEvent.model_validate(parked.payload)
            outcome = self._apply(event, user_id)
        except (ValidationError, PayloadValidationError) as e:
            self.db.rollback()
            self._abandon_invalid(key, user_id, e)
            summary.abandoned += 1
            return
        except (BaseAPIException, SQLAlchemyError) as e:
            self.db.rollback()
            self._record_replay_failure(key, user_id, e)
            summary.failed += 1
            return

        if outcome.duplicate:
            summary.skipped += 1
        else:
            summary.replayed += 1
        summary.event_keys.append(key)

    def _abandon_invalid(self, key: str, user_id: str, error: Exception) -> None:
        parked = self.event_repo.get_parked(key)
        try:
            if parked is not None:
                self.event_repo.abandon(parked, str(error))
            self.warning_repo.record(
                WarningKind.REPLAY_FAILED,
                user_id,
                {
                    "event_key": key,
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "abandoned": True,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.warning(f"Abandoned parked event {key}: payload cannot be applied ({error})")

    def _record_replay_failure(self, key: str, user_id: str, error: Exception) -> None:
        parked = self.event_repo.get_parked(key)
        try:
            if parked is not None:
                self.event_repo.record_failed_attempt(parked, str(error))
            self.warning_repo.record(
                WarningKind.REPLAY_FAILED,
                user_id,
                {"event_key": key, "error": str(error), "error_type": type(error).__name__},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.warning(f"Replay of parked event {key} failed: {error}")

    def list_parked(
        self,
        status: Optional[str] = ParkedStatus.PENDING.value,
        external_ref: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ParkedEventEntry]:
        return self.event_repo.list_parked(
            status, external_ref, max(1, min(limit, 200)), max(0, offset)
        )


@dataclass
class ReconciliationServices:
    ledger: CreditLedgerService
    matcher: IdentityMatcherService
    reconciler: EventReconcilerService


def build_reconciliation_services(
    db: Session,
    directory: Optional[CustomerDirectory] = None,
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> ReconciliationServices:
    """같은 세션을 공유하는 원장/매칭/정합성 서비스 묶음 생성"""
    ledger = CreditLedgerService(db, settings=settings)
    matcher = IdentityMatcherService(db, directory=directory, settings=settings)
    reconciler = EventReconcilerService(db, matcher, ledger, settings=settings)

    if session_factory is not None:
        matcher.session_factory = session_factory
        matcher.worker_factory = lambda session: build_reconciliation_services(
            session, directory=directory, settings=settings
        ).matcher
    return ReconciliationServices(ledger=ledger, matcher=matcher, reconciler=reconciler)
