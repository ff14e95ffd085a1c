"""
고객 식별 매칭 서비스

결제사 고객 참조를 정확히 한 명의 로컬 사용자로 해석합니다.

매칭 순서 (첫 성공에서 종료):
1. 직접 링크 조회 (exact)
2. 결제사 메타데이터의 로컬 사용자 ID (high)
3. 이메일 일치 (medium, 중복 이메일이면 모호성으로 중단)
4. 표시 이름 정규화 비교 (low, 후보가 정확히 1명일 때만)

링크 생성은 참조/사용자 단위로 직렬화되며, 먼저 기록한 쪽이 이깁니다.
원격 조회(결제사 API)는 어떤 잠금도 잡지 않은 상태에서 수행됩니다.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creditsync import config
from creditsync.config import Settings
from creditsync.core.exceptions import (
    AmbiguousMatchError,
    BaseAPIException,
    ConflictError,
    NotFoundError,
    UpstreamUnavailable,
    ValidationError,
)
from creditsync.core.locks import (
    KeyedLockRegistry,
    ledger_locks,
    link_user_key,
    reference_key,
)
from creditsync.models.identity import CustomerLink, LinkSource
from creditsync.providers.processor.stripe_directory import CustomerDirectory
from creditsync.repositories.event_repository import EventRepository
from creditsync.repositories.identity_repository import IdentityRepository
from creditsync.repositories.ledger_repository import LedgerRepository
from creditsync.repositories.user_repository import UserRepository
from creditsync.repositories.warning_repository import WarningKind, WarningRepository
from creditsync.schemas.events import ReplaySummary
from creditsync.schemas.identity import (
    BatchMatchItem,
    BatchMatchReport,
    ContextHints,
    CustomerInfoResponse,
    CustomerLinkEntry,
    MatchConfidence,
    MatchResult,
    Unresolved,
    UnresolvedReferenceEntry,
    UserInfoResponse,
)
from creditsync.schemas.user import UserSearchResponse
from creditsync.services.match_strategies import (
    AMBIGUOUS,
    MATCH_STRATEGIES,
    MATCHED,
    NO_MATCH,
    MatchContext,
    StrategyOutcome,
)
from creditsync.utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)

# 미해결 사유 -> 관리자 응답 에러 코드
UNRESOLVED_ERROR_CODES: Dict[str, str] = {
    "unresolved": NotFoundError.default_code,
    "ambiguous": AmbiguousMatchError.default_code,
    "conflict": ConflictError.default_code,
    "low_confidence": "MATCH_LOW_CONFIDENCE",
    "upstream_unavailable": UpstreamUnavailable.default_code,
}

ReplayHandler = Callable[[str, str], ReplaySummary]


class IdentityMatcherService:
    """고객 식별 매칭 관련 비즈니스 로직을 담당하는 서비스"""

    def __init__(
        self,
        db: Session,
        directory: Optional[CustomerDirectory] = None,
        settings: Optional[Settings] = None,
        locks: KeyedLockRegistry = ledger_locks,
    ):
        self.db = db
        self.directory = directory
        self.settings = settings or config.settings
        self.locks = locks
        self.user_repo = UserRepository(db)
        self.identity_repo = IdentityRepository(db)
        self.event_repo = EventRepository(db)
        self.ledger_repo = LedgerRepository(db)
        self.warning_repo = WarningRepository(db)

        # 이벤트 정합성 서비스가 연결 (보류 이벤트 재처리)
        self.replay_handler: Optional[ReplayHandler] = None
        # 배치 매칭 병렬 처리용 (작업자별 독립 세션)
        self.session_factory: Optional[Callable[[], Session]] = None
        self.worker_factory: Optional[Callable[[Session], "IdentityMatcherService"]] = None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_ref(external_ref: Optional[str]) -> str:
        external_ref = (external_ref or "").strip()
        if not external_ref:
            raise ValidationError("External customer reference is required")
        return external_ref

    def _require_user(self, user_id: str) -> None:
        if not user_id or not self.user_repo.exists(user_id):
            raise NotFoundError(f"User {user_id} not found", details={"user_id": user_id})

    def _context(self, external_ref: str, hints: ContextHints) -> MatchContext:
        return MatchContext(
            external_ref=external_ref,
            hints=hints,
            users=self.user_repo,
            links=self.identity_repo,
            fetch_customer=self.directory.fetch_customer if self.directory else None,
            metadata_user_key=self.settings.PROCESSOR_METADATA_USER_KEY,
            min_name_length=self.settings.FUZZY_MIN_NAME_LENGTH,
        )

    @staticmethod
    def _context_snapshot(hints: ContextHints, ctx: Optional[MatchContext]) -> Dict[str, Any]:
        snapshot = hints.model_dump(mode="json", exclude_none=True)
        customer = ctx.fetched_customer() if ctx else None
        if customer is not None:
            snapshot["customer"] = customer.model_dump(mode="json", exclude_none=True)
        return snapshot

    def _hints_from_pending(self, external_ref: str) -> ContextHints:
        entry = self.identity_repo.get_pending(external_ref)
        context = dict(entry.context or {}) if entry else {}
        known = {k: v for k, v in context.items() if k in ContextHints.model_fields}
        return ContextHints(**known)

    # ------------------------------------------------------------------
    # resolve
    # ------------------------------------------------------------------
    def resolve(
        self, external_ref: str, hints: Optional[ContextHints] = None
    ) -> Union[MatchResult, Unresolved]:
        """결제사 고객 참조 -> 로컬 사용자

        Returns:
            MatchResult: 매칭 성공 (필요 시 링크 생성, 보류 이벤트 재처리 완료)
            Unresolved: 모든 전략 실패 / 모호 / 충돌 (미해결 대기열에 기록됨)

        Raises:
            UpstreamUnavailable: 결제사 조회 실패 (재시도 소진, 대기열에 기록됨)
        """
        external_ref = self._validate_ref(external_ref)
        hints = hints or ContextHints()
        ctx = self._context(external_ref, hints)

        outcome = StrategyOutcome(NO_MATCH, "none")
        try:
            for strategy in MATCH_STRATEGIES:
                outcome = strategy(ctx)
                self._apply_side_effects(external_ref, outcome)
                if outcome.status != NO_MATCH:
                    break
        except UpstreamUnavailable as e:
            self._enqueue_unresolved(
                external_ref, "upstream_unavailable", hints, ctx, details=e.details
            )
            raise

        if outcome.status == AMBIGUOUS:
            logger.warning(
                f"Ambiguous {outcome.strategy} match for {external_ref}: {outcome.candidates}"
            )
            return self._enqueue_unresolved(
                external_ref,
                "ambiguous",
                hints,
                ctx,
                candidates=outcome.candidates,
                details={"strategy": outcome.strategy},
            )
        if outcome.status != MATCHED or outcome.user_id is None:
            return self._enqueue_unresolved(external_ref, "unresolved", hints, ctx)

        if outcome.strategy == "direct":
            summary = self._replay_and_settle(
                external_ref, outcome.user_id, "matched by direct"
            )
            return MatchResult(
                external_ref=external_ref,
                user_id=outcome.user_id,
                strategy="direct",
                confidence=MatchConfidence.EXACT,
                replayed=summary.replayed if summary else 0,
            )

        if (
            outcome.confidence == MatchConfidence.LOW
            and not self.settings.MATCH_AUTO_LINK_LOW_CONFIDENCE
        ):
            logger.info(
                f"Low confidence match for {external_ref} -> {outcome.user_id} routed to review"
            )
            return self._enqueue_unresolved(
                external_ref,
                "low_confidence",
                hints,
                ctx,
                candidates=[outcome.user_id],
                details={"strategy": outcome.strategy},
            )

        try:
            _, created = self._link(
                external_ref, outcome.user_id, outcome.strategy, outcome.confidence
            )
        except ConflictError as e:
            # 먼저 기록된 링크가 있으면 그 결과를 따름
            existing = self.identity_repo.get_active_link_by_ref(external_ref)
            if existing is not None and self.user_repo.exists(existing.user_id):
                summary = self._replay_and_settle(
                    external_ref, existing.user_id, "matched by direct"
                )
                return MatchResult(
                    external_ref=external_ref,
                    user_id=existing.user_id,
                    strategy="direct",
                    confidence=MatchConfidence.EXACT,
                    replayed=summary.replayed if summary else 0,
                )
            logger.warning(f"Link conflict while resolving {external_ref}: {e.details}")
            return self._enqueue_unresolved(
                external_ref,
                "conflict",
                hints,
                ctx,
                candidates=[outcome.user_id],
                details=e.details,
            )

        return self._after_link(
            external_ref,
            outcome.user_id,
            outcome.strategy,
            outcome.confidence,
            note=None,
            created=created,
        )

    def _apply_side_effects(self, external_ref: str, outcome: StrategyOutcome) -> None:
        if outcome.stale_link_id is not None:
            self._deactivate_stale_link(external_ref, outcome.stale_link_id)
        if outcome.stale_metadata_user_id:
            self._clear_stale_metadata(external_ref, outcome.stale_metadata_user_id)

    def _deactivate_stale_link(self, external_ref: str, link_id: int) -> None:
        with self.locks.hold(reference_key(external_ref)):
            try:
                link = self.db.get(CustomerLink, link_id)
                if link is None or not link.is_active:
                    return
                self.identity_repo.deactivate_link(link, "user_missing")
                self.warning_repo.record(
                    WarningKind.STALE_LINK_DEACTIVATED,
                    link.user_id,
                    {"external_ref": external_ref, "link_id": link_id},
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        logger.warning(
            f"Deactivated link {link_id} for {external_ref}: linked user no longer exists"
        )

    def _clear_stale_metadata(self, external_ref: str, stale_user_id: str) -> None:
        if self.directory is None or not self.settings.SYNC_PROCESSOR_METADATA:
            return
        try:
            self.directory.clear_invalid_user(external_ref, stale_user_id)
        except UpstreamUnavailable as e:
            logger.warning(
                f"Could not clear stale user {stale_user_id} on {external_ref}: {e.message}"
            )

    def _tag_customer(
        self, external_ref: str, user_id: str, linked_by: str, note: Optional[str]
    ) -> None:
        if self.directory is None or not self.settings.SYNC_PROCESSOR_METADATA:
            return
        try:
            self.directory.tag_customer(external_ref, user_id, linked_by, note)
        except UpstreamUnavailable as e:
            logger.warning(f"Could not tag {external_ref} with user {user_id}: {e.message}")

    def _enqueue_unresolved(
        self,
        external_ref: str,
        reason: str,
        hints: ContextHints,
        ctx: Optional[MatchContext],
        candidates: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Unresolved:
        """미해결 참조 기록 (참조당 pending 1건, 재관측 시 컨텍스트 병합)"""
        context = self._context_snapshot(hints, ctx)
        seen_at = hints.observed_at or utc_now()
        with self.locks.hold(reference_key(external_ref)):
            for attempt in range(2):
                try:
                    self.identity_repo.upsert_pending(
                        external_ref, reason, context, candidates, seen_at
                    )
                    self.db.commit()
                    break
                except IntegrityError:
                    # 다른 프로세스가 같은 참조를 먼저 enqueue
                    self.db.rollback()
                    if attempt == 1:
                        raise
                except Exception:
                    self.db.rollback()
                    raise
        logger.info(f"Recorded unresolved reference {external_ref} ({reason})")
        return Unresolved(
            external_ref=external_ref,
            reason=reason,
            candidates=candidates or [],
            details=details or {},
        )

    # ------------------------------------------------------------------
    # linking
    # ------------------------------------------------------------------
    def _link(
        self,
        external_ref: str,
        user_id: str,
        linked_by: str,
        confidence: MatchConfidence,
        note: Optional[str] = None,
    ) -> Tuple[CustomerLink, bool]:
        """링크 생성 (양방향 유일성 검사, 실패 시 아무것도 변경하지 않음)

        Returns:
            (링크, 새로 생성 여부) - 같은 쌍이 이미 연결되어 있으면 기존 링크
        """
        with self.locks.hold(reference_key(external_ref), link_user_key(user_id)):
            try:
                existing = self.identity_repo.get_active_link_by_ref(external_ref)
                if existing is not None and not self.user_repo.exists(existing.user_id):
                    self.identity_repo.deactivate_link(existing, "user_missing")
                    existing = None
                if existing is not None:
                    if existing.user_id == user_id:
                        return existing, False
                    raise ConflictError(
                        "External reference is already linked to another user",
                        details={
                            "external_ref": external_ref,
                            "current_user_id": existing.user_id,
                            "requested_user_id": user_id,
                        },
                    )

                owned = self.identity_repo.get_active_link_by_user(user_id)
                if owned is not None:
                    raise ConflictError(
                        "User is already linked to another external reference",
                        details={
                            "user_id": user_id,
                            "current_external_ref": owned.external_ref,
                            "requested_external_ref": external_ref,
                        },
                    )

                link = self.identity_repo.create_link(
                    user_id, external_ref, linked_by, confidence.value, note
                )
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError(
                    "Concurrent link creation detected",
                    details={"external_ref": external_ref, "user_id": user_id},
                ) from e
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            f"Linked {external_ref} -> user {user_id} via {linked_by} ({confidence.value})"
        )
        return link, True

    def _replay(self, external_ref: str, user_id: str) -> Optional[ReplaySummary]:
        if self.replay_handler is None:
            return None
        return self.replay_handler(external_ref, user_id)

    def _replay_and_settle(
        self, external_ref: str, user_id: str, note: str
    ) -> Optional[ReplaySummary]:
        """보류 이벤트 재처리 후, 실패가 없으면 미해결 대기열 항목을 해결 처리"""
        summary = self._replay(external_ref, user_id)
        if summary is not None and summary.failed:
            logger.warning(
                f"{summary.failed} parked event(s) for {external_ref} failed to replay; "
                f"reference stays pending"
            )
            return summary

        with self.locks.hold(reference_key(external_ref)):
            try:
                if self.identity_repo.mark_resolved(external_ref, user_id, note):
                    self.db.commit()
                    logger.info(f"Unresolved reference {external_ref} resolved -> {user_id}")
            except Exception:
                self.db.rollback()
                raise
        return summary

    def _after_link(
        self,
        external_ref: str,
        user_id: str,
        strategy: str,
        confidence: MatchConfidence,
        note: Optional[str],
        created: bool,
    ) -> MatchResult:
        """링크 이후 처리: 결제사 태깅 -> 보류 이벤트 재처리 -> 대기열 해결"""
        if created:
            self._tag_customer(external_ref, user_id, strategy, note)

        summary = self._replay_and_settle(
            external_ref, user_id, note or f"matched by {strategy}"
        )
        return MatchResult(
            external_ref=external_ref,
            user_id=user_id,
            strategy=strategy,
            confidence=confidence,
            linked=created,
            replayed=summary.replayed if summary else 0,
        )

    # ------------------------------------------------------------------
    # admin commands
    # ------------------------------------------------------------------
    def manual_match(
        self, external_ref: str, user_id: str, note: Optional[str] = None
    ) -> MatchResult:
        """수동 매칭 - 전략을 건너뛰고 같은 유일성 검사 후 보류 이벤트 재처리"""
        external_ref = self._validate_ref(external_ref)
        self._require_user(user_id)
        _, created = self._link(
            external_ref, user_id, LinkSource.MANUAL.value, MatchConfidence.EXACT, note
        )
        return self._after_link(
            external_ref,
            user_id,
            LinkSource.MANUAL.value,
            MatchConfidence.EXACT,
            note,
            created,
        )

    def relink(self, external_ref: str, user_id: str, note: str) -> MatchResult:
        """명시적 재연결 - 기존 링크(참조/사용자 양쪽)를 superseded 로 비활성화 후 새 링크 생성"""
        external_ref = self._validate_ref(external_ref)
        self._require_user(user_id)

        with self.locks.hold(reference_key(external_ref), link_user_key(user_id)):
            try:
                current = self.identity_repo.get_active_link_by_ref(external_ref)
                if current is not None and current.user_id == user_id:
                    created = False
                    superseded: List[Dict[str, Any]] = []
                else:
                    owned = self.identity_repo.get_active_link_by_user(user_id)
                    superseded = []
                    for link in (current, owned):
                        if link is None:
                            continue
                        superseded.append(
                            {"link_id": link.id, "user_id": link.user_id, "external_ref": link.external_ref}
                        )
                        self.identity_repo.deactivate_link(link, "superseded")
                    self.identity_repo.create_link(
                        user_id,
                        external_ref,
                        LinkSource.RELINK.value,
                        MatchConfidence.EXACT.value,
                        note,
                    )
                    created = True
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise ConflictError(
                    "Concurrent link change detected",
                    details={"external_ref": external_ref, "user_id": user_id},
                ) from e
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            f"Relinked {external_ref} -> user {user_id} (superseded={superseded}, note={note})"
        )
        return self._after_link(
            external_ref, user_id, LinkSource.RELINK.value, MatchConfidence.EXACT, note, created
        )

    def abandon(self, external_ref: str, note: Optional[str] = None) -> UnresolvedReferenceEntry:
        """미해결 참조 포기 - 관련 보류 이벤트도 abandoned 처리"""
        external_ref = self._validate_ref(external_ref)
        with self.locks.hold(reference_key(external_ref)):
            try:
                entry = self.identity_repo.mark_abandoned(external_ref, note)
                if entry is None:
                    raise NotFoundError(
                        "No pending unresolved reference",
                        details={"external_ref": external_ref},
                    )
                abandoned_events = self.event_repo.abandon_for_ref(external_ref)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        logger.info(
            f"Abandoned unresolved reference {external_ref} ({abandoned_events} parked event(s))"
        )
        return UnresolvedReferenceEntry.model_validate(entry)

    def auto_match(self, external_ref: str) -> Union[MatchResult, Unresolved]:
        """저장된 컨텍스트 힌트로 전략 체인 재실행"""
        external_ref = self._validate_ref(external_ref)
        return self.resolve(external_ref, self._hints_from_pending(external_ref))

    def batch_match(self, external_refs: List[str]) -> BatchMatchReport:
        """참조별 독립 매칭 - 한 건의 실패가 배치를 중단하지 않음"""
        refs = list(dict.fromkeys(ref.strip() for ref in external_refs if ref and ref.strip()))
        workers = min(self.settings.BATCH_MATCH_WORKERS, len(refs))

        if workers > 1 and self.session_factory is not None and self.worker_factory is not None:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="batch-match") as pool:
                items = list(pool.map(self._batch_item_in_worker, refs))
        else:
            items = [self._batch_item(ref) for ref in refs]

        matched = sum(1 for item in items if item.success)
        logger.info(f"Batch match finished: {matched}/{len(items)} matched")
        return BatchMatchReport(
            total=len(items), matched=matched, failed=len(items) - matched, results=items
        )

    def _batch_item_in_worker(self, external_ref: str) -> BatchMatchItem:
        session = self.session_factory()
        try:
            worker = self.worker_factory(session)
            return worker._batch_item(external_ref)
        finally:
            session.close()

    def _batch_item(self, external_ref: str) -> BatchMatchItem:
        try:
            outcome = self.auto_match(external_ref)
        except BaseAPIException as e:
            return BatchMatchItem(
                external_ref=external_ref,
                success=False,
                reason=e.message,
                error_code=e.error_code,
                details=e.details,
            )
        except Exception as e:
            logger.exception(f"Batch match failed for {external_ref}")
            self.db.rollback()
            return BatchMatchItem(
                external_ref=external_ref,
                success=False,
                reason=str(e),
                error_code="INTERNAL_001",
            )

        if isinstance(outcome, MatchResult):
            return BatchMatchItem(
                external_ref=external_ref,
                success=True,
                user_id=outcome.user_id,
                strategy=outcome.strategy,
                confidence=outcome.confidence,
                replayed=outcome.replayed,
            )
        return BatchMatchItem(
            external_ref=external_ref,
            success=False,
            reason=outcome.reason,
            error_code=UNRESOLVED_ERROR_CODES.get(outcome.reason, "NOT_FOUND_001"),
            details={**outcome.details, "candidates": outcome.candidates},
        )

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def customer_info(self, external_ref: str) -> CustomerInfoResponse:
        external_ref = self._validate_ref(external_ref)
        customer = self.directory.fetch_customer(external_ref) if self.directory else None
        link = self.identity_repo.get_active_link_by_ref(external_ref)
        pending = self.identity_repo.get_pending(external_ref)

        metadata_user = None
        if customer is not None:
            embedded = customer.metadata.get(self.settings.PROCESSOR_METADATA_USER_KEY)
            if embedded:
                metadata_user = self.user_repo.get_user(embedded)

        return CustomerInfoResponse(
            external_ref=external_ref,
            customer=customer,
            active_link=CustomerLinkEntry.model_validate(link) if link else None,
            link_history=self.identity_repo.list_links_for_ref(external_ref),
            pending=UnresolvedReferenceEntry.model_validate(pending) if pending else None,
            metadata_user=metadata_user,
        )

    def user_info(self, user_id: str) -> UserInfoResponse:
        user = self.user_repo.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found", details={"user_id": user_id})
        link = self.identity_repo.get_active_link_by_user(user_id)
        return UserInfoResponse(
            user=user,
            active_link=CustomerLinkEntry.model_validate(link) if link else None,
            balance=self.ledger_repo.get_balance_response(user_id),
        )

    def search_users(self, query: str, limit: Optional[int] = None) -> UserSearchResponse:
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is required")
        cap = self.settings.USER_SEARCH_LIMIT
        limit = max(1, min(limit or cap, cap))
        return UserSearchResponse(query=query, users=self.user_repo.search(query, limit))

    def list_unresolved(
        self, status: Optional[str] = "pending", limit: int = 50, offset: int = 0
    ) -> List[UnresolvedReferenceEntry]:
        return self.identity_repo.list_unresolved(status, max(1, min(limit, 200)), max(0, offset))
