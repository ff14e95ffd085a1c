"""
관리자 정합성 서비스

운영자용 명령(수동 매칭, 재연결, 포기, 보너스 지급, 소비, 만료 실행)을
AdminCommandResult 로 감싸서 반환합니다.

예상된 실패(잔액 부족, 링크 충돌, 모호한 매칭, 미존재, 결제사 장애)는
success=False 와 error_code 로 표현하며, 라우터는 command_status() 로
4xx/503 상태 코드를 결정합니다.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import status
from pydantic import BaseModel

from creditsync.core.exceptions import BaseAPIException
from creditsync.repositories.warning_repository import WarningRepository
from creditsync.schemas.admin import AdminCommandResult, ReconciliationWarningEntry
from creditsync.schemas.credits import InsufficientBalance
from creditsync.schemas.identity import Unresolved
from creditsync.services.event_reconciler_service import ReconciliationServices
from creditsync.services.identity_matcher_service import UNRESOLVED_ERROR_CODES

logger = logging.getLogger(__name__)

INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"

# 결과 error_code -> HTTP 상태
ERROR_STATUS: Dict[str, int] = {
    "VALIDATION_001": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "NOT_FOUND_001": status.HTTP_404_NOT_FOUND,
    "CONFLICT_001": status.HTTP_409_CONFLICT,
    "MATCH_AMBIGUOUS": status.HTTP_409_CONFLICT,
    "MATCH_LOW_CONFIDENCE": status.HTTP_409_CONFLICT,
    INSUFFICIENT_BALANCE: status.HTTP_409_CONFLICT,
    "UPSTREAM_001": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def command_status(result: AdminCommandResult) -> int:
    if result.success:
        return status.HTTP_200_OK
    return ERROR_STATUS.get(result.error_code or "", status.HTTP_400_BAD_REQUEST)


def _payload(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_payload(item) for item in value]
    return value


class AdminReconciliationService:
    """관리자 정합성 명령을 담당하는 서비스"""

    def __init__(self, services: ReconciliationServices):
        self.services = services
        self.matcher = services.matcher
        self.ledger = services.ledger
        self.reconciler = services.reconciler
        self.warning_repo = WarningRepository(services.matcher.db)

    # ------------------------------------------------------------------
    # result helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _ok(data: Any) -> AdminCommandResult:
        return AdminCommandResult(success=True, data=_payload(data))

    @staticmethod
    def _failed(e: BaseAPIException) -> AdminCommandResult:
        return AdminCommandResult(
            success=False,
            reason=e.message,
            error_code=e.error_code,
            details=e.details,
        )

    @staticmethod
    def _unresolved(outcome: Unresolved) -> AdminCommandResult:
        return AdminCommandResult(
            success=False,
            reason=outcome.reason,
            error_code=UNRESOLVED_ERROR_CODES.get(outcome.reason, "NOT_FOUND_001"),
            details={**outcome.details, "candidates": outcome.candidates},
        )

    def _run(self, command: str, func, *args, **kwargs) -> AdminCommandResult:
        try:
            outcome = func(*args, **kwargs)
        except BaseAPIException as e:
            logger.warning(f"Admin {command} failed: {e.error_code} {e.message}")
            return self._failed(e)

        if isinstance(outcome, Unresolved):
            logger.info(f"Admin {command} left {outcome.external_ref} unresolved ({outcome.reason})")
            return self._unresolved(outcome)
        if isinstance(outcome, InsufficientBalance):
            return AdminCommandResult(
                success=False,
                reason=outcome.reason,
                error_code=INSUFFICIENT_BALANCE,
                details=outcome.model_dump(mode="json"),
            )
        logger.info(f"Admin {command} succeeded")
        return self._ok(outcome)

    # ------------------------------------------------------------------
    # identity commands
    # ------------------------------------------------------------------
    def manual_match(
        self, external_ref: str, user_id: str, note: Optional[str] = None
    ) -> AdminCommandResult:
        return self._run("manual-match", self.matcher.manual_match, external_ref, user_id, note)

    def batch_match(self, external_refs: List[str]) -> AdminCommandResult:
        return self._run("batch-match", self.matcher.batch_match, external_refs)

    def auto_match(self, external_ref: str) -> AdminCommandResult:
        return self._run("auto-match", self.matcher.auto_match, external_ref)

    def relink(self, external_ref: str, user_id: str, note: str) -> AdminCommandResult:
        return self._run("relink", self.matcher.relink, external_ref, user_id, note)

    def abandon(self, external_ref: str, note: Optional[str] = None) -> AdminCommandResult:
        return self._run("abandon", self.matcher.abandon, external_ref, note)

    # ------------------------------------------------------------------
    # ledger commands
    # ------------------------------------------------------------------
    def grant_bonus(
        self,
        user_id: str,
        amount: int,
        reason: str,
        dedupe_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AdminCommandResult:
        metadata = {**(metadata or {}), "source": "admin"}
        return self._run(
            "grant-bonus",
            self.ledger.grant_bonus,
            user_id,
            amount,
            reason,
            metadata=metadata,
            dedupe_key=dedupe_key,
        )

    def consume(self, user_id: str, amount: int, description: str) -> AdminCommandResult:
        return self._run(
            "consume",
            self.ledger.consume,
            user_id,
            amount,
            description,
            metadata={"source": "admin"},
        )

    def expire_grants(self, now: Optional[datetime] = None) -> AdminCommandResult:
        return self._run("expire-grants", self.ledger.expire_grants, now)

    # ------------------------------------------------------------------
    # reads (실패는 예외로 전달되어 예외 핸들러가 렌더링)
    # ------------------------------------------------------------------
    def integrity(self, user_id: str):
        return self.ledger.verify_integrity(user_id)

    def pending_unresolved(self, limit: int = 50, offset: int = 0):
        return self.matcher.list_unresolved("pending", limit, offset)

    def parked_events(
        self, status_filter: Optional[str], external_ref: Optional[str], limit: int, offset: int
    ):
        return self.reconciler.list_parked(status_filter, external_ref, limit, offset)

    def customer_info(self, external_ref: str):
        return self.matcher.customer_info(external_ref)

    def user_info(self, user_id: str):
        return self.matcher.user_info(user_id)

    def search_users(self, query: str, limit: Optional[int] = None):
        return self.matcher.search_users(query, limit)

    def warnings(
        self, limit: int = 50, kind: Optional[str] = None, user_id: Optional[str] = None
    ) -> List[ReconciliationWarningEntry]:
        return self.warning_repo.get_recent(max(1, min(limit, 200)), kind, user_id)
