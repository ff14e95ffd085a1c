"""
정합성 관리자 API 라우터

조회 엔드포인트:
- GET /admin/reconciliation/pending-unresolved: 미해결 참조 대기열
- GET /admin/reconciliation/parked-events: 보류 이벤트 목록
- GET /admin/reconciliation/customer-info/{external_ref}: 결제사 고객 + 링크 상태
- GET /admin/reconciliation/user-info/{user_id}: 사용자 + 활성 링크 + 잔액
- GET /admin/reconciliation/search-users: 이메일/이름 검색
- GET /admin/reconciliation/warnings: 정합성 경고 기록
- GET /admin/reconciliation/integrity/{user_id}: 원장 정합성 검증

명령 엔드포인트 (AdminCommandResult 반환, 예상된 실패는 4xx/503):
- POST manual-match, batch-match, auto-match, relink, abandon
- POST grant-bonus, consume, expire-grants

인증: ADMIN_API_TOKEN Bearer 토큰
"""

from typing import List, Optional

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import JSONResponse

from creditsync.containers import Container
from creditsync.core.security import require_admin_token
from creditsync.schemas.admin import (
    AbandonRequest,
    AdminCommandResult,
    AutoMatchRequest,
    BatchMatchRequest,
    ManualMatchRequest,
    ReconciliationWarningEntry,
    RelinkRequest,
)
from creditsync.schemas.credits import (
    ConsumeRequest,
    ExpireGrantsRequest,
    GrantBonusRequest,
    IntegrityCheckResponse,
)
from creditsync.schemas.events import ParkedEventEntry
from creditsync.schemas.identity import (
    CustomerInfoResponse,
    UnresolvedReferenceEntry,
    UserInfoResponse,
)
from creditsync.schemas.user import UserSearchResponse
from creditsync.services.admin_reconciliation_service import (
    AdminReconciliationService,
    command_status,
)

router = APIRouter(
    prefix="/admin/reconciliation",
    tags=["admin-reconciliation"],
    dependencies=[Depends(require_admin_token)],
)


def _respond(result: AdminCommandResult) -> JSONResponse:
    return JSONResponse(
        status_code=command_status(result), content=result.model_dump(mode="json")
    )


# ----------------------------------------------------------------------
# reads
# ----------------------------------------------------------------------
@router.get("/pending-unresolved", response_model=List[UnresolvedReferenceEntry])
@inject
def get_pending_unresolved(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    """매칭 대기 중인 결제사 고객 참조 목록 (오래된 순)"""
    return admin_service.pending_unresolved(limit, offset)


@router.get("/parked-events", response_model=List[ParkedEventEntry])
@inject
def get_parked_events(
    status: Optional[str] = Query("pending", description="pending, applied, abandoned"),
    external_ref: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return admin_service.parked_events(status, external_ref, limit, offset)


@router.get("/customer-info/{external_ref}", response_model=CustomerInfoResponse)
@inject
def get_customer_info(
    external_ref: str = Path(..., min_length=1),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    """결제사 고객 레코드, 활성 링크, 링크 이력, 대기열 상태"""
    return admin_service.customer_info(external_ref)


@router.get("/user-info/{user_id}", response_model=UserInfoResponse)
@inject
def get_user_info(
    user_id: str = Path(..., min_length=1),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return admin_service.user_info(user_id)


@router.get("/search-users", response_model=UserSearchResponse)
@inject
def search_users(
    query: str = Query(..., min_length=1, description="이메일 또는 표시 이름 일부"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return admin_service.search_users(query, limit)


@router.get("/warnings", response_model=List[ReconciliationWarningEntry])
@inject
def get_warnings(
    limit: int = Query(50, ge=1, le=200),
    kind: Optional[str] = Query(None, description="EXPIRY_CLAMPED, REPLAY_FAILED, ..."),
    user_id: Optional[str] = Query(None),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return admin_service.warnings(limit, kind, user_id)


@router.get("/integrity/{user_id}", response_model=IntegrityCheckResponse)
@inject
def get_integrity(
    user_id: str = Path(..., min_length=1),
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    """거래 내역 누적합과 잔액 행 비교 (불일치 시 경고 기록)"""
    return admin_service.integrity(user_id)


# ----------------------------------------------------------------------
# identity commands
# ----------------------------------------------------------------------
@router.post("/manual-match", response_model=AdminCommandResult)
@inject
def manual_match(
    request: ManualMatchRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return _respond(
        admin_service.manual_match(request.external_ref, request.user_id, request.note)
    )


@router.post("/batch-match", response_model=AdminCommandResult)
@inject
def batch_match(
    request: BatchMatchRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    """참조별 독립 매칭 (개별 실패는 결과 항목에 기록)"""
    return _respond(admin_service.batch_match(request.external_refs))


@router.post("/auto-match", response_model=AdminCommandResult)
@inject
def auto_match(
    request: AutoMatchRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return _respond(admin_service.auto_match(request.external_ref))


@router.post("/relink", response_model=AdminCommandResult)
@inject
def relink(
    request: RelinkRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    """기존 링크를 superseded 로 비활성화하고 새 링크 생성"""
    return _respond(
        admin_service.relink(request.external_ref, request.user_id, request.note)
    )


@router.post("/abandon", response_model=AdminCommandResult)
@inject
def abandon(
    request: AbandonRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return _respond(admin_service.abandon(request.external_ref, request.note))


# ----------------------------------------------------------------------
# ledger commands
# ----------------------------------------------------------------------
@router.post("/grant-bonus", response_model=AdminCommandResult)
@inject
def grant_bonus(
    request: GrantBonusRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return _respond(
        admin_service.grant_bonus(
            request.user_id,
            request.amount,
            request.reason,
            dedupe_key=request.dedupe_key,
            metadata=request.metadata,
        )
    )


@router.post("/consume", response_model=AdminCommandResult)
@inject
def consume(
    request: ConsumeRequest,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    """잔액 부족은 409 + INSUFFICIENT_BALANCE"""
    return _respond(
        admin_service.consume(request.user_id, request.amount, request.description)
    )


@router.post("/expire-grants", response_model=AdminCommandResult)
@inject
def expire_grants(
    request: Optional[ExpireGrantsRequest] = None,
    admin_service: AdminReconciliationService = Depends(
        Provide[Container.services.admin_reconciliation_service]
    ),
):
    return _respond(admin_service.expire_grants(request.now if request else None))
