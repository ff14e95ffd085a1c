"""
크레딧 조회 API 라우터

- GET /credits/{user_id}/balance: 현재 잔액
- GET /credits/{user_id}/transactions: 거래 내역 (최신순, 페이징)
- GET /credits/{user_id}/grants: 구독 지급 내역
"""

from typing import List, Optional

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Path, Query

from creditsync.containers import Container
from creditsync.core.security import require_admin_token
from creditsync.schemas.credits import (
    CreditBalanceResponse,
    CreditTransactionsResponse,
    SubscriptionGrantEntry,
)
from creditsync.services.credit_ledger_service import CreditLedgerService

router = APIRouter(
    prefix="/credits",
    tags=["credits"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/{user_id}/balance", response_model=CreditBalanceResponse)
@inject
def get_balance(
    user_id: str = Path(..., min_length=1),
    ledger_service: CreditLedgerService = Depends(
        Provide[Container.services.credit_ledger_service]
    ),
) -> CreditBalanceResponse:
    return ledger_service.get_balance(user_id)


@router.get("/{user_id}/transactions", response_model=CreditTransactionsResponse)
@inject
def get_transactions(
    user_id: str = Path(..., min_length=1),
    limit: int = Query(50, ge=1, le=100, description="페이지 크기"),
    offset: int = Query(0, ge=0, description="오프셋"),
    ledger_service: CreditLedgerService = Depends(
        Provide[Container.services.credit_ledger_service]
    ),
) -> CreditTransactionsResponse:
    return ledger_service.get_transactions(user_id, limit, offset)


@router.get("/{user_id}/grants", response_model=List[SubscriptionGrantEntry])
@inject
def get_grants(
    user_id: str = Path(..., min_length=1),
    status: Optional[str] = Query(None, description="active, expired, canceled"),
    ledger_service: CreditLedgerService = Depends(
        Provide[Container.services.credit_ledger_service]
    ),
) -> List[SubscriptionGrantEntry]:
    return ledger_service.get_grants(user_id, status)
