from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field


class CreditBalanceResponse(BaseModel):
    """크레딧 잔액 응답"""

    user_id: str = Field(..., description="사용자 ID")
    balance: int = Field(0, description="현재 잔액")
    total_recharged: int = Field(0, description="누적 충전량")
    total_consumed: int = Field(0, description="누적 소비량")

    class Config:
        from_attributes = True


class CreditTransactionEntry(BaseModel):
    """크레딧 거래 내역 항목"""

    id: int = Field(..., description="거래 ID")
    user_id: str = Field(..., description="사용자 ID")
    amount: int = Field(..., description="부호 있는 변동량")
    balance_after: int = Field(..., description="거래 후 잔액")
    type: str = Field(..., description="거래 유형 (consumption, bonus, recharge, expiry)")
    description: str = Field("", description="거래 설명")
    metadata: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("meta", "metadata"),
        description="거래 메타데이터",
    )
    grant_id: Optional[int] = Field(None, description="연결된 구독 지급 ID")
    dedupe_key: Optional[str] = Field(None, description="멱등 처리 키")
    created_at: Optional[datetime] = Field(None, description="생성 시각")

    class Config:
        from_attributes = True


class CreditTransactionsResponse(BaseModel):
    """크레딧 거래 내역 조회 응답 (최신순)"""

    user_id: str
    balance: int
    entries: List[CreditTransactionEntry] = Field(default_factory=list)
    total_count: int = 0
    has_next: bool = False


class SubscriptionGrantEntry(BaseModel):
    """구독 기간별 크레딧 지급 항목"""

    id: int
    user_id: str
    external_subscription_ref: str
    total_credits: int
    remaining_credits: int
    start_at: datetime
    end_at: datetime
    status: str

    class Config:
        from_attributes = True


class GrantDraw(BaseModel):
    """소비 시 구독 지급분에서 차감된 내역"""

    grant_id: int
    amount: int


class ConsumeResult(BaseModel):
    """소비 성공 결과"""

    success: Literal[True] = True
    user_id: str
    balance: int = Field(..., description="소비 후 잔액")
    consumed: int = Field(..., description="소비량")
    transaction_id: int
    drawn_from_grants: List[GrantDraw] = Field(default_factory=list)


class InsufficientBalance(BaseModel):
    """잔액 부족 결과 (예외가 아닌 정상 비즈니스 결과)"""

    success: Literal[False] = False
    reason: Literal["insufficient_balance"] = "insufficient_balance"
    user_id: str
    balance: int = Field(..., description="현재 잔액")
    required: int = Field(..., description="요청한 소비량")


class LedgerCreditResult(BaseModel):
    """보너스/충전 결과 (중복 키 재호출 시 최초 결과와 동일)"""

    success: Literal[True] = True
    user_id: str
    balance: int = Field(..., description="적용 후 잔액")
    added: int = Field(..., description="추가된 크레딧")
    transaction_id: int


class SubscriptionGrantResult(BaseModel):
    """구독 기간 지급 결과"""

    grant_id: int
    user_id: str
    balance: int
    added: int
    transaction_id: int


class ExpirySweepResult(BaseModel):
    """만료 스윕 결과"""

    expired_count: int = 0
    recovered_credits: int = 0
    clamped_users: List[str] = Field(default_factory=list)
    failed_users: List[str] = Field(default_factory=list)


class IntegrityCheckResponse(BaseModel):
    """원장 정합성 검증 응답"""

    status: str = Field(..., description="검증 상태 (OK, MISMATCH)")
    user_id: str
    balance: int = 0
    computed_balance: int = Field(0, description="total_recharged - total_consumed")
    log_balance: int = Field(0, description="거래 내역 누적합")
    entry_count: int = 0
    error: Optional[str] = None
    entry_id: Optional[int] = Field(None, description="불일치가 처음 발견된 거래 ID")


class ConsumeRequest(BaseModel):
    """소비 요청"""

    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="소비할 크레딧 (양의 정수)")
    description: str = Field(..., min_length=1, max_length=255)


class GrantBonusRequest(BaseModel):
    """보너스 지급 요청"""

    user_id: str = Field(..., min_length=1)
    amount: int = Field(..., description="지급할 크레딧 (양의 정수)")
    reason: str = Field(..., min_length=1, max_length=255)
    dedupe_key: Optional[str] = Field(None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None


class ExpireGrantsRequest(BaseModel):
    """만료 스윕 요청 (now 미지정 시 현재 시각)"""

    now: Optional[datetime] = None
