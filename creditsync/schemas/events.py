import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BillingEventKind(str, enum.Enum):
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    INVOICE_PAID = "invoice_paid"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class BillingEvent(BaseModel):
    """
    검증된 결제사 이벤트 (서명 검증 이후의 타입화된 형태)

    idempotency_key는 결제사가 부여한 이벤트 ID 입니다.
    """

    idempotency_key: str = Field(..., min_length=1)
    kind: BillingEventKind
    external_ref: str = Field(..., min_length=1, description="결제사 고객 참조")
    occurred_at: Optional[datetime] = None
    subscription_ref: Optional[str] = None
    subscription_status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    interval: Optional[str] = Field(None, description="month, year")
    unit_amount: Optional[int] = None
    invoice_ref: Optional[str] = None
    credits: Optional[int] = Field(None, description="일회성 구매 크레딧 (metadata.credits)")
    email_hint: Optional[str] = None
    name_hint: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReconcileStatus(str, enum.Enum):
    APPLIED = "applied"
    PARKED = "parked"
    IGNORED = "ignored"


class ReconcileOutcome(BaseModel):
    """
    이벤트 처리 결과

    최초 처리 결과가 멱등성 저장소에 그대로 보존되며, 재전송 시에는
    duplicate=True 로 같은 결과가 반환됩니다.
    """

    idempotency_key: str
    kind: str
    status: ReconcileStatus
    user_id: Optional[str] = None
    effect: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    duplicate: bool = False


class ParkedEventEntry(BaseModel):
    id: int
    event_key: str
    external_ref: str
    event_type: str
    payload: Dict[str, Any]
    status: str
    reason: str
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReplaySummary(BaseModel):
    external_ref: str
    replayed: int = 0
    skipped: int = 0
    failed: int = 0
    abandoned: int = Field(0, description="재처리 불가 (잘못된 원문)")
    deferred: int = Field(0, description="다른 작업자가 처리 중인 이벤트")
    event_keys: List[str] = Field(default_factory=list)
