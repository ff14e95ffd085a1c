import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from creditsync.schemas.credits import CreditBalanceResponse
from creditsync.schemas.user import UserEntry


class MatchConfidence(str, enum.Enum):
    EXACT = "exact"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ContextHints(BaseModel):
    """이벤트에서 추출한 매칭 힌트 (진단용 스냅샷으로도 저장)"""

    email: Optional[str] = None
    name: Optional[str] = None
    subscription_ref: Optional[str] = None
    metadata_user_id: Optional[str] = Field(
        None, description="구독/인보이스 메타데이터에 포함된 로컬 사용자 ID"
    )
    event_type: Optional[str] = None
    observed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MatchResult(BaseModel):
    """매칭 성공 결과"""

    external_ref: str
    user_id: str
    strategy: str = Field(..., description="direct, metadata, email, fuzzy_name, manual, relink")
    confidence: MatchConfidence
    linked: bool = Field(False, description="이번 호출에서 새 링크가 생성되었는지")
    replayed: int = Field(0, description="재처리된 보류 이벤트 수")


class Unresolved(BaseModel):
    """모든 전략 실패 (대기열에 기록됨)"""

    external_ref: str
    reason: str = Field(..., description="unresolved, ambiguous, conflict, low_confidence")
    candidates: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class CustomerLinkEntry(BaseModel):
    id: int
    user_id: str
    external_ref: str
    is_active: bool
    linked_by: str
    confidence: str
    note: Optional[str] = None
    created_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None

    class Config:
        from_attributes = True


class UnresolvedReferenceEntry(BaseModel):
    id: int
    external_ref: str
    status: str
    reason: str
    context: Optional[Dict[str, Any]] = None
    candidates: Optional[List[Any]] = None
    occurrences: int = 1
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_user_id: Optional[str] = None
    resolution_note: Optional[str] = None

    class Config:
        from_attributes = True


class ProcessorCustomerInfo(BaseModel):
    """결제사 고객 정보 (진단용)"""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created: Optional[datetime] = None
    deleted: bool = False


class CustomerInfoResponse(BaseModel):
    """결제사 고객 참조 진단 정보"""

    external_ref: str
    customer: Optional[ProcessorCustomerInfo] = None
    active_link: Optional[CustomerLinkEntry] = None
    link_history: List[CustomerLinkEntry] = Field(default_factory=list)
    pending: Optional[UnresolvedReferenceEntry] = None
    metadata_user: Optional[UserEntry] = None


class UserInfoResponse(BaseModel):
    """로컬 사용자 진단 정보"""

    user: UserEntry
    active_link: Optional[CustomerLinkEntry] = None
    balance: CreditBalanceResponse


class BatchMatchItem(BaseModel):
    external_ref: str
    success: bool
    user_id: Optional[str] = None
    strategy: Optional[str] = None
    confidence: Optional[MatchConfidence] = None
    replayed: int = 0
    reason: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class BatchMatchReport(BaseModel):
    total: int = 0
    matched: int = 0
    failed: int = 0
    results: List[BatchMatchItem] = Field(default_factory=list)
