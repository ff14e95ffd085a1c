from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ManualMatchRequest(BaseModel):
    external_ref: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=500)


class BatchMatchRequest(BaseModel):
    external_refs: List[str] = Field(..., min_length=1, max_length=500)


class AutoMatchRequest(BaseModel):
    external_ref: str = Field(..., min_length=1)


class RelinkRequest(BaseModel):
    external_ref: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    note: str = Field(..., min_length=1, max_length=500, description="재연결 사유 (감사 기록)")


class AbandonRequest(BaseModel):
    external_ref: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=500)


class AdminCommandResult(BaseModel):
    """
    관리자 명령 결과

    예상된 실패(잔액 부족, 충돌, 모호한 매칭, 미존재)는 success=False 와
    error_code/reason 으로 표현되며 HTTP 500으로 노출되지 않습니다.
    """

    success: bool
    data: Optional[Any] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ReconciliationWarningEntry(BaseModel):
    id: int
    kind: str
    user_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
