from typing import List, Optional

from pydantic import BaseModel, Field


class UserEntry(BaseModel):
    """로컬 사용자 요약"""

    id: str = Field(..., description="사용자 ID")
    email: Optional[str] = Field(None, description="이메일")
    display_name: Optional[str] = Field(None, description="표시 이름")
    is_active: bool = Field(True, description="활성 여부")

    class Config:
        from_attributes = True


class UserSearchResponse(BaseModel):
    """사용자 검색 응답"""

    query: str = Field(..., description="검색어")
    users: List[UserEntry] = Field(default_factory=list, description="검색 결과")
