from typing import Optional

from sqlalchemy import Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from creditsync.models.base import BaseModel


class User(BaseModel):
    """
    로컬 사용자 (인증 콜백에서 프로비저닝된 프로필)

    이메일은 고유하지 않을 수 있음 - 이메일 매칭 시 중복이면 모호성으로 처리
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_email", "email"),
        Index("idx_users_display_name", "display_name"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"
