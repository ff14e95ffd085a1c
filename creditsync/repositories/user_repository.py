from typing import List, Optional

from sqlalchemy import func, literal, or_
from sqlalchemy.orm import Session

from creditsync.models.user import User as UserModel
from creditsync.schemas.user import UserEntry
from creditsync.repositories.base import BaseRepository


class UserRepository(BaseRepository[UserModel, UserEntry]):
    """사용자 리포지토리 - 읽기 전용 (프로필 생성은 인증 콜백의 책임)"""

    def __init__(self, db: Session):
        super().__init__(UserModel, UserEntry, db)

    def exists(self, user_id: str) -> bool:
        return self.db.get(self.model_class, user_id) is not None

    def find_by_email(self, email: str) -> List[UserEntry]:
        """이메일 일치 사용자 전체 조회 (대소문자 무시, 중복 가능)"""
        normalized = email.strip().lower()
        if not normalized:
            return []
        users = (
            self.db.query(self.model_class)
            .filter(func.lower(self.model_class.email) == normalized)
            .order_by(self.model_class.id)
            .all()
        )
        return self._to_schemas(users)

    def find_name_candidates(self, normalized_name: str) -> List[UserEntry]:
        """
        표시 이름 후보 조회 (양방향 포함 관계)

        DB 단계에서는 소문자 포함 여부로 1차 필터링만 하고,
        공백 정규화 후 최종 판정은 매칭 전략에서 수행합니다.
        """
        lowered_name = func.lower(func.trim(self.model_class.display_name))
        users = (
            self.db.query(self.model_class)
            .filter(self.model_class.display_name.isnot(None))
            .filter(
                or_(
                    lowered_name.contains(normalized_name, autoescape=True),
                    literal(normalized_name).contains(lowered_name),
                )
            )
            .order_by(self.model_class.id)
            .limit(50)
            .all()
        )
        return self._to_schemas(users)

    def search(self, query: str, limit: int = 20) -> List[UserEntry]:
        """이메일/표시 이름 부분 일치 검색"""
        pattern = query.strip().lower()
        users = (
            self.db.query(self.model_class)
            .filter(
                or_(
                    func.lower(self.model_class.email).contains(pattern, autoescape=True),
                    func.lower(self.model_class.display_name).contains(
                        pattern, autoescape=True
                    ),
                    self.model_class.id == query.strip(),
                )
            )
            .order_by(self.model_class.email)
            .limit(limit)
            .all()
        )
        return self._to_schemas(users)

    def get_user(self, user_id: str) -> Optional[UserEntry]:
        return self.get_by_id(user_id)
