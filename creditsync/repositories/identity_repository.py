"""
식별 매핑 리포지토리

고객 링크(customer_links)와 미해결 참조 대기열(unresolved_references)에 대한
데이터 접근만 담당합니다. 잠금과 충돌 판정은 매칭 서비스의 책임입니다.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from creditsync.models.identity import (
    CustomerLink as CustomerLinkModel,
    UnresolvedReference as UnresolvedReferenceModel,
    UnresolvedStatus,
)
from creditsync.schemas.identity import CustomerLinkEntry, UnresolvedReferenceEntry
from creditsync.repositories.base import BaseRepository
from creditsync.utils.timezone_utils import utc_now


class IdentityRepository(BaseRepository[CustomerLinkModel, CustomerLinkEntry]):
    def __init__(self, db: Session):
        super().__init__(CustomerLinkModel, CustomerLinkEntry, db)

    # ------------------------------------------------------------------
    # Customer links
    # ------------------------------------------------------------------
    def get_active_link_by_ref(self, external_ref: str) -> Optional[CustomerLinkModel]:
        return (
            self.db.query(CustomerLinkModel)
            .filter(
                CustomerLinkModel.external_ref == external_ref,
                CustomerLinkModel.is_active.is_(True),
            )
            .first()
        )

    def get_active_link_by_user(self, user_id: str) -> Optional[CustomerLinkModel]:
        return (
            self.db.query(CustomerLinkModel)
            .filter(
                CustomerLinkModel.user_id == user_id,
                CustomerLinkModel.is_active.is_(True),
            )
            .first()
        )

    def list_links_for_ref(self, external_ref: str) -> List[CustomerLinkEntry]:
        """링크 이력 (비활성 포함, 최신순)"""
        links = (
            self.db.query(CustomerLinkModel)
            .filter(CustomerLinkModel.external_ref == external_ref)
            .order_by(desc(CustomerLinkModel.id))
            .all()
        )
        return self._to_schemas(links)

    def create_link(
        self,
        user_id: str,
        external_ref: str,
        linked_by: str,
        confidence: str,
        note: Optional[str] = None,
    ) -> CustomerLinkModel:
        """활성 링크 생성 - 양방향 유니크 인덱스 위반 시 IntegrityError 전파"""
        link = CustomerLinkModel(
            user_id=user_id,
            external_ref=external_ref,
            is_active=True,
            linked_by=linked_by,
            confidence=confidence,
            note=note,
        )
        return self.add(link)

    def deactivate_link(self, link: CustomerLinkModel, reason: str) -> CustomerLinkModel:
        """링크 비활성화 (삭제하지 않음)"""
        link.is_active = False
        link.deactivated_at = utc_now()
        link.deactivation_reason = reason
        self.db.flush()
        return link

    # ------------------------------------------------------------------
    # Unresolved references
    # ------------------------------------------------------------------
    def get_pending(self, external_ref: str) -> Optional[UnresolvedReferenceModel]:
        return (
            self.db.query(UnresolvedReferenceModel)
            .filter(
                UnresolvedReferenceModel.external_ref == external_ref,
                UnresolvedReferenceModel.status == UnresolvedStatus.PENDING.value,
            )
            .first()
        )

    def upsert_pending(
        self,
        external_ref: str,
        reason: str,
        context: Dict[str, Any],
        candidates: Optional[List[Any]] = None,
        seen_at: Optional[datetime] = None,
    ) -> UnresolvedReferenceModel:
        """
        미해결 참조를 멱등하게 enqueue

        이미 pending 항목이 있으면 발생 횟수를 증가시키고 컨텍스트를 병합합니다.
        새로 관측된 값이 비어 있으면 기존 값을 유지합니다.
        """
        seen_at = seen_at or utc_now()
        entry = self.get_pending(external_ref)
        if entry is None:
            entry = UnresolvedReferenceModel(
                external_ref=external_ref,
                status=UnresolvedStatus.PENDING.value,
                reason=reason,
                context=context,
                candidates=candidates or [],
                occurrences=1,
                last_seen_at=seen_at,
            )
            return self.add(entry)

        merged = dict(entry.context or {})
        merged.update({k: v for k, v in context.items() if v not in (None, "", {}, [])})
        entry.context = merged
        entry.reason = reason
        if candidates:
            entry.candidates = candidates
        entry.occurrences = (entry.occurrences or 0) + 1
        entry.last_seen_at = seen_at
        self.db.flush()
        return entry

    def mark_resolved(
        self, external_ref: str, user_id: str, note: Optional[str] = None
    ) -> Optional[UnresolvedReferenceModel]:
        entry = self.get_pending(external_ref)
        if entry is None:
            return None
        entry.status = UnresolvedStatus.RESOLVED.value
        entry.resolved_at = utc_now()
        entry.resolved_user_id = user_id
        entry.resolution_note = note
        self.db.flush()
        return entry

    def mark_abandoned(
        self, external_ref: str, note: Optional[str] = None
    ) -> Optional[UnresolvedReferenceModel]:
        entry = self.get_pending(external_ref)
        if entry is None:
            return None
        entry.status = UnresolvedStatus.ABANDONED.value
        entry.resolved_at = utc_now()
        entry.resolution_note = note
        self.db.flush()
        return entry

    def list_unresolved(
        self, status: Optional[str] = UnresolvedStatus.PENDING.value, limit: int = 50, offset: int = 0
    ) -> List[UnresolvedReferenceEntry]:
        query = self.db.query(UnresolvedReferenceModel)
        if status:
            query = query.filter(UnresolvedReferenceModel.status == status)
        entries = (
            query.order_by(desc(UnresolvedReferenceModel.last_seen_at), desc(UnresolvedReferenceModel.id))
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [UnresolvedReferenceEntry.model_validate(entry) for entry in entries]
