import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session, scoped_session

from creditsync.database.connection import SessionLocal

# 요청마다 미들웨어가 고유 값을 설정 (동기 핸들러는 스레드풀에서 같은 컨텍스트로 실행)
request_scope: ContextVar[Optional[str]] = ContextVar("db_request_scope", default=None)


def _current_scope() -> Any:
    # 요청 밖(스크립트, 테스트)에서는 스레드 단위
    return request_scope.get() or threading.get_ident()


# 서비스가 보관하는 세션 프록시 - 호출 시점의 요청 스코프 세션으로 위임
db_session = scoped_session(SessionLocal, scopefunc=_current_scope)


def release_request_session() -> None:
    """현재 스코프의 세션 정리 - 서비스가 commit 하지 않은 작업은 폐기"""
    db_session.remove()


def new_session() -> Session:
    """배치 작업자/스크립트용 독립 세션 (호출자가 close)"""
    return SessionLocal()


@contextmanager
def session_scope() -> Iterator[Session]:
    """스크립트용 (서비스가 커밋을 소유하므로 정리만 수행)"""
    db = new_session()
    try:
        yield db
    finally:
        if db.in_transaction():
            db.rollback()
        db.close()
