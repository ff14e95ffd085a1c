import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from sqlalchemy import event
from sqlalchemy.orm import sessionmaker

from creditsync.config import Settings
from creditsync.core.exceptions import UpstreamUnavailable
from creditsync.database.connection import build_engine
from creditsync.models import Base
from creditsync.models.user import User
from creditsync.schemas.identity import ProcessorCustomerInfo
from creditsync.services.event_reconciler_service import build_reconciliation_services


class FakeDirectory:
    """결제사 고객 디렉터리 테스트 더블"""

    def __init__(self):
        self.customers: Dict[str, ProcessorCustomerInfo] = {}
        self.tagged: List[Tuple[str, str, str]] = []
        self.cleared: List[Tuple[str, str]] = []
        self.lookups: List[str] = []
        self.unavailable = False

    def add_customer(self, ref: str, email: Optional[str] = None, name: Optional[str] = None, **metadata):
        self.customers[ref] = ProcessorCustomerInfo(
            id=ref, email=email, name=name, metadata=metadata
        )

    def fetch_customer(self, external_ref: str) -> Optional[ProcessorCustomerInfo]:
        self.lookups.append(external_ref)
        if self.unavailable:
            raise UpstreamUnavailable(details={"external_ref": external_ref})
        return self.customers.get(external_ref)

    def tag_customer(self, external_ref, user_id, linked_by, note=None):
        self.tagged.append((external_ref, user_id, linked_by))

    def clear_invalid_user(self, external_ref, stale_user_id):
        self.cleared.append((external_ref, stale_user_id))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'creditsync_test.db'}")

    @event.listens_for(engine, "connect")
    def _wal(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(user_id: str, email: Optional[str] = None, display_name: Optional[str] = None) -> str:
        db.add(User(id=user_id, email=email, display_name=display_name))
        db.commit()
        return user_id

    return _make


@pytest.fixture
def test_settings():
    return Settings(
        BATCH_MATCH_WORKERS=2,
        UPSTREAM_RETRY_ATTEMPTS=3,
        UPSTREAM_RETRY_BASE_DELAY_SECONDS=0.5,
        UPSTREAM_RETRY_MAX_DELAY_SECONDS=1.0,
    )


@pytest.fixture
def directory():
    return FakeDirectory()


@pytest.fixture
def services(db, directory, test_settings, session_factory):
    return build_reconciliation_services(
        db, directory=directory, settings=test_settings, session_factory=session_factory
    )


@pytest.fixture
def period():
    start = datetime(2030, 1, 1, tzinfo=timezone.utc)
    end = datetime(2030, 2, 1, tzinfo=timezone.utc)
    return start, end


@pytest.fixture
def race(session_factory, directory, test_settings):
    """workers 를 각자 독립 세션/서비스로 동시에 실행

    Returns:
        (results, errors): 스레드 순서대로의 반환값과 예외
    """

    def _race(*workers, timeout: float = 30.0):
        start = threading.Barrier(len(workers))
        results = [None] * len(workers)
        errors = [None] * len(workers)

        def run(index, worker):
            session = session_factory()
            try:
                scoped = build_reconciliation_services(
                    session, directory=directory, settings=test_settings
                )
                start.wait(timeout)
                results[index] = worker(scoped)
            except Exception as e:
                errors[index] = e
            finally:
                session.close()

        threads = [
            threading.Thread(target=run, args=(index, worker), daemon=True)
            for index, worker in enumerate(workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout)
        assert not any(thread.is_alive() for thread in threads), "worker did not finish"
        return results, errors

    return _race
