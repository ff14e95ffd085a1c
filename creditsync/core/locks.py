"""
Per-key in-process serialization.

Ledger mutations are serialized per user and link creation per external
reference and per user. The database row lock / conditional update still
guards cross-process writers; these locks keep one worker process from
racing itself and let unrelated keys proceed independently.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Tuple


class KeyedLockRegistry:
    """키별 재진입 락 레지스트리 (사용하지 않는 키는 자동 정리)"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._holders: Dict[str, int] = {}

    def _acquire_entry(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._holders[key] = self._holders.get(key, 0) + 1
            return lock

    def _release_entry(self, key: str) -> None:
        with self._guard:
            remaining = self._holders.get(key, 1) - 1
            if remaining <= 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._holders[key] = remaining

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """여러 키를 정렬된 순서로 획득 (데드락 방지)"""
        ordered: List[str] = sorted(set(keys))
        acquired: List[Tuple[str, threading.RLock]] = []
        try:
            for key in ordered:
                lock = self._acquire_entry(key)
                lock.acquire()
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._release_entry(key)

    @contextmanager
    def try_hold(self, key: str) -> Iterator[bool]:
        """키를 기다리지 않고 획득 시도 (다른 스레드가 보유 중이면 False)

        같은 스레드가 이미 보유한 키는 재진입으로 획득됩니다.
        """
        lock = self._acquire_entry(key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._release_entry(key)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


def user_key(user_id: str) -> str:
    return f"user:{user_id}"


def link_user_key(user_id: str) -> str:
    return f"link-user:{user_id}"


def reference_key(external_ref: str) -> str:
    return f"ref:{external_ref}"


def event_key(idempotency_key: str) -> str:
    return f"event:{idempotency_key}"


# 프로세스 전역 레지스트리
ledger_locks = KeyedLockRegistry()
