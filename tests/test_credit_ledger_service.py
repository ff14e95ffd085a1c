import threading
from datetime import datetime, timedelta, timezone

import pytest

from creditsync.core.exceptions import ConflictError, NotFoundError, ValidationError
from creditsync.models.credits import CreditTransaction, SubscriptionGrant, TransactionType
from creditsync.models.internal import ReconciliationWarning
from creditsync.schemas.credits import ConsumeResult, InsufficientBalance
from creditsync.services.credit_ledger_service import (
    CreditLedgerService,
    subscription_period_key,
)


@pytest.fixture
def ledger(db, test_settings):
    return CreditLedgerService(db, settings=test_settings)


def _transactions(db, user_id):
    return (
        db.query(CreditTransaction)
        .filter(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.id)
        .all()
    )


class TestConsume:
    """크레딧 소비 테스트"""

    def test_consume_success(self, ledger, make_user):
        """잔액 내 소비 시 차감 후 잔액과 거래 ID 반환"""
        # Arrange
        make_user("u1")
        ledger.grant_bonus("u1", 100, "welcome")

        # Act
        result = ledger.consume("u1", 30, "image generation")

        # Assert
        assert isinstance(result, ConsumeResult)
        assert result.balance == 70
        assert result.consumed == 30
        balance = ledger.get_balance("u1")
        assert balance.balance == 70
        assert balance.total_recharged == 100
        assert balance.total_consumed == 30

    def test_consume_insufficient_balance_changes_nothing(self, ledger, make_user, db):
        """잔액 부족은 예외가 아닌 결과로 반환되고 아무것도 기록되지 않음"""
        # Arrange
        make_user("u1")
        ledger.grant_bonus("u1", 10, "welcome")

        # Act
        result = ledger.consume("u1", 11, "too much")

        # Assert
        assert isinstance(result, InsufficientBalance)
        assert result.balance == 10
        assert result.required == 11
        assert ledger.get_balance("u1").balance == 10
        assert len(_transactions(db, "u1")) == 1

    def test_consume_without_balance_row(self, ledger, make_user):
        """잔액 행이 없는 사용자는 잔액 0 으로 취급"""
        make_user("u1")

        result = ledger.consume("u1", 1, "first use")

        assert isinstance(result, InsufficientBalance)
        assert result.balance == 0

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_consume_rejects_invalid_amount(self, ledger, make_user, amount):
        """양의 정수가 아닌 소비량은 변경 전에 거부"""
        make_user("u1")

        with pytest.raises(ValidationError):
            ledger.consume("u1", amount, "invalid")

    def test_consume_unknown_user(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.consume("ghost", 1, "nobody")

    def test_consume_dedupe_key_returns_first_result(self, ledger, make_user, db):
        """같은 dedupe_key 재호출은 최초 결과를 그대로 반환"""
        make_user("u1")
        ledger.grant_bonus("u1", 50, "welcome")

        first = ledger.consume("u1", 20, "job", dedupe_key="job-1")
        second = ledger.consume("u1", 20, "job", dedupe_key="job-1")

        assert first == second
        assert ledger.get_balance("u1").balance == 30
        assert len(_transactions(db, "u1")) == 2

    def test_consume_dedupe_key_recorded_by_another_writer(self, ledger, make_user, db, monkeypatch):
        """사전 조회 이후 다른 작업자가 같은 dedupe_key 를 먼저 기록해도 그 결과를 반환"""
        # Arrange
        make_user("u1")
        ledger.grant_bonus("u1", 50, "welcome")
        first = ledger.consume("u1", 20, "job", dedupe_key="job-1")

        lookup = ledger.ledger_repo.find_by_dedupe_key
        calls = []

        def lookup_after_race(user_id, dedupe_key):
            calls.append(dedupe_key)
            # 첫 조회 시점에는 아직 기록이 보이지 않았던 상황
            if len(calls) == 1:
                return None
            return lookup(user_id, dedupe_key)

        monkeypatch.setattr(ledger.ledger_repo, "find_by_dedupe_key", lookup_after_race)

        # Act
        second = ledger.consume("u1", 20, "job", dedupe_key="job-1")

        # Assert
        assert second == first
        assert len(calls) == 2
        db.expire_all()
        assert ledger.get_balance("u1").balance == 30
        assert len(_transactions(db, "u1")) == 2

    def test_concurrent_consumption_never_goes_negative(self, session_factory, make_user, test_settings):
        """동시 소비: 잔액을 초과하는 요청은 정확히 잔액 부족으로 실패"""
        # Arrange
        make_user("u1")
        seed = session_factory()
        CreditLedgerService(seed, settings=test_settings).grant_bonus("u1", 100, "seed")
        seed.close()

        results = []
        results_lock = threading.Lock()

        def worker():
            session = session_factory()
            try:
                outcome = CreditLedgerService(session, settings=test_settings).consume(
                    "u1", 15, "parallel job"
                )
                with results_lock:
                    results.append(outcome)
            finally:
                session.close()

        # Act
        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        # Assert
        succeeded = [r for r in results if isinstance(r, ConsumeResult)]
        failed = [r for r in results if isinstance(r, InsufficientBalance)]
        assert len(succeeded) == 6
        assert len(failed) == 4
        check = session_factory()
        try:
            ledger = CreditLedgerService(check, settings=test_settings)
            assert ledger.get_balance("u1").balance == 10
            assert ledger.verify_integrity("u1").status == "OK"
        finally:
            check.close()


class TestCredit:
    """보너스/충전 테스트"""

    def test_grant_bonus_creates_balance_row(self, ledger, make_user, db):
        make_user("u1")

        result = ledger.grant_bonus("u1", 25, "promo")

        assert result.balance == 25
        assert result.added == 25
        transactions = _transactions(db, "u1")
        assert len(transactions) == 1
        assert transactions[0].type == TransactionType.BONUS.value
        assert transactions[0].balance_after == 25

    def test_grant_bonus_dedupe_is_idempotent(self, ledger, make_user):
        make_user("u1")

        first = ledger.grant_bonus("u1", 25, "promo", dedupe_key="promo-2024")
        second = ledger.grant_bonus("u1", 25, "promo", dedupe_key="promo-2024")

        assert first == second
        assert ledger.get_balance("u1").balance == 25

    def test_recharge_records_recharge_type(self, ledger, make_user, db):
        make_user("u1")

        ledger.recharge("u1", 300, "credit pack", dedupe_key="invoice_in_1")

        assert _transactions(db, "u1")[0].type == TransactionType.RECHARGE.value

    def test_dedupe_key_used_by_debit_conflicts(self, ledger, make_user):
        """소비에 사용된 dedupe_key 로 지급을 시도하면 충돌"""
        make_user("u1")
        ledger.grant_bonus("u1", 10, "seed")
        ledger.consume("u1", 5, "job", dedupe_key="shared-key")

        with pytest.raises(ConflictError):
            ledger.grant_bonus("u1", 5, "promo", dedupe_key="shared-key")

    def test_signup_bonus_once(self, ledger, make_user, test_settings):
        make_user("u1")

        ledger.grant_signup_bonus("u1")
        ledger.grant_signup_bonus("u1")

        assert ledger.get_balance("u1").balance == test_settings.SIGNUP_BONUS_CREDITS

    def test_get_transactions_newest_first(self, ledger, make_user):
        make_user("u1")
        ledger.grant_bonus("u1", 10, "first")
        ledger.grant_bonus("u1", 20, "second")
        ledger.consume("u1", 5, "third")

        page = ledger.get_transactions("u1", limit=2)

        assert [entry.description for entry in page.entries] == ["third", "second"]
        assert page.total_count == 3
        assert page.has_next is True
        assert page.balance == 25


class TestSubscriptionGrants:
    """구독 지급/소비 우선순위/만료 테스트"""

    def test_open_grant_once_per_period(self, ledger, make_user, period, db):
        """같은 (구독, 기간 시작) 은 한 번만 지급"""
        make_user("u1")
        start, end = period

        first = ledger.open_subscription_grant("u1", "sub_1", 120, start, end)
        second = ledger.open_subscription_grant(
            "u1", "sub_1", 120, start, end, transaction_type=TransactionType.RECHARGE
        )

        assert first.grant_id == second.grant_id
        assert first.transaction_id == second.transaction_id
        assert ledger.get_balance("u1").balance == 120
        assert _transactions(db, "u1")[0].dedupe_key == subscription_period_key("sub_1", start)

    def test_open_grant_for_other_user_conflicts(self, ledger, make_user, period):
        make_user("u1")
        make_user("u2")
        start, end = period
        ledger.open_subscription_grant("u1", "sub_1", 120, start, end)

        with pytest.raises(ConflictError):
            ledger.open_subscription_grant("u2", "sub_1", 120, start, end)

    def test_open_grant_invalid_window(self, ledger, make_user, period):
        make_user("u1")
        start, _ = period

        with pytest.raises(ValidationError):
            ledger.open_subscription_grant("u1", "sub_1", 120, start, start)

    def test_consume_draws_soonest_ending_grant_first(self, ledger, make_user, period, db):
        make_user("u1")
        start, end = period
        later = ledger.open_subscription_grant("u1", "sub_b", 50, start, end + timedelta(days=30))
        sooner = ledger.open_subscription_grant("u1", "sub_a", 30, start, end)

        result = ledger.consume("u1", 40, "job")

        assert [(d.grant_id, d.amount) for d in result.drawn_from_grants] == [
            (sooner.grant_id, 30),
            (later.grant_id, 10),
        ]
        assert db.get(SubscriptionGrant, sooner.grant_id).remaining_credits == 0
        assert db.get(SubscriptionGrant, later.grant_id).remaining_credits == 40

    def test_expire_recovers_remaining_credits(self, ledger, make_user, period, db):
        """만료 시 남은 크레딧만 회수하고 만료 거래를 기록"""
        # Arrange
        make_user("u1")
        start, end = period
        ledger.grant_bonus("u1", 50, "bonus")
        grant = ledger.open_subscription_grant("u1", "sub_1", 120, start, end)
        ledger.consume("u1", 20, "job")

        # Act
        result = ledger.expire_grants(now=end + timedelta(seconds=1))

        # Assert
        assert result.expired_count == 1
        assert result.recovered_credits == 100
        assert result.clamped_users == []
        assert ledger.get_balance("u1").balance == 50
        db.expire_all()
        assert db.get(SubscriptionGrant, grant.grant_id).status == "expired"
        assert _transactions(db, "u1")[-1].type == TransactionType.EXPIRY.value
        assert ledger.verify_integrity("u1").status == "OK"

    def test_expire_is_safe_to_repeat(self, ledger, make_user, period):
        make_user("u1")
        start, end = period
        ledger.open_subscription_grant("u1", "sub_1", 120, start, end)
        after = end + timedelta(minutes=5)

        first = ledger.expire_grants(now=after)
        second = ledger.expire_grants(now=after)

        assert first.recovered_credits == 120
        assert second.expired_count == 0
        assert ledger.get_balance("u1").balance == 0

    def test_expire_before_end_does_nothing(self, ledger, make_user, period):
        make_user("u1")
        start, end = period
        ledger.open_subscription_grant("u1", "sub_1", 120, start, end)

        result = ledger.expire_grants(now=end - timedelta(seconds=1))

        assert result.expired_count == 0
        assert ledger.get_balance("u1").balance == 120

    def test_expire_clamps_to_balance_and_warns(self, ledger, make_user, period, db):
        """회수량이 잔액보다 크면 잔액까지만 차감하고 경고 기록"""
        make_user("u1")
        start, end = period
        grant = ledger.open_subscription_grant("u1", "sub_1", 120, start, end)
        db.get(SubscriptionGrant, grant.grant_id).remaining_credits = 200
        db.commit()

        result = ledger.expire_grants(now=end + timedelta(days=1))

        assert result.recovered_credits == 120
        assert result.clamped_users == ["u1"]
        assert ledger.get_balance("u1").balance == 0
        warning = db.query(ReconciliationWarning).one()
        assert warning.kind == "EXPIRY_CLAMPED"
        assert warning.details["requested"] == 200

    def test_canceled_grant_keeps_remaining_until_end(self, ledger, make_user, period, db):
        """취소된 지급분은 기간 종료까지 사용 가능, 종료 후 남은 양만 회수"""
        make_user("u1")
        start, end = period
        grant = ledger.open_subscription_grant("u1", "sub_1", 120, start, end)

        canceled = ledger.cancel_subscription_grants("u1", "sub_1")
        ledger.consume("u1", 20, "job")
        result = ledger.expire_grants(now=end + timedelta(seconds=1))

        assert canceled == [grant.grant_id]
        assert result.recovered_credits == 100
        db.expire_all()
        stored = db.get(SubscriptionGrant, grant.grant_id)
        assert stored.status == "canceled"
        assert stored.remaining_credits == 0

    def test_adjust_grant_window(self, ledger, make_user, period, db):
        make_user("u1")
        start, end = period
        grant = ledger.open_subscription_grant("u1", "sub_1", 120, start, end)
        new_end = end + timedelta(days=3)

        grant_id = ledger.adjust_grant_window("u1", "sub_1", start, new_end)

        assert grant_id == grant.grant_id
        db.expire_all()
        stored = db.get(SubscriptionGrant, grant_id)
        assert stored.end_at.replace(tzinfo=timezone.utc) == new_end


class TestIntegrity:
    """원장 정합성 검증 테스트"""

    def test_integrity_ok(self, ledger, make_user):
        make_user("u1")
        ledger.grant_bonus("u1", 40, "seed")
        ledger.consume("u1", 15, "job")

        result = ledger.verify_integrity("u1")

        assert result.status == "OK"
        assert result.balance == result.computed_balance == result.log_balance == 25
        assert result.entry_count == 2

    def test_integrity_mismatch_records_warning(self, ledger, make_user, db):
        make_user("u1")
        ledger.grant_bonus("u1", 40, "seed")
        ledger.consume("u1", 15, "job")
        tampered = _transactions(db, "u1")[-1]
        tampered.balance_after = 99
        db.commit()

        result = ledger.verify_integrity("u1")

        assert result.status == "MISMATCH"
        assert result.entry_id == tampered.id
        assert db.query(ReconciliationWarning).filter_by(kind="INTEGRITY_MISMATCH").count() == 1

    def test_integrity_for_user_without_activity(self, ledger, make_user):
        make_user("u1")

        result = ledger.verify_integrity("u1")

        assert result.status == "OK"
        assert result.entry_count == 0


def test_subscription_period_key_normalizes_timezone():
    aware = datetime(2030, 1, 1, tzinfo=timezone.utc)
    naive = datetime(2030, 1, 1)

    assert subscription_period_key("sub_1", aware) == subscription_period_key("sub_1", naive)
    assert subscription_period_key("sub_1", aware) == f"subscription_sub_1_{int(aware.timestamp())}"
