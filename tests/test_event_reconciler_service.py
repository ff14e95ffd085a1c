import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from creditsync.core.exceptions import ConflictError
from creditsync.models.credits import CreditTransaction, SubscriptionGrant
from creditsync.models.events import AppliedEventKey, ParkedEvent
from creditsync.models.identity import UnresolvedReference
from creditsync.models.internal import ReconciliationWarning
from creditsync.schemas.events import BillingEvent, BillingEventKind, ReconcileStatus
from creditsync.services.event_reconciler_service import EventReconcilerService


@pytest.fixture
def reconciler(services):
    return services.reconciler


@pytest.fixture
def make_event(period):
    start, end = period

    def _make(key, kind=BillingEventKind.SUBSCRIPTION_ACTIVATED, ref="cus_1", **overrides):
        fields = dict(
            idempotency_key=key,
            kind=kind,
            external_ref=ref,
            subscription_ref="sub_1",
            subscription_status="active",
            period_start=start,
            period_end=end,
            interval="month",
            unit_amount=1690,
        )
        fields.update(overrides)
        return BillingEvent(**fields)

    return _make


def _balance(services, user_id):
    return services.ledger.get_balance(user_id).balance


class TestHandleEvent:
    """이벤트 적용/멱등성 테스트"""

    def test_activation_grants_plan_credits(self, reconciler, services, make_user, make_event):
        # Arrange
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")

        # Act
        outcome = reconciler.handle_event(make_event("evt_1"))

        # Assert
        assert outcome.status == ReconcileStatus.APPLIED
        assert outcome.user_id == "u1"
        assert outcome.effect["action"] == "grant"
        assert outcome.effect["credits"] == 120
        assert _balance(services, "u1") == 120

    def test_redelivery_returns_recorded_result(self, reconciler, services, make_user, make_event, db):
        """같은 이벤트 재전송은 효과 없이 최초 결과 반환"""
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")
        event = make_event("evt_1")

        first = reconciler.handle_event(event)
        second = reconciler.handle_event(event)

        assert second.duplicate is True
        assert second.effect == first.effect
        assert _balance(services, "u1") == 120
        assert db.query(CreditTransaction).count() == 1
        assert db.query(AppliedEventKey).count() == 1

    def test_activation_and_invoice_credit_period_once(self, reconciler, services, make_user, make_event):
        """같은 기간의 활성화 + 결제 완료 인보이스는 한 번만 지급"""
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")

        reconciler.handle_event(make_event("evt_act"))
        invoice = reconciler.handle_event(
            make_event("evt_inv", kind=BillingEventKind.INVOICE_PAID, invoice_ref="in_1")
        )

        assert invoice.status == ReconcileStatus.APPLIED
        assert _balance(services, "u1") == 120

    def test_yearly_plan_by_unit_amount(self, reconciler, services, make_user, make_event):
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")

        reconciler.handle_event(make_event("evt_1", unit_amount=11880, interval="year"))

        assert _balance(services, "u1") == 1800

    def test_one_off_invoice_recharges_credits(self, reconciler, services, make_user, make_event, db):
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")

        outcome = reconciler.handle_event(
            make_event(
                "evt_buy",
                kind=BillingEventKind.INVOICE_PAID,
                subscription_ref=None,
                period_start=None,
                period_end=None,
                invoice_ref="in_9",
                credits=300,
            )
        )

        assert outcome.effect["action"] == "recharge"
        assert _balance(services, "u1") == 300
        assert db.query(CreditTransaction).one().dedupe_key == "invoice_in_9"

    def test_cancellation_marks_grants_canceled(self, reconciler, services, make_user, make_event, db):
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")
        reconciler.handle_event(make_event("evt_act"))

        outcome = reconciler.handle_event(
            make_event("evt_del", kind=BillingEventKind.SUBSCRIPTION_CANCELED)
        )

        assert outcome.effect["action"] == "cancel"
        assert db.query(SubscriptionGrant).one().status == "canceled"
        assert _balance(services, "u1") == 120

    def test_update_moves_window_end(self, reconciler, services, make_user, make_event, period, db):
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")
        reconciler.handle_event(make_event("evt_act"))
        start, end = period

        outcome = reconciler.handle_event(
            make_event(
                "evt_upd",
                kind=BillingEventKind.SUBSCRIPTION_UPDATED,
                period_end=end + timedelta(days=2),
            )
        )

        assert outcome.effect["action"] == "adjust"
        assert _balance(services, "u1") == 120

    def test_update_to_unpaid_cancels(self, reconciler, services, make_user, make_event):
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")
        reconciler.handle_event(make_event("evt_act"))

        outcome = reconciler.handle_event(
            make_event(
                "evt_upd",
                kind=BillingEventKind.SUBSCRIPTION_UPDATED,
                subscription_status="unpaid",
            )
        )

        assert outcome.effect["action"] == "cancel"

    def test_metadata_user_hint_from_event(self, reconciler, services, make_user, make_event):
        make_user("u42")

        outcome = reconciler.handle_event(make_event("evt_1", metadata={"userId": "u42"}))

        assert outcome.status == ReconcileStatus.APPLIED
        assert outcome.user_id == "u42"


class TestParkAndReplay:
    """매칭 실패 보류 및 재처리 테스트"""

    def test_unmatched_event_is_parked(self, reconciler, make_event, db):
        outcome = reconciler.handle_event(make_event("evt_1", ref="cus_unknown"))

        assert outcome.status == ReconcileStatus.PARKED
        assert outcome.reason == "unresolved"
        parked = db.query(ParkedEvent).one()
        assert parked.status == "pending"
        assert parked.payload["idempotency_key"] == "evt_1"
        assert db.query(AppliedEventKey).count() == 0
        assert db.query(UnresolvedReference).one().status == "pending"

    def test_manual_match_replays_parked_events_in_order(
        self, reconciler, services, make_user, make_event, db
    ):
        """수동 매칭 후 보류 이벤트가 도착 순서대로 정확히 한 번 적용"""
        # Arrange
        reconciler.handle_event(make_event("evt_act", ref="cus_late"))
        reconciler.handle_event(
            make_event("evt_del", kind=BillingEventKind.SUBSCRIPTION_CANCELED, ref="cus_late")
        )
        make_user("u1")

        # Act
        result = services.matcher.manual_match("cus_late", "u1")

        # Assert
        assert result.replayed == 2
        assert _balance(services, "u1") == 120
        assert db.query(SubscriptionGrant).one().status == "canceled"
        assert {p.status for p in db.query(ParkedEvent).all()} == {"applied"}
        assert db.query(UnresolvedReference).one().status == "resolved"

    def test_redelivery_after_replay_is_duplicate(self, reconciler, services, make_user, make_event):
        event = make_event("evt_act", ref="cus_late")
        reconciler.handle_event(event)
        make_user("u1")
        services.matcher.manual_match("cus_late", "u1")

        outcome = reconciler.handle_event(event)

        assert outcome.status == ReconcileStatus.APPLIED
        assert outcome.duplicate is True
        assert _balance(services, "u1") == 120

    def test_redelivery_while_parked_counts_attempts(self, reconciler, make_event, db):
        event = make_event("evt_1", ref="cus_unknown")

        reconciler.handle_event(event)
        reconciler.handle_event(event)

        assert db.query(ParkedEvent).one().attempts == 2

    def test_upstream_outage_parks_event(self, reconciler, directory, make_event):
        directory.unavailable = True

        outcome = reconciler.handle_event(make_event("evt_1", ref="cus_down"))

        assert outcome.status == ReconcileStatus.PARKED
        assert outcome.reason == "upstream_unavailable"

    def test_failed_replay_keeps_reference_pending(
        self, reconciler, services, make_user, make_event, db, monkeypatch
    ):
        """재처리 중 일시적 실패는 pending 으로 남고 경고가 기록됨"""
        # Arrange
        reconciler.handle_event(make_event("evt_act", ref="cus_late"))
        make_user("u1")
        monkeypatch.setattr(
            services.ledger,
            "open_subscription_grant",
            Mock(side_effect=ConflictError("grant owned by another user")),
        )

        # Act
        result = services.matcher.manual_match("cus_late", "u1")

        # Assert
        assert result.replayed == 0
        parked = db.query(ParkedEvent).one()
        assert parked.status == "pending"
        assert parked.last_error
        assert db.query(ReconciliationWarning).filter_by(kind="REPLAY_FAILED").count() == 1
        assert db.query(UnresolvedReference).one().status == "pending"

    def test_reference_resolves_when_later_event_replays_backlog(
        self, reconciler, services, make_user, make_event, db, monkeypatch
    ):
        """수동 매칭 때 실패한 보류 이벤트가 이후 이벤트의 직접 매칭에서 적용되면 해결 처리"""
        # Arrange
        reconciler.handle_event(make_event("evt_act", ref="cus_late"))
        make_user("u1")
        monkeypatch.setattr(
            services.ledger,
            "open_subscription_grant",
            Mock(side_effect=ConflictError("grant owned by another user")),
        )
        services.matcher.manual_match("cus_late", "u1")
        monkeypatch.undo()

        # Act
        outcome = reconciler.handle_event(
            make_event(
                "evt_pack",
                kind=BillingEventKind.INVOICE_PAID,
                ref="cus_late",
                subscription_ref=None,
                credits=30,
            )
        )

        # Assert
        assert outcome.status == ReconcileStatus.APPLIED
        db.expire_all()
        assert db.query(ParkedEvent).one().status == "applied"
        assert db.query(UnresolvedReference).one().status == "resolved"
        assert _balance(services, "u1") == 150

    def test_invalid_parked_event_is_abandoned_on_replay(
        self, reconciler, services, make_user, make_event, db
    ):
        """원문 자체가 잘못된 보류 이벤트는 재처리 대상에서 제외되고 참조는 해결됨"""
        reconciler.handle_event(make_event("evt_bad", ref="cus_late", subscription_ref=None))
        make_user("u1")

        result = services.matcher.manual_match("cus_late", "u1")

        assert result.replayed == 0
        parked = db.query(ParkedEvent).one()
        assert parked.status == "abandoned"
        assert parked.last_error
        assert db.query(UnresolvedReference).one().status == "resolved"

    def test_invalid_event_on_linked_reference_is_not_retried(
        self, reconciler, services, make_user, make_event, db
    ):
        """연결된 참조의 잘못된 이벤트는 보관만 되고 이후 이벤트마다 재시도되지 않음"""
        # Arrange
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")

        # Act
        bad = reconciler.handle_event(make_event("evt_bad", subscription_ref=None))
        reconciler.handle_event(make_event("evt_2"))
        reconciler.handle_event(
            make_event("evt_3", kind=BillingEventKind.INVOICE_PAID, subscription_ref=None, credits=30)
        )

        # Assert
        assert bad.status == ReconcileStatus.PARKED
        assert bad.reason == "invalid_event"
        assert bad.effect["parked_status"] == "abandoned"
        parked = db.query(ParkedEvent).one()
        assert parked.status == "abandoned"
        assert parked.attempts == 1
        assert db.query(ReconciliationWarning).filter_by(kind="REPLAY_FAILED").count() == 0

    def test_abandon_abandons_parked_events(self, reconciler, services, make_event, db):
        reconciler.handle_event(make_event("evt_1", ref="cus_gone"))

        services.matcher.abandon("cus_gone", note="fraud")

        assert db.query(ParkedEvent).one().status == "abandoned"

    def test_list_parked(self, reconciler, make_event):
        reconciler.handle_event(make_event("evt_1", ref="cus_a"))
        reconciler.handle_event(make_event("evt_2", ref="cus_b"))

        entries = reconciler.list_parked(external_ref="cus_b")

        assert [entry.event_key for entry in entries] == ["evt_2"]


class TestConcurrentDelivery:
    """독립 세션을 가진 작업자들의 동시 이벤트 처리 테스트"""

    def test_concurrent_redelivery_of_parked_events(
        self, reconciler, services, make_user, make_event, race, db
    ):
        """보류 이벤트 두 건이 동시에 재전송되어도 멈추지 않고 각각 정확히 한 번 적용"""
        # Arrange
        hint = {"userId": "u1"}
        activation = make_event("evt_act", ref="cus_late", metadata=hint)
        purchase = make_event(
            "evt_pack",
            kind=BillingEventKind.INVOICE_PAID,
            ref="cus_late",
            subscription_ref=None,
            credits=30,
            metadata=hint,
        )
        reconciler.handle_event(activation)
        reconciler.handle_event(purchase)
        make_user("u1")

        # 두 작업자가 각자의 이벤트 락을 쥔 상태에서 매칭/재처리 시작
        both_holding = threading.Barrier(2)

        def redeliver(event):
            def worker(scoped):
                resolve = scoped.matcher.resolve

                def gated(*args, **kwargs):
                    both_holding.wait(10)
                    return resolve(*args, **kwargs)

                scoped.matcher.resolve = gated
                return scoped.reconciler.handle_event(event)

            return worker

        # Act
        results, errors = race(redeliver(activation), redeliver(purchase))

        # Assert
        assert errors == [None, None]
        assert [r.status for r in results] == [ReconcileStatus.APPLIED] * 2
        assert all(r.user_id == "u1" for r in results)
        db.expire_all()
        assert db.query(AppliedEventKey).count() == 2
        assert {p.status for p in db.query(ParkedEvent).all()} == {"applied"}
        assert db.query(CreditTransaction).filter_by(user_id="u1").count() == 2
        assert _balance(services, "u1") == 150

    def test_same_event_delivered_concurrently_applies_once(
        self, services, make_user, make_event, race, db
    ):
        """같은 멱등 키의 동시 전달: 원장 변경은 한 번, 나머지는 기록된 결과"""
        # Arrange
        make_user("u1")
        services.matcher.manual_match("cus_1", "u1")
        event = make_event("evt_1")

        def deliver(scoped):
            return scoped.reconciler.handle_event(event)

        # Act
        results, errors = race(deliver, deliver, deliver)

        # Assert
        assert errors == [None, None, None]
        assert all(r.status == ReconcileStatus.APPLIED for r in results)
        assert sorted(r.duplicate for r in results) == [False, True, True]
        db.expire_all()
        assert db.query(AppliedEventKey).count() == 1
        assert db.query(CreditTransaction).filter_by(user_id="u1").count() == 1
        assert _balance(services, "u1") == 120


class TestPlanCredits:
    @pytest.fixture
    def plan_reconciler(self, test_settings):
        return EventReconcilerService(Mock(), Mock(), Mock(), settings=test_settings)

    @pytest.mark.parametrize(
        "unit_amount, interval, expected",
        [
            (1690, "month", 120),
            (11880, "year", 1800),
            (9999, "year", 1800),
            (9999, "month", 120),
            (None, None, 120),
        ],
    )
    def test_plan_credits(self, plan_reconciler, make_event, unit_amount, interval, expected):
        event = make_event("evt", unit_amount=unit_amount, interval=interval)

        assert plan_reconciler.plan_credits(event) == expected
