import hashlib
import hmac
import json
import time
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from creditsync.config import settings
from creditsync.main import create_app
from creditsync.schemas.events import BillingEventKind, ReconcileOutcome, ReconcileStatus

WEBHOOK_SECRET = "whsec_test_secret"


def _signed(payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload)
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256
    ).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}


def _subscription_event(event_type="customer.subscription.created"):
    return {
        "id": "evt_1",
        "object": "event",
        "type": event_type,
        "created": 1893456000,
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "metadata": {},
                "items": {
                    "data": [
                        {
                            "current_period_start": 1893456000,
                            "current_period_end": 1896134400,
                            "price": {"unit_amount": 1690, "recurring": {"interval": "month"}},
                        }
                    ]
                },
            }
        },
    }


@pytest.fixture
def reconciler():
    return Mock()


@pytest.fixture
def client(monkeypatch, reconciler):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    app = create_app()
    with app.container.services.reconciliation.override(Mock(reconciler=reconciler)):  # type: ignore[attr-defined]
        yield TestClient(app)


class TestStripeWebhook:
    """Stripe 웹훅 라우터 테스트"""

    def test_valid_event_is_reconciled(self, client, reconciler):
        # Arrange
        reconciler.handle_event.return_value = ReconcileOutcome(
            idempotency_key="evt_1",
            kind="subscription_activated",
            status=ReconcileStatus.APPLIED,
            user_id="u1",
            effect={"granted": 120},
        )
        body, headers = _signed(_subscription_event())

        # Act
        response = client.post("/webhooks/stripe", content=body, headers=headers)

        # Assert
        assert response.status_code == 200
        assert response.json()["status"] == "applied"
        event = reconciler.handle_event.call_args[0][0]
        assert event.kind == BillingEventKind.SUBSCRIPTION_ACTIVATED
        assert event.external_ref == "cus_1"

    def test_parked_event_still_acknowledged(self, client, reconciler):
        reconciler.handle_event.return_value = ReconcileOutcome(
            idempotency_key="evt_1",
            kind="subscription_activated",
            status=ReconcileStatus.PARKED,
            reason="no_match",
        )
        body, headers = _signed(_subscription_event())

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "parked"

    def test_bad_signature_is_rejected(self, client, reconciler):
        body, headers = _signed(_subscription_event(), secret="whsec_other")

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_001"
        reconciler.handle_event.assert_not_called()

    def test_missing_signature_is_rejected(self, client, reconciler):
        response = client.post(
            "/webhooks/stripe", content=json.dumps(_subscription_event())
        )

        assert response.status_code == 401
        reconciler.handle_event.assert_not_called()

    def test_unsupported_event_is_ignored(self, client, reconciler):
        payload = {
            "id": "evt_2",
            "object": "event",
            "type": "charge.refunded",
            "data": {"object": {"customer": "cus_1"}},
        }
        body, headers = _signed(payload)

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"
        assert response.json()["reason"] == "unsupported_event"
        reconciler.handle_event.assert_not_called()

    def test_unconfigured_secret_rejects_everything(self, client, reconciler, monkeypatch):
        body, headers = _signed(_subscription_event())
        monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

        response = client.post("/webhooks/stripe", content=body, headers=headers)

        assert response.status_code == 401
