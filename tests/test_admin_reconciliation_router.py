import inspect
from unittest.mock import Mock

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from creditsync.config import settings
from creditsync.core.exceptions import NotFoundError
from creditsync.main import create_app
from creditsync.routers import health_router
from creditsync.schemas.admin import AdminCommandResult
from creditsync.schemas.credits import CreditBalanceResponse

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def admin_service():
    return Mock()


@pytest.fixture
def ledger_service():
    return Mock()


@pytest.fixture
def client(monkeypatch, admin_service, ledger_service):
    """관리자 토큰이 설정된 테스트 클라이언트 (서비스는 모의 객체로 대체)"""
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", ADMIN_TOKEN)
    app = create_app()
    container = app.container  # type: ignore[attr-defined]
    with container.services.admin_reconciliation_service.override(admin_service), \
            container.services.credit_ledger_service.override(ledger_service):
        yield TestClient(app)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


class TestAdminAuthentication:
    """관리자 토큰 검증 테스트"""

    def test_missing_token_is_rejected(self, client, admin_service):
        response = client.get("/admin/reconciliation/pending-unresolved")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_001"
        admin_service.pending_unresolved.assert_not_called()

    def test_wrong_token_is_rejected(self, client):
        response = client.get(
            "/admin/reconciliation/warnings",
            headers={"Authorization": "Bearer not-the-token"},
        )

        assert response.status_code == 401

    def test_disabled_when_token_not_configured(self, client, monkeypatch, auth_headers):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "")

        response = client.get("/admin/reconciliation/warnings", headers=auth_headers)

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Admin API is disabled"


class TestAdminReconciliationRoutes:
    """관리자 정합성 라우터 테스트"""

    def test_pending_unresolved(self, client, admin_service, auth_headers):
        # Arrange
        admin_service.pending_unresolved.return_value = []

        # Act
        response = client.get(
            "/admin/reconciliation/pending-unresolved?limit=10&offset=5",
            headers=auth_headers,
        )

        # Assert
        assert response.status_code == 200
        assert response.json() == []
        admin_service.pending_unresolved.assert_called_once_with(10, 5)

    def test_parked_events_status_filter(self, client, admin_service, auth_headers):
        admin_service.parked_events.return_value = []

        response = client.get(
            "/admin/reconciliation/parked-events?status=applied&external_ref=cus_1",
            headers=auth_headers,
        )

        assert response.status_code == 200
        admin_service.parked_events.assert_called_once_with("applied", "cus_1", 50, 0)

    def test_user_info_not_found(self, client, admin_service, auth_headers):
        admin_service.user_info.side_effect = NotFoundError("User ghost not found")

        response = client.get("/admin/reconciliation/user-info/ghost", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND_001"

    def test_manual_match_success(self, client, admin_service, auth_headers):
        # Arrange
        admin_service.manual_match.return_value = AdminCommandResult(
            success=True, data={"external_ref": "cus_1", "user_id": "u1"}
        )

        # Act
        response = client.post(
            "/admin/reconciliation/manual-match",
            json={"external_ref": "cus_1", "user_id": "u1", "note": "ticket 42"},
            headers=auth_headers,
        )

        # Assert
        assert response.status_code == 200
        assert response.json()["success"] is True
        admin_service.manual_match.assert_called_once_with("cus_1", "u1", "ticket 42")

    def test_manual_match_conflict(self, client, admin_service, auth_headers):
        admin_service.manual_match.return_value = AdminCommandResult(
            success=False, reason="already linked", error_code="CONFLICT_001"
        )

        response = client.post(
            "/admin/reconciliation/manual-match",
            json={"external_ref": "cus_1", "user_id": "u2"},
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "CONFLICT_001"

    def test_relink_requires_note(self, client, admin_service, auth_headers):
        response = client.post(
            "/admin/reconciliation/relink",
            json={"external_ref": "cus_1", "user_id": "u2"},
            headers=auth_headers,
        )

        assert response.status_code == 422
        admin_service.relink.assert_not_called()

    def test_consume_insufficient_balance(self, client, admin_service, auth_headers):
        # Arrange
        admin_service.consume.return_value = AdminCommandResult(
            success=False,
            reason="insufficient_balance",
            error_code="INSUFFICIENT_BALANCE",
            details={"balance": 3, "required": 10},
        )

        # Act
        response = client.post(
            "/admin/reconciliation/consume",
            json={"user_id": "u1", "amount": 10, "description": "report"},
            headers=auth_headers,
        )

        # Assert
        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["details"]["balance"] == 3

    def test_grant_bonus_upstream_unavailable(self, client, admin_service, auth_headers):
        admin_service.grant_bonus.return_value = AdminCommandResult(
            success=False, reason="down", error_code="UPSTREAM_001"
        )

        response = client.post(
            "/admin/reconciliation/grant-bonus",
            json={"user_id": "u1", "amount": 50, "reason": "apology"},
            headers=auth_headers,
        )

        assert response.status_code == 503

    def test_expire_grants_without_body(self, client, admin_service, auth_headers):
        admin_service.expire_grants.return_value = AdminCommandResult(
            success=True, data={"expired_count": 0}
        )

        response = client.post("/admin/reconciliation/expire-grants", headers=auth_headers)

        assert response.status_code == 200
        admin_service.expire_grants.assert_called_once_with(None)


class TestCreditsRoutes:
    """크레딧 조회 라우터 테스트"""

    def test_get_balance(self, client, ledger_service, auth_headers):
        ledger_service.get_balance.return_value = CreditBalanceResponse(
            user_id="u1", balance=120, total_recharged=150, total_consumed=30
        )

        response = client.get("/credits/u1/balance", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["balance"] == 120
        ledger_service.get_balance.assert_called_once_with("u1")

    def test_transactions_limit_is_bounded(self, client, ledger_service, auth_headers):
        response = client.get("/credits/u1/transactions?limit=500", headers=auth_headers)

        assert response.status_code == 422
        ledger_service.get_transactions.assert_not_called()


def test_health():
    client = TestClient(create_app())

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_service_backed_handlers_run_in_threadpool(client):
    """블로킹 서비스를 호출하는 핸들러는 이벤트 루프 밖(스레드풀)에서 실행"""
    routes = [
        route
        for route in client.app.routes
        if isinstance(route, APIRoute) and route.endpoint.__module__ != health_router.__name__
    ]

    assert routes
    assert [route.path for route in routes if inspect.iscoroutinefunction(route.endpoint)] == []
