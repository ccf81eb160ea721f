from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from dream_billing.config import Config
from dream_billing.main import create_app
from dream_billing.schemas.billing import (
    AuditIssue,
    AuditReport,
    ProviderCoupon,
    ProviderPromotionCode,
    SweepReport,
)
from dream_billing.services.promo_codes import PromoCodeService
from dream_billing.services.reconciliation import ReconciliationService
from dream_billing.services.startup import BillingServices
from dream_billing.utils.exceptions import ProviderNotFoundError, ProviderTransientError, StoreError

ADMIN_KEY = "admin-test-key-0123456789"
AUTH = {"Authorization": f"Bearer {ADMIN_KEY}"}


@pytest.fixture(autouse=True)
def admin_key(monkeypatch):
    monkeypatch.setattr(Config, "ADMIN_API_KEY", ADMIN_KEY)


@pytest.fixture
def services():
    return BillingServices(
        connection=Mock(),
        store=Mock(),
        ledger=Mock(),
        adapter=Mock(),
        state_machine=Mock(),
        verifier=Mock(),
        webhooks=Mock(),
        reconciliation=Mock(spec=ReconciliationService),
        promo_codes=Mock(spec=PromoCodeService),
        checkout=Mock(),
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


def promotion_code(**kwargs):
    kwargs.setdefault("id", "promo_1")
    kwargs.setdefault("code", "SAVE20")
    kwargs.setdefault("active", True)
    kwargs.setdefault("coupon", ProviderCoupon(id="coupon_20", percent_off=20.0, duration="once"))
    return ProviderPromotionCode(**kwargs)


class TestAdminAuth:
    def test_missing_key(self, client, services):
        response = client.post("/api/admin/billing/sweep")

        assert response.status_code == 401
        services.reconciliation.run_sweep.assert_not_called()

    def test_wrong_key(self, client):
        response = client.post("/api/admin/billing/sweep", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid admin API key"

    def test_key_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(Config, "ADMIN_API_KEY", None)

        response = client.post("/api/admin/billing/sweep", headers=AUTH)

        assert response.status_code == 401


class TestReconciliationEndpoints:
    def test_manual_sweep(self, client, services):
        services.reconciliation.run_sweep.return_value = SweepReport(examined=2, transitioned=1, skipped=1)

        response = client.post("/api/admin/billing/sweep", headers=AUTH)

        assert response.status_code == 200
        assert response.json() == {"examined": 2, "transitioned": 1, "skipped": 1, "failed": 0}

    def test_sweep_store_outage(self, client, services):
        services.reconciliation.run_sweep.side_effect = StoreError("list_expired_cancellations failed")

        response = client.post("/api/admin/billing/sweep", headers=AUTH)

        assert response.status_code == 503

    def test_sweep_status(self, client):
        response = client.get("/api/admin/billing/sweep/status", headers=AUTH)

        assert response.status_code == 200
        assert "is_healthy" in response.json()

    def test_audit(self, client, services):
        services.reconciliation.audit.return_value = AuditReport(
            mode="fix",
            examined=1,
            issues=[
                AuditIssue(
                    user_id="user_1",
                    issue="invalid_subscription_id",
                    detail="subscription sub_x does not exist in Stripe",
                    action="revoke: status canceled, clear subscription id",
                    applied=True,
                )
            ],
            fixed=1,
        )

        response = client.post("/api/admin/billing/audit", json={"fix": True}, headers=AUTH)

        assert response.status_code == 200
        assert response.json()["fixed"] == 1
        services.reconciliation.audit.assert_called_once_with(fix=True, simulate=False, user_id=None)


class TestPromotionCodeEndpoints:
    def test_create_coupon(self, client, services):
        services.promo_codes.create_coupon.return_value = ProviderCoupon(
            id="launch", name="Launch", percent_off=25.0, duration="once"
        )

        response = client.post(
            "/api/admin/billing/coupons", json={"name": "Launch", "percent_off": 25}, headers=AUTH
        )

        assert response.status_code == 200
        assert response.json()["id"] == "launch"

    def test_create_coupon_rejected(self, client, services):
        services.promo_codes.create_coupon.side_effect = ValueError("Coupon name is required")

        response = client.post("/api/admin/billing/coupons", json={"percent_off": 25}, headers=AUTH)

        assert response.status_code == 400
        assert response.json()["detail"] == "Coupon name is required"

    def test_percent_off_out_of_range(self, client):
        response = client.post(
            "/api/admin/billing/coupons", json={"name": "Too much", "percent_off": 150}, headers=AUTH
        )

        assert response.status_code == 422

    def test_create_promotion_code_for_unknown_coupon(self, client, services):
        services.promo_codes.create_promotion_code.side_effect = ProviderNotFoundError("No such coupon")

        response = client.post(
            "/api/admin/billing/promotion-codes", json={"coupon_id": "coupon_x", "code": "X"}, headers=AUTH
        )

        assert response.status_code == 404
        assert response.json()["detail"] == "Coupon not found: coupon_x"

    def test_list_promotion_codes(self, client, services):
        services.promo_codes.list_promotion_codes.return_value = [promotion_code()]

        response = client.get(
            "/api/admin/billing/promotion-codes", params={"active": "true", "code": "save20"}, headers=AUTH
        )

        assert response.status_code == 200
        assert response.json()[0]["code"] == "SAVE20"
        services.promo_codes.list_promotion_codes.assert_called_once_with(
            active=True, code="save20", coupon=None, customer=None, limit=10
        )

    def test_list_limit_bounds(self, client):
        response = client.get("/api/admin/billing/promotion-codes", params={"limit": 0}, headers=AUTH)

        assert response.status_code == 422

    def test_list_provider_outage(self, client, services):
        services.promo_codes.list_promotion_codes.side_effect = ProviderTransientError("timeout")

        response = client.get("/api/admin/billing/promotion-codes", headers=AUTH)

        assert response.status_code == 503

    def test_deactivate(self, client, services):
        services.promo_codes.deactivate_promotion_code.return_value = promotion_code(active=False)

        response = client.post("/api/admin/billing/promotion-codes/promo_1/deactivate", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["active"] is False
        services.promo_codes.deactivate_promotion_code.assert_called_once_with("promo_1")

    def test_deactivate_unknown(self, client, services):
        services.promo_codes.deactivate_promotion_code.side_effect = ProviderNotFoundError("No such code")

        response = client.post("/api/admin/billing/promotion-codes/promo_x/deactivate", headers=AUTH)

        assert response.status_code == 404
