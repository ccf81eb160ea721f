"""Tests for synchronous checkout verification."""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from dream_billing.db.subscriptions import TABLE
from dream_billing.services.checkout_verifier import CheckoutVerifier
from dream_billing.services.stripe_adapter import normalize_checkout_session
from dream_billing.utils.exceptions import ProviderNotFoundError, ProviderTransientError
from tests.helpers.mocks import (
    T0,
    make_checkout_session,
    make_subscription,
    provider_subscription,
    subscription_row,
)


@pytest.fixture
def retry_sleep():
    return Mock()


@pytest.fixture
def verifier(adapter, state_machine, clock, retry_sleep):
    return CheckoutVerifier(adapter, state_machine, clock=clock, retry_sleep=retry_sleep)


def session(**kwargs):
    return normalize_checkout_session(make_checkout_session(**kwargs))


class TestVerifyCheckout:
    def test_paid_session_activates_subscription(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.return_value = session(user_id="user_1")

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is True
        assert result.paid is True
        assert result.model_dump(by_alias=True)["subscriptionId"] == "sub_abc"
        adapter.retrieve_checkout_session.assert_called_once_with("cs_123")

        row = db.row(TABLE, "user_1")
        assert row["status"] == "active"
        assert row["subscription_id"] == "sub_abc"
        assert row["stripe_customer_id"] == "cus_123"
        assert row["observed_at"] == T0.isoformat()

    def test_unknown_session_is_not_verified(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.side_effect = ProviderNotFoundError("no such session")

        result = verifier.verify_checkout("user_1", "cs_missing")

        assert result.verified is False
        assert result.paid is False
        assert db.rows(TABLE) == []

    def test_unpaid_session_binds_customer_but_grants_nothing(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.return_value = session(
            payment_status="unpaid", subscription=make_subscription(status="incomplete")
        )

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is False
        assert result.paid is False
        row = db.row(TABLE, "user_1")
        assert row["status"] == "none"
        assert row["stripe_customer_id"] == "cus_123"

    def test_unexpanded_subscription_is_fetched(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.return_value = session(subscription="sub_abc")
        adapter.retrieve_subscription.return_value = provider_subscription()

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is True
        adapter.retrieve_subscription.assert_called_once_with("sub_abc")
        assert db.row(TABLE, "user_1")["status"] == "active"

    def test_session_for_another_user_is_refused(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.return_value = session(user_id="user_2")

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is False
        assert result.paid is True
        assert db.row(TABLE, "user_1") is None

    def test_foreign_customer_is_flagged(self, verifier, adapter, db):
        db.seed(TABLE, subscription_row("user_1", stripe_customer_id="cus_mine"))
        adapter.retrieve_checkout_session.return_value = session(customer="cus_other")

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is False
        row = db.row(TABLE, "user_1")
        assert row["status"] == "none"
        assert row["stripe_customer_id"] == "cus_mine"
        assert row["flagged_customer_id"] == "cus_other"

    def test_one_payment_session(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.return_value = session(mode="payment", subscription=None)

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is True
        assert result.subscription_id is None
        assert db.row(TABLE, "user_1")["status"] == "none"

    def test_transient_error_retried_once(self, verifier, adapter, retry_sleep):
        adapter.retrieve_checkout_session.side_effect = [
            ProviderTransientError("connection reset"),
            session(),
        ]

        assert verifier.verify_checkout("user_1", "cs_123").verified is True
        assert adapter.retrieve_checkout_session.call_count == 2
        retry_sleep.assert_called_once()

    def test_persistent_transient_error_propagates(self, verifier, adapter, db):
        adapter.retrieve_checkout_session.side_effect = ProviderTransientError("timeout")

        with pytest.raises(ProviderTransientError):
            verifier.verify_checkout("user_1", "cs_123")

        assert adapter.retrieve_checkout_session.call_count == 2
        assert db.rows(TABLE) == []

    def test_verification_never_overrides_newer_cancellation(self, verifier, adapter, db):
        db.seed(
            TABLE,
            subscription_row(
                "user_1",
                stripe_customer_id="cus_123",
                subscription_id="sub_abc",
                status="canceling",
                cancel_at_period_end=True,
                current_period_end=T0 + timedelta(days=30),
                observed_at=T0 + timedelta(seconds=30),
            ),
        )
        adapter.retrieve_checkout_session.return_value = session()

        result = verifier.verify_checkout("user_1", "cs_123")

        assert result.verified is True
        assert db.row(TABLE, "user_1")["status"] == "canceling"
