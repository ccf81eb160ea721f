import os

# Must be set before dream_billing.config is imported
os.environ["APP_ENV"] = "testing"
os.environ["ENABLE_SUBSCRIPTION_SWEEP"] = "false"
os.environ["SENTRY_ENABLED"] = "false"
os.environ.setdefault("ADMIN_API_KEY", "admin-test-key-0123456789")

from unittest.mock import Mock

import pytest

from dream_billing.config.supabase_config import SupabaseConnection
from dream_billing.db.subscriptions import SubscriptionStore
from dream_billing.db.webhook_events import WebhookEventLedger
from dream_billing.services.stripe_adapter import StripeBillingAdapter
from dream_billing.services.subscription_state import SubscriptionStateMachine
from tests.helpers.mocks import FakeClock, InMemorySupabase


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return InMemorySupabase()


@pytest.fixture
def connection(db):
    return SupabaseConnection(factory=lambda: db)


@pytest.fixture
def store(connection, clock):
    return SubscriptionStore(connection, clock=clock)


@pytest.fixture
def ledger(connection, clock):
    return WebhookEventLedger(connection, clock=clock)


@pytest.fixture
def state_machine(store, clock):
    return SubscriptionStateMachine(store, clock=clock)


@pytest.fixture
def adapter():
    """Stripe adapter double; tests set return values on the methods they exercise."""
    return Mock(spec=StripeBillingAdapter)
