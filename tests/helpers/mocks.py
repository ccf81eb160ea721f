"""
Reusable test doubles for the billing tests.

- InMemorySupabase: a Supabase client double that actually stores rows and
  understands the PostgREST builder calls the stores make
- FakeClock: a controllable clock for the injectable ``clock`` parameters
- make_*: Stripe-shaped payloads (plain dicts, as Stripe sends them)

Usage:
    from tests.helpers.mocks import InMemorySupabase, make_subscription

    def test_my_store():
        db = InMemorySupabase()
        store = SubscriptionStore(SupabaseConnection(factory=lambda: db))
"""

import copy
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from dream_billing.schemas.billing import ProviderSubscription, parse_timestamp
from dream_billing.services.stripe_adapter import normalize_subscription

PRIMARY_KEYS = {
    "customer_subscriptions": "user_id",
    "stripe_webhook_events": "event_id",
}

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def epoch(value: datetime) -> int:
    return int(value.timestamp())


# ============================================================================
# Supabase Client Double
# ============================================================================


class MockQueryResult:
    """Mock Supabase query result"""

    def __init__(self, data: list[dict] | None = None):
        self.data = data if data is not None else []
        self.count = len(self.data)


def _comparable(value: Any) -> Any:
    """Timestamps are stored as ISO strings; compare them as datetimes."""
    if isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValueError:
            return value
    return value


def _split_top_level(text: str) -> list[str]:
    """Split a PostgREST logic expression on commas outside parentheses."""
    parts, depth, current = [], 0, ""
    for char in text:
        if char == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        depth += {"(": 1, ")": -1}.get(char, 0)
        current += char
    parts.append(current)
    return [part.strip() for part in parts if part.strip()]


def _parse_condition(text: str) -> tuple:
    """Parse ``col.op.value``, ``and(...)`` or ``or(...)`` into a nested tuple."""
    for logic in ("and", "or"):
        if text.startswith(f"{logic}(") and text.endswith(")"):
            return (logic, [_parse_condition(part) for part in _split_top_level(text[len(logic) + 1 : -1])])
    column, op, value = text.split(".", 2)
    return (op, column, value)


def _postgrest_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _condition_matches(row: dict, condition: tuple) -> bool:
    if condition[0] == "and":
        return all(_condition_matches(row, part) for part in condition[1])
    if condition[0] == "or":
        return any(_condition_matches(row, part) for part in condition[1])
    op, column, value = condition
    if op in ("eq", "is"):
        return _postgrest_text(row.get(column)) == value
    raise AssertionError(f"unsupported or_ operator {op}")


class InMemoryQuery:
    """PostgREST request builder over an InMemorySupabase table."""

    def __init__(self, db: "InMemorySupabase", table: str):
        self._db = db
        self._table = table
        self._operation = "select"
        self._payload: Any = None
        self._filters: list[tuple[str, str, Any]] = []
        self._orders: list[tuple[str, bool]] = []
        self._limit: int | None = None
        self._range: tuple[int, int] | None = None
        self._on_conflict: str | None = None
        self._ignore_duplicates = False

    # Operations

    def select(self, *columns, **kwargs):
        self._operation = "select"
        return self

    def insert(self, data: dict | list[dict], **kwargs):
        self._operation = "insert"
        self._payload = data
        return self

    def upsert(self, data: dict | list[dict], on_conflict: str = "", ignore_duplicates: bool = False, **kwargs):
        self._operation = "upsert"
        self._payload = data
        self._on_conflict = on_conflict or PRIMARY_KEYS.get(self._table)
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, data: dict, **kwargs):
        self._operation = "update"
        self._payload = data
        return self

    def delete(self, **kwargs):
        self._operation = "delete"
        return self

    # Filters and modifiers

    def eq(self, column: str, value: Any):
        self._filters.append(("eq", column, value))
        return self

    def in_(self, column: str, values: list):
        self._filters.append(("in", column, list(values)))
        return self

    def lt(self, column: str, value: Any):
        self._filters.append(("lt", column, value))
        return self

    def gt(self, column: str, value: Any):
        self._filters.append(("gt", column, value))
        return self

    def order(self, column: str, desc: bool = False, **kwargs):
        self._orders.append((column, desc))
        return self

    def or_(self, filters: str, **kwargs):
        self._filters.append(("or", "", [_parse_condition(part) for part in _split_top_level(filters)]))
        return self

    def limit(self, count: int, **kwargs):
        self._limit = count
        return self

    def range(self, start: int, end: int, **kwargs):
        self._range = (start, end)
        return self

    # Execution

    def _matches(self, row: dict) -> bool:
        for op, column, value in self._filters:
            current = row.get(column)
            if op == "eq" and current != value:
                return False
            if op == "in" and current not in value:
                return False
            if op == "or" and not any(_condition_matches(row, condition) for condition in value):
                return False
            if op in ("lt", "gt"):
                if current is None:
                    return False
                left, right = _comparable(current), _comparable(value)
                if op == "lt" and not left < right:
                    return False
                if op == "gt" and not left > right:
                    return False
        return True

    def execute(self) -> MockQueryResult:
        self._db.calls.append((self._table, self._operation))
        self._db.raise_if_failing(self._table, self._operation)
        rows = self._db.tables.setdefault(self._table, [])

        if self._operation == "select":
            selected = [row for row in rows if self._matches(row)]
            # Stable sorts applied last key first give multi-column ordering
            for column, desc in reversed(self._orders):
                present = [row for row in selected if row.get(column) is not None]
                missing = [row for row in selected if row.get(column) is None]
                present.sort(key=lambda row: _comparable(row[column]), reverse=desc)
                selected = present + missing
            if self._range is not None:
                start, end = self._range
                selected = selected[start : end + 1]
            if self._limit is not None:
                selected = selected[: self._limit]
            return MockQueryResult(copy.deepcopy(selected))

        if self._operation in ("insert", "upsert"):
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            key = self._on_conflict or PRIMARY_KEYS.get(self._table)
            written = []
            for item in payload:
                existing = next((row for row in rows if key and row.get(key) == item.get(key)), None)
                if existing is not None:
                    if self._operation == "insert":
                        raise Exception(f'duplicate key value violates unique constraint "{self._table}_pkey"')
                    if self._ignore_duplicates:
                        continue
                    existing.update(copy.deepcopy(item))
                    written.append(existing)
                else:
                    row = copy.deepcopy(item)
                    rows.append(row)
                    written.append(row)
            return MockQueryResult(copy.deepcopy(written))

        if self._operation == "update":
            if self._db.before_update is not None:
                hook, self._db.before_update = self._db.before_update, None
                hook(self._table, self._filters)
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self._payload))
                    updated.append(row)
            return MockQueryResult(copy.deepcopy(updated))

        if self._operation == "delete":
            deleted = [row for row in rows if self._matches(row)]
            self._db.tables[self._table] = [row for row in rows if not self._matches(row)]
            return MockQueryResult(copy.deepcopy(deleted))

        raise AssertionError(f"unsupported operation {self._operation}")


class InMemorySupabase:
    """
    Supabase client double backed by dicts.

    ``fail(table, operation, error)`` makes the next matching call raise.
    ``before_update`` is a one-shot hook run just before the next update is
    applied, used to simulate a concurrent writer winning a race.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.calls: list[tuple[str, str]] = []
        self.before_update: Callable[[str, list], None] | None = None
        self._failures: list[tuple[str, str, Exception, int]] = []

    def table(self, name: str) -> InMemoryQuery:
        return InMemoryQuery(self, name)

    def fail(self, table: str, operation: str, error: Exception, times: int = 1) -> None:
        self._failures.append((table, operation, error, times))

    def raise_if_failing(self, table: str, operation: str) -> None:
        for index, (f_table, f_operation, error, times) in enumerate(self._failures):
            if f_table == table and f_operation == operation:
                if times <= 1:
                    self._failures.pop(index)
                else:
                    self._failures[index] = (f_table, f_operation, error, times - 1)
                raise error

    # Test conveniences

    def rows(self, table: str) -> list[dict]:
        return copy.deepcopy(self.tables.get(table, []))

    def row(self, table: str, key: str) -> dict | None:
        column = PRIMARY_KEYS[table]
        return next((row for row in self.rows(table) if row.get(column) == key), None)

    def seed(self, table: str, row: dict) -> None:
        self.tables.setdefault(table, []).append(copy.deepcopy(row))


def subscription_row(user_id: str = "user_1", **fields) -> dict:
    """A customer_subscriptions row with sensible defaults."""
    row = {
        "user_id": user_id,
        "stripe_customer_id": None,
        "subscription_id": None,
        "status": "none",
        "cancel_at_period_end": False,
        "current_period_end": None,
        "created_at": T0.isoformat(),
        "updated_at": T0.isoformat(),
        "version": 0,
        "observed_at": None,
        "canceled_at": None,
        "flagged_customer_id": None,
        "last_event_id": None,
    }
    for name, value in fields.items():
        row[name] = value.isoformat() if isinstance(value, datetime) else value
    return row


# ============================================================================
# Stripe payloads
# ============================================================================


def make_subscription(
    id: str = "sub_abc",
    status: str = "active",
    customer: str | None = "cus_123",
    user_id: str | None = None,
    cancel_at_period_end: bool = False,
    current_period_end: datetime | None = T0 + timedelta(days=30),
    canceled_at: datetime | None = None,
    created: datetime = T0,
    period_on_items: bool = False,
) -> dict:
    """Subscription JSON; ``period_on_items`` mimics API versions that moved the period onto items."""
    period_end = epoch(current_period_end) if current_period_end else None
    subscription = {
        "id": id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "cancel_at_period_end": cancel_at_period_end,
        "canceled_at": epoch(canceled_at) if canceled_at else None,
        "created": epoch(created),
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"object": "list", "data": [{"id": f"si_{id}", "object": "subscription_item"}]},
    }
    if period_on_items:
        subscription["items"]["data"][0]["current_period_end"] = period_end
    else:
        subscription["current_period_end"] = period_end
    return subscription


def provider_subscription(**kwargs) -> ProviderSubscription:
    return normalize_subscription(make_subscription(**kwargs))


def make_checkout_session(
    id: str = "cs_123",
    payment_status: str = "paid",
    mode: str = "subscription",
    status: str = "complete",
    customer: str | None = "cus_123",
    subscription: dict | str | None = None,
    user_id: str | None = None,
    client_reference_id: str | None = None,
) -> dict:
    if subscription is None and mode == "subscription":
        subscription = make_subscription(customer=customer)
    return {
        "id": id,
        "object": "checkout.session",
        "mode": mode,
        "status": status,
        "payment_status": payment_status,
        "customer": customer,
        "subscription": subscription,
        "client_reference_id": client_reference_id,
        "metadata": {"user_id": user_id} if user_id else {},
    }


def make_invoice(id: str = "in_1", subscription_id: str | None = "sub_abc", nested: bool = False) -> dict:
    """Invoice JSON; ``nested`` uses the parent.subscription_details layout."""
    invoice: dict[str, Any] = {"id": id, "object": "invoice"}
    if nested:
        invoice["parent"] = {
            "type": "subscription_details",
            "subscription_details": {"subscription": subscription_id},
        }
    else:
        invoice["subscription"] = subscription_id
    return invoice


def make_event(event_type: str, obj: dict, id: str = "evt_1", created: datetime = T0) -> dict:
    return {
        "id": id,
        "object": "event",
        "type": event_type,
        "created": epoch(created),
        "livemode": False,
        "data": {"object": obj},
    }


def make_coupon(
    id: str = "coupon_20",
    percent_off: float | None = 20.0,
    amount_off: int | None = None,
    currency: str | None = None,
    duration: str = "once",
    duration_in_months: int | None = None,
    valid: bool = True,
) -> dict:
    return {
        "id": id,
        "object": "coupon",
        "name": id,
        "percent_off": percent_off,
        "amount_off": amount_off,
        "currency": currency,
        "duration": duration,
        "duration_in_months": duration_in_months,
        "valid": valid,
    }


def make_promotion_code(
    id: str = "promo_1",
    code: str = "SAVE20",
    active: bool = True,
    coupon: dict | None = None,
    expires_at: datetime | None = None,
    max_redemptions: int | None = None,
    times_redeemed: int = 0,
) -> dict:
    return {
        "id": id,
        "object": "promotion_code",
        "code": code,
        "active": active,
        "coupon": coupon or make_coupon(),
        "expires_at": epoch(expires_at) if expires_at else None,
        "max_redemptions": max_redemptions,
        "times_redeemed": times_redeemed,
    }
