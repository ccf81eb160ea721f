from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    CANCELING = "canceling"
    CANCELED = "canceled"
    INACTIVE = "inactive"


# Statuses that grant access to premium features
PAID_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELING})


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce a Stripe epoch integer or a PostgREST ISO string into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# Subscription record (one row per user in customer_subscriptions)
class SubscriptionRecord(BaseModel):
    user_id: str
    stripe_customer_id: str | None = None
    subscription_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 0
    observed_at: datetime | None = None
    canceled_at: datetime | None = None
    flagged_customer_id: str | None = None
    last_event_id: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_STATUSES

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SubscriptionRecord":
        return cls(
            user_id=str(row["user_id"]),
            stripe_customer_id=row.get("stripe_customer_id"),
            subscription_id=row.get("subscription_id"),
            status=SubscriptionStatus(row.get("status") or SubscriptionStatus.NONE.value),
            cancel_at_period_end=bool(row.get("cancel_at_period_end")),
            current_period_end=parse_timestamp(row.get("current_period_end")),
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
            version=int(row.get("version") or 0),
            observed_at=parse_timestamp(row.get("observed_at")),
            canceled_at=parse_timestamp(row.get("canceled_at")),
            flagged_customer_id=row.get("flagged_customer_id"),
            last_event_id=row.get("last_event_id"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "stripe_customer_id": self.stripe_customer_id,
            "subscription_id": self.subscription_id,
            "status": self.status.value,
            "cancel_at_period_end": self.cancel_at_period_end,
            "current_period_end": format_timestamp(self.current_period_end),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "version": self.version,
            "observed_at": format_timestamp(self.observed_at),
            "canceled_at": format_timestamp(self.canceled_at),
            "flagged_customer_id": self.flagged_customer_id,
            "last_event_id": self.last_event_id,
        }


# Provider snapshots (normalised Stripe objects)
class ProviderSubscription(BaseModel):
    id: str
    status: str
    customer: str | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None
    created: datetime | None = None
    user_id: str | None = None  # metadata.user_id


class ProviderCheckoutSession(BaseModel):
    id: str
    mode: str | None = None
    status: str | None = None
    payment_status: str | None = None
    customer: str | None = None
    subscription_id: str | None = None
    subscription: ProviderSubscription | None = None
    user_id: str | None = None  # metadata.user_id or client_reference_id


class ProviderCustomer(BaseModel):
    id: str
    email: str | None = None
    deleted: bool = False
    user_id: str | None = None  # metadata.user_id


class ProviderCoupon(BaseModel):
    id: str
    name: str | None = None
    percent_off: float | None = None
    amount_off: int | None = None
    currency: str | None = None
    duration: str | None = None
    duration_in_months: int | None = None
    valid: bool = True


class ProviderPromotionCode(BaseModel):
    id: str
    code: str
    active: bool
    coupon: ProviderCoupon
    expires_at: datetime | None = None
    max_redemptions: int | None = None
    times_redeemed: int = 0


# Operation results
class VerifyCheckoutResult(BaseModel):
    verified: bool
    paid: bool
    subscription_id: str | None = Field(default=None, serialization_alias="subscriptionId")
    status: str | None = None
    payment_status: str | None = None
    customer: str | None = None


class DiscountInfo(BaseModel):
    percent_off: float | None = None
    amount_off: int | None = None
    currency: str | None = None
    duration: Literal["once", "repeating", "forever"] | None = None
    duration_in_months: int | None = None


class PromoValidationResult(BaseModel):
    valid: bool
    discount_info: DiscountInfo | None = None
    promotion_code_id: str | None = None
    error: str | None = None


class WebhookProcessingResult(BaseModel):
    received: bool = True
    event_id: str
    event_type: str
    duplicate: bool = False
    message: str


class SweepReport(BaseModel):
    examined: int = 0
    transitioned: int = 0
    skipped: int = 0
    failed: int = 0


AuditIssueType = Literal[
    "missing_customer_id",
    "invalid_subscription_id",
    "provider_status_mismatch",
    "active_without_subscription_id",
]


class AuditIssue(BaseModel):
    user_id: str
    issue: AuditIssueType
    detail: str
    action: str | None = None  # fix applied (or that would be applied in simulate mode)
    applied: bool = False


class AuditReport(BaseModel):
    mode: Literal["report", "fix", "simulate"]
    examined: int = 0
    issues: list[AuditIssue] = []
    fixed: int = 0
    failed: int = 0


# Request bodies (the front end sends camelCase)
class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    session_id: str = Field(alias="sessionId", min_length=1)


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    plan_id: str = Field(alias="planId", min_length=1)
    return_url: str | None = Field(default=None, alias="returnUrl")
    promo_code: str | None = Field(default=None, alias="promoCode")


class PortalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    return_url: str | None = Field(default=None, alias="returnUrl")


class PromoValidateRequest(BaseModel):
    code: str = Field(min_length=1)


class SessionUrlResponse(BaseModel):
    url: str


class CreateCouponRequest(BaseModel):
    id: str | None = None
    name: str | None = None
    percent_off: float | None = Field(default=None, gt=0, le=100)
    amount_off: int | None = Field(default=None, gt=0)
    currency: str | None = None
    duration: Literal["once", "repeating", "forever"] = "once"
    duration_in_months: int | None = Field(default=None, gt=0)
    max_redemptions: int | None = Field(default=None, gt=0)
    redeem_by: datetime | None = None


class CreatePromotionCodeRequest(BaseModel):
    coupon_id: str | None = None
    code: str | None = None
    customer: str | None = None
    expires_at: datetime | None = None
    first_time_transaction: bool | None = None
    max_redemptions: int | None = Field(default=None, gt=0)
    minimum_amount: int | None = Field(default=None, gt=0)
    minimum_amount_currency: str | None = None


class AuditRequest(BaseModel):
    fix: bool = False
    simulate: bool = False
    user_id: str | None = None


class SubscriptionView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(serialization_alias="userId")
    status: SubscriptionStatus
    is_paid: bool = Field(serialization_alias="isPaid")
    subscription_id: str | None = Field(default=None, serialization_alias="subscriptionId")
    cancel_at_period_end: bool = Field(default=False, serialization_alias="cancelAtPeriodEnd")
    current_period_end: datetime | None = Field(default=None, serialization_alias="currentPeriodEnd")
    canceled_at: datetime | None = Field(default=None, serialization_alias="canceledAt")
    updated_at: datetime | None = Field(default=None, serialization_alias="updatedAt")
    refreshed: bool = False

    @classmethod
    def from_record(cls, record: SubscriptionRecord, refreshed: bool = False) -> "SubscriptionView":
        return cls(
            user_id=record.user_id,
            status=record.status,
            is_paid=record.is_paid,
            subscription_id=record.subscription_id,
            cancel_at_period_end=record.cancel_at_period_end,
            current_period_end=record.current_period_end,
            canceled_at=record.canceled_at,
            updated_at=record.updated_at,
            refreshed=refreshed,
        )
