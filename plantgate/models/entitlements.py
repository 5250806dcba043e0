"""Entitlement, quota and subscription models."""

from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from plantgate.constants import GUEST_KEY_PREFIX, LOCAL_DEVICE_ID, USER_KEY_PREFIX


class SubjectKind(str, Enum):
    """Whose quota is being tracked."""

    AUTHENTICATED = "authenticated"
    GUEST = "guest"


class PlanTier(str, Enum):
    """Supported plan tiers."""

    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"


PAID_TIERS = frozenset({PlanTier.BASIC, PlanTier.PREMIUM})


class SubscriptionStatus(str, Enum):
    """Stored subscription status. `end_date` decides expiry, not this value."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    """Billing period of a paid plan."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentMethod(str, Enum):
    """Payment rails the payment collaborator may report."""

    GOOGLE_PAY = "google-pay"
    APPLE_PAY = "apple-pay"
    PAYSTACK = "paystack"


class AllowanceReason(str, Enum):
    """Reason attached to a scan allowance."""

    SUBSCRIPTION_ACTIVE = "subscription_active"
    FREE_AVAILABLE = "free_available"
    FREE_EXHAUSTED = "free_exhausted"


class Subject(BaseModel):
    """Identity a quota belongs to. Immutable for the lifetime of a session."""

    model_config = ConfigDict(frozen=True)

    kind: SubjectKind
    user_id: str | None = None
    device_id: str = LOCAL_DEVICE_ID

    @classmethod
    def authenticated(cls, user_id: str) -> "Subject":
        if not user_id:
            raise ValueError("Authenticated subjects need a user id")
        return cls(kind=SubjectKind.AUTHENTICATED, user_id=user_id)

    @classmethod
    def guest(cls, device_id: str = LOCAL_DEVICE_ID) -> "Subject":
        return cls(kind=SubjectKind.GUEST, device_id=device_id or LOCAL_DEVICE_ID)

    @property
    def is_guest(self) -> bool:
        return self.kind == SubjectKind.GUEST

    @property
    def key(self) -> str:
        """Storage namespace. Guest and user counters never share a key."""
        if self.is_guest:
            return f"{GUEST_KEY_PREFIX}{self.device_id}"
        return f"{USER_KEY_PREFIX}{self.user_id}"


class TierLimits(BaseModel):
    """Bounded resources granted by one plan tier."""

    daily_scan_limit: int = Field(ge=0)
    monthly_scan_limit: int = Field(ge=0)
    garden_capacity: int = Field(ge=0)


class DailyCounter(BaseModel):
    """Scans and earned bonuses of one subject on one calendar day."""

    subject_key: str
    day_key: str
    used_count: int = Field(default=0, ge=0)
    bonus_count: int = Field(default=0, ge=0)
    clicks_today: int = Field(default=0, ge=0)


class Subscription(BaseModel):
    """A purchased entitlement. One record per successful payment."""

    id: str
    user_id: str
    plan_tier: PlanTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: datetime
    end_date: datetime
    payment_reference: str
    created_at: datetime

    def effective_status(self, now: datetime) -> SubscriptionStatus:
        """Status re-derived from `end_date`; a stored `active` may be stale."""
        if self.status == SubscriptionStatus.CANCELLED:
            return SubscriptionStatus.CANCELLED
        if self.end_date <= now:
            return SubscriptionStatus.EXPIRED
        return self.status


class SubscriptionActivation(BaseModel):
    """Signed "subscription activated" event from the payment collaborator."""

    user_id: str
    plan_tier: PlanTier
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    payment_reference: str = Field(min_length=1)
    end_date: datetime | None = None
    amount: float | None = None
    currency: str | None = None
    payment_method: PaymentMethod | None = None


class ScanAllowance(BaseModel):
    """Output of the scan policy."""

    allowed: bool
    remaining: int
    limit: int
    reason: AllowanceReason


class GardenAllowance(BaseModel):
    """Output of the garden capacity policy."""

    allowed: bool
    remaining: int
    capacity: int


class QuotaSnapshot(BaseModel):
    """Today's raw counter for a subject after the rollover check."""

    subject_key: str
    day_key: str
    used_count: int = 0
    bonus_count: int = 0
    clicks_today: int = 0
    stale: bool = False


class QuotaStatus(BaseModel):
    """Display view of a subject's quota for the badge and billing screens."""

    plan_tier: PlanTier
    subscription_active: bool
    day_key: str
    remaining: int
    used_count: int
    limit: int
    bonus_count: int
    can_earn_bonus: bool
    stale: bool = False


class BonusResult(BaseModel):
    """Result of crediting a fully-watched rewarded ad."""

    granted: bool
    bonus_count: int
    clicks_today: int


class GateAllowed(BaseModel):
    """The caller may run one identification.

    `on_success` must be awaited if and only if the identification returned a
    usable result. Calling it more than once counts a single scan.
    """

    kind: Literal["allowed"] = "allowed"
    attempt_id: str
    plan_tier: PlanTier
    remaining: int
    limit: int
    on_success: Callable[[], Awaitable[None]] = Field(exclude=True, repr=False)


class GateDeniedSubscriptionExhausted(BaseModel):
    """Paid tier over a strict cap. Not emitted while paid tiers are unlimited."""

    kind: Literal["denied_subscription_exhausted"] = "denied_subscription_exhausted"
    plan_tier: PlanTier
    resets_at: datetime


class GateDeniedFreeExhausted(BaseModel):
    """Free allowance used up for today."""

    kind: Literal["denied_free_exhausted"] = "denied_free_exhausted"
    remaining: int = 0
    can_earn_bonus: bool
    resets_at: datetime


GateDecision = GateAllowed | GateDeniedSubscriptionExhausted | GateDeniedFreeExhausted
