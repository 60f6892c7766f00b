from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class PlanName(str, Enum):
    FREE = "free"
    BASIC = "basic"
    STANDARD = "standard"
    PRO = "pro"
    # Resolution target for external plan identifiers missing from the catalog.
    # Never assigned to a ledger row.
    UNKNOWN = "unknown"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


class AccountSubscription(DBSerializableModel):
    """
    Ledger Store row: one per account, holding plan, allotment and consumption
    for the current billing period.

    Every write goes through a compare-and-set on ``version``.
    """

    collection_name: ClassVar[str] = "credit_subscriptions"
    primary_key: ClassVar[Optional[str]] = "user_id"
    unique_fields: ClassVar[tuple[str, ...]] = ("external_customer_ref",)

    user_id: str
    email: Optional[str] = Field(
        default=None,
        description="Registered email, used to find the external customer when no linkage is stored.",
    )
    plan: PlanName
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    total_credits: int = Field(ge=0, description="Credit allotment for the current period.")
    used_credits: int = Field(default=0, ge=0, description="Credits consumed in the current period.")
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    period_start: datetime = Field(default_factory=utcnow)
    period_end: Optional[datetime] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def remaining_credits(self) -> int:
        return max(self.total_credits - self.used_credits, 0)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE
