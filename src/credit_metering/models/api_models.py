from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .subscription import PlanName, SubscriptionStatus


class ChangePlanRequest(BaseModel):
    plan: PlanName
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None


class SetStatusRequest(BaseModel):
    status: SubscriptionStatus


class SyncRequest(BaseModel):
    force: bool = False


class RenewalsRequest(BaseModel):
    as_of: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    user_id: str
    plan: PlanName
    status: SubscriptionStatus
    total_credits: int
    used_credits: int
    remaining_credits: int
    period_start: datetime
    period_end: Optional[datetime] = None


class PlanResponse(BaseModel):
    name: PlanName
    display_name: str
    credit_allotment: int
    price: float


class PlanCatalogResponse(BaseModel):
    plans: list[PlanResponse]
    feature_costs: dict[str, int]


class UsageHistoryItem(BaseModel):
    action: Optional[str]
    credits_used: int
    remaining_credits_after: int
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class UsageSummaryResponse(BaseModel):
    user_id: str
    plan: PlanName
    period_start: datetime
    used_credits: int
    logged_credits: int
    by_action: dict[str, int]
    calls_by_action: dict[str, int]
    consistent: bool


class SubscriptionAnalyticsResponse(BaseModel):
    total_subscriptions: int
    active_subscriptions: int
    plan_distribution: dict[str, int]
    total_credits_used: int
    revenue_by_plan: dict[str, float]


class RenewalsResponse(BaseModel):
    renewed: list[str]


class WebhookResponse(BaseModel):
    received: bool = True
    event_type: Optional[str] = None
    handled: bool = False
