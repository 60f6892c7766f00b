from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from .subscription import PlanName, SubscriptionStatus


class CreditBalance(BaseModel):
    user_id: str
    total: int
    used: int
    remaining: int
    plan: PlanName
    status: SubscriptionStatus


class SufficiencyCheck(BaseModel):
    """Pure pre-execution check; ``sufficient`` is False for inactive subscriptions too."""

    user_id: str
    action: str
    sufficient: bool
    remaining: int
    required: int
    plan: Optional[PlanName] = None
    status: Optional[SubscriptionStatus] = None


class ConsumeResult(BaseModel):
    success: bool
    action: str
    credits_used: int = 0
    remaining_after: int = 0
    required: int = 0
    error: Optional[str] = Field(
        default=None,
        description="INSUFFICIENT_CREDITS, INACTIVE_SUBSCRIPTION or NO_SUBSCRIPTION on failure.",
    )


class SystemSnapshot(BaseModel):
    """Credit totals as seen by each system at one point in a sync."""

    ledger: int
    external: int


class SyncResult(BaseModel):
    success: bool
    message: str
    discrepancy_found: bool
    degraded: bool = False
    before_sync: SystemSnapshot
    after_sync: SystemSnapshot
    plan_before: Optional[PlanName] = None
    plan_after: Optional[PlanName] = None


class ConsistencyReport(BaseModel):
    user_id: str
    is_consistent: bool
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class RecoveryResult(BaseModel):
    success: bool
    recovered_credits: int
    source: Literal["external", "ledger", "none"]
    message: str


class UsageAudit(BaseModel):
    user_id: str
    used_credits: int
    logged_credits: int
    unsettled_charges: int = 0

    @property
    def is_consistent(self) -> bool:
        return self.used_credits == self.logged_credits
