from __future__ import annotations

from collections import Counter, defaultdict
from typing import Dict, List

from ..db.base import BaseDBManager
from ..errors import NoSubscriptionError
from ..models.api_models import (
    SubscriptionAnalyticsResponse,
    UsageHistoryItem,
    UsageSummaryResponse,
)
from ..models.plans import PlanCatalog
from ..models.subscription import SubscriptionStatus
from ..models.usage import UsageEventType


class AnalyticsService:
    """
    Read-only queries over the Usage Log and Ledger Store. Balances are never
    computed from here.
    """

    def __init__(self, db: BaseDBManager, catalog: PlanCatalog) -> None:
        self._db = db
        self._catalog = catalog

    async def usage_history(self, user_id: str, limit: int = 50) -> List[UsageHistoryItem]:
        events = await self._db.get_usage_events(
            user_id,
            event_types=[UsageEventType.CONSUMPTION],
            limit=limit,
            newest_first=True,
        )
        return [
            UsageHistoryItem(
                action=e.action,
                credits_used=e.credits_used,
                remaining_credits_after=e.remaining_credits_after,
                timestamp=e.created_at,
                metadata=e.metadata,
            )
            for e in events
        ]

    async def usage_summary(self, user_id: str) -> UsageSummaryResponse:
        sub = await self._db.get_subscription(user_id)
        if sub is None:
            raise NoSubscriptionError(user_id)

        events = await self._db.get_usage_events(user_id, period_start=sub.period_start)
        by_action: Dict[str, int] = defaultdict(int)
        calls: Counter[str] = Counter()
        logged = 0
        for e in events:
            logged += e.credits_used
            if e.event_type == UsageEventType.CONSUMPTION and e.action:
                by_action[e.action] += e.credits_used
                calls[e.action] += 1

        return UsageSummaryResponse(
            user_id=user_id,
            plan=sub.plan,
            period_start=sub.period_start,
            used_credits=sub.used_credits,
            logged_credits=logged,
            by_action=dict(by_action),
            calls_by_action=dict(calls),
            consistent=logged == sub.used_credits,
        )

    async def subscription_analytics(self) -> SubscriptionAnalyticsResponse:
        subs = list(await self._db.list_subscriptions())
        distribution: Counter[str] = Counter(s.plan.value for s in subs)
        active = [s for s in subs if s.status == SubscriptionStatus.ACTIVE]

        revenue: Dict[str, float] = {}
        for plan in self._catalog.plans:
            count = sum(1 for s in active if s.plan == plan.name)
            revenue[plan.name.value] = round(count * plan.price, 2)

        return SubscriptionAnalyticsResponse(
            total_subscriptions=len(subs),
            active_subscriptions=len(active),
            plan_distribution=dict(distribution),
            total_credits_used=sum(s.used_credits for s in subs),
            revenue_by_plan=revenue,
        )
