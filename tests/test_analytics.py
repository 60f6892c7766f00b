from __future__ import annotations

from datetime import timedelta

import pytest

from credit_metering.db.memory import InMemoryDBManager
from credit_metering.errors import NoSubscriptionError
from credit_metering.logging.usage_logger import UsageLogger
from credit_metering.models.base import utcnow
from credit_metering.models.plans import PlanCatalog
from credit_metering.models.subscription import PlanName, SubscriptionStatus
from credit_metering.services.analytics_service import AnalyticsService
from credit_metering.services.credit_service import CreditService
from credit_metering.services.renewal_service import RenewalService


def _stack(tmp_path):
    catalog = PlanCatalog.default()
    db = InMemoryDBManager()
    credits = CreditService(db, UsageLogger(db=db, file_path=tmp_path / "usage.log"), catalog)
    return db, credits, AnalyticsService(db, catalog)


@pytest.mark.asyncio
async def test_usage_history_is_newest_first(tmp_path):
    _, credits, analytics = _stack(tmp_path)
    await credits.provision("user-1", plan=PlanName.STANDARD)
    await credits.consume("user-1", "resume_generation")
    await credits.consume("user-1", "ai_suggestions")
    await credits.consume("user-1", "job_tailoring")

    history = await analytics.usage_history("user-1")
    assert [item.action for item in history] == [
        "job_tailoring",
        "ai_suggestions",
        "resume_generation",
    ]
    assert history[0].remaining_credits_after == 41

    assert len(await analytics.usage_history("user-1", limit=2)) == 2


@pytest.mark.asyncio
async def test_usage_summary_groups_by_action(tmp_path):
    _, credits, analytics = _stack(tmp_path)
    await credits.provision("user-1", plan=PlanName.STANDARD)
    await credits.consume("user-1", "ai_suggestions")
    await credits.consume("user-1", "ai_suggestions")
    await credits.consume("user-1", "mock_interview")

    summary = await analytics.usage_summary("user-1")
    assert summary.used_credits == summary.logged_credits == 8
    assert summary.by_action == {"ai_suggestions": 2, "mock_interview": 6}
    assert summary.calls_by_action == {"ai_suggestions": 2, "mock_interview": 1}
    assert summary.consistent

    with pytest.raises(NoSubscriptionError):
        await analytics.usage_summary("ghost")


@pytest.mark.asyncio
async def test_subscription_analytics(tmp_path):
    _, credits, analytics = _stack(tmp_path)
    await credits.provision("a", plan=PlanName.BASIC)
    await credits.provision("b", plan=PlanName.BASIC)
    await credits.provision("c", plan=PlanName.PRO)
    await credits.provision("d", plan=PlanName.FREE)
    await credits.cancel("c")
    await credits.consume("a", "resume_generation")

    report = await analytics.subscription_analytics()
    assert report.total_subscriptions == 4
    assert report.active_subscriptions == 3
    assert report.plan_distribution == {"basic": 2, "pro": 1, "free": 1}
    assert report.total_credits_used == 5
    assert report.revenue_by_plan["basic"] == 19.98
    assert report.revenue_by_plan["pro"] == 0
    assert report.revenue_by_plan["free"] == 0


@pytest.mark.asyncio
async def test_renewals_only_touch_locally_managed_elapsed_periods(tmp_path):
    db, credits, _ = _stack(tmp_path)
    await credits.provision("local", plan=PlanName.BASIC)
    await credits.provision(
        "billed", plan=PlanName.BASIC, external_customer_ref="cus_1", external_subscription_ref="sub_1"
    )
    await credits.provision("gone", plan=PlanName.BASIC)
    await credits.cancel("gone")
    await credits.consume("local", "resume_generation")
    await credits.consume("billed", "resume_generation")

    renewals = RenewalService(db, credits)

    assert await renewals.renew_elapsed_periods() == []

    renewed = await renewals.renew_elapsed_periods(as_of=utcnow() + timedelta(days=31))
    assert renewed == ["local"]

    local = await db.get_subscription("local")
    assert local.used_credits == 0
    assert local.status == SubscriptionStatus.ACTIVE
    assert (await db.get_subscription("billed")).used_credits == 5
    assert (await db.get_subscription("gone")).status == SubscriptionStatus.CANCELED
