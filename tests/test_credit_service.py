from __future__ import annotations

import asyncio
import json

import pytest

from credit_metering.db.memory import InMemoryDBManager
from credit_metering.errors import (
    ConcurrencyConflictError,
    NoSubscriptionError,
    PersistenceError,
    UnknownActionError,
)
from credit_metering.logging.usage_logger import UsageLogger
from credit_metering.models.plans import DEFAULT_FEATURE_COSTS, PlanCatalog
from credit_metering.models.subscription import PlanName, SubscriptionStatus
from credit_metering.models.usage import UsageEventType
from credit_metering.services.credit_service import CreditService


def _service(tmp_path, db=None, catalog=None, **kwargs):
    db = db or InMemoryDBManager()
    usage = UsageLogger(db=db, file_path=tmp_path / "usage.log")
    return CreditService(db, usage, catalog or PlanCatalog.default(), **kwargs), db


async def _period_sum(db, user_id):
    sub = await db.get_subscription(user_id)
    events = await db.get_usage_events(user_id, period_start=sub.period_start)
    return sum(e.credits_used for e in events)


class YieldingDBManager(InMemoryDBManager):
    """Suspends after every read so concurrent consumers interleave."""

    async def get_subscription(self, user_id):
        sub = await super().get_subscription(user_id)
        await asyncio.sleep(0)
        return sub


class AlwaysConflictingDBManager(InMemoryDBManager):
    async def compare_and_set_subscription(self, user_id, expected_version, changes):
        return None


class PlanChangingDBManager(InMemoryDBManager):
    """Lets a plan change land just before the next compare-and-set."""

    def __init__(self) -> None:
        super().__init__()
        self.service = None
        self.change_to = None

    async def compare_and_set_subscription(self, user_id, expected_version, changes):
        if self.change_to is not None:
            plan, self.change_to = self.change_to, None
            await self.service.change_plan(user_id, plan)
        return await super().compare_and_set_subscription(user_id, expected_version, changes)


class BrokenUsageLogDBManager(InMemoryDBManager):
    async def add_usage_event(self, event):
        if event.event_type == UsageEventType.CONSUMPTION:
            raise PersistenceError("usage log unavailable", operation="add_usage_event")
        return await super().add_usage_event(event)


@pytest.mark.asyncio
async def test_basic_plan_consumption_scenario(tmp_path):
    service, _ = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.BASIC)

    first = await service.consume("user-1", "resume_generation")
    assert first.success
    assert first.credits_used == 5
    assert first.remaining_after == 5

    second = await service.consume("user-1", "resume_generation")
    assert second.success
    assert second.remaining_after == 0

    third = await service.consume("user-1", "resume_generation")
    assert not third.success
    assert third.error == "INSUFFICIENT_CREDITS"
    assert third.remaining_after == 0
    assert third.required == 5

    balance = await service.get_balance("user-1")
    assert (balance.total, balance.used, balance.remaining) == (10, 10, 0)

    upgraded = await service.change_plan("user-1", PlanName.STANDARD)
    assert upgraded.total_credits == 50
    assert upgraded.used_credits == 0
    assert upgraded.remaining_credits == 50


@pytest.mark.asyncio
async def test_get_balance_provisions_default_plan(tmp_path):
    service, db = _service(tmp_path)

    balance = await service.get_balance("new-user")
    assert balance.plan == PlanName.FREE
    assert balance.status == SubscriptionStatus.ACTIVE
    assert balance.total == 3
    assert balance.remaining == 3

    events = await db.get_usage_events("new-user")
    assert [e.event_type for e in events] == [UsageEventType.PROVISION]


@pytest.mark.asyncio
async def test_provision_is_insert_if_absent(tmp_path):
    service, db = _service(tmp_path)
    first = await service.provision("user-1", plan=PlanName.PRO, email="a@example.com")
    second = await service.provision("user-1", plan=PlanName.BASIC)

    assert second.plan == PlanName.PRO
    assert second.email == "a@example.com"
    assert first.version == second.version
    events = await db.get_usage_events("user-1", event_types=[UsageEventType.PROVISION])
    assert len(list(events)) == 1


@pytest.mark.asyncio
async def test_without_auto_provision_missing_account_fails_closed(tmp_path):
    service, _ = _service(tmp_path, auto_provision=False)

    with pytest.raises(NoSubscriptionError):
        await service.get_balance("ghost")

    check = await service.has_sufficient_credits("ghost", "ai_suggestions")
    assert not check.sufficient
    assert check.remaining == 0

    result = await service.consume("ghost", "ai_suggestions")
    assert not result.success
    assert result.error == "NO_SUBSCRIPTION"


@pytest.mark.asyncio
async def test_sufficiency_check_does_not_mutate(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.BASIC)
    before = await db.get_subscription("user-1")

    check = await service.has_sufficient_credits("user-1", "personal_brand_strategy")
    assert check.sufficient
    assert check.required == 8
    assert check.remaining == 10

    check = await service.has_sufficient_credits("user-1", "personal_brand_strategy")
    assert (await db.get_subscription("user-1")) == before


@pytest.mark.asyncio
async def test_inactive_subscription_is_refused(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.STANDARD)
    await service.set_status("user-1", SubscriptionStatus.PAST_DUE)

    check = await service.has_sufficient_credits("user-1", "ai_suggestions")
    assert not check.sufficient
    assert check.status == SubscriptionStatus.PAST_DUE

    result = await service.consume("user-1", "ai_suggestions")
    assert not result.success
    assert result.error == "INACTIVE_SUBSCRIPTION"
    assert (await db.get_subscription("user-1")).used_credits == 0


@pytest.mark.asyncio
async def test_concurrent_consumes_never_overspend(tmp_path):
    db = YieldingDBManager()
    service, _ = _service(tmp_path, db=db, max_retries=40)
    await service.provision("user-1", plan=PlanName.BASIC)

    results = await asyncio.gather(
        *(service.consume("user-1", "ai_suggestions") for _ in range(15))
    )

    successes = [r for r in results if r.success]
    failures = [r for r in results if not r.success]
    assert len(successes) == 10
    assert len(failures) == 5
    assert all(r.error == "INSUFFICIENT_CREDITS" for r in failures)

    sub = await db.get_subscription("user-1")
    assert sub.used_credits == 10
    assert await _period_sum(db, "user-1") == 10


@pytest.mark.asyncio
async def test_conflict_surfaces_after_bounded_retries(tmp_path):
    db = AlwaysConflictingDBManager()
    service, _ = _service(tmp_path, db=db, max_retries=2)
    await service.provision("user-1", plan=PlanName.BASIC)

    with pytest.raises(ConcurrencyConflictError) as exc_info:
        await service.consume("user-1", "ai_suggestions")

    assert exc_info.value.attempts == 3
    assert (await db.get_subscription("user-1")).used_credits == 0


@pytest.mark.asyncio
async def test_persistence_failure_leaves_balance_unchanged(tmp_path):
    db = BrokenUsageLogDBManager()
    service, _ = _service(tmp_path, db=db)
    await service.provision("user-1", plan=PlanName.BASIC)

    with pytest.raises(PersistenceError):
        await service.consume("user-1", "resume_generation")

    sub = await db.get_subscription("user-1")
    assert sub.used_credits == 0
    assert sub.remaining_credits == 10


@pytest.mark.asyncio
async def test_unknown_action_rejected_by_default(tmp_path):
    service, _ = _service(tmp_path)
    await service.provision("user-1")

    with pytest.raises(UnknownActionError):
        await service.consume("user-1", "teleportation")


@pytest.mark.asyncio
async def test_unmapped_action_is_free_but_audited_when_allowed(tmp_path):
    catalog = PlanCatalog.default(allow_unmapped_actions=True)
    service, db = _service(tmp_path, catalog=catalog)
    await service.provision("user-1")

    result = await service.consume("user-1", "teleportation", metadata={"path": "/x"})
    assert result.success
    assert result.credits_used == 0
    assert result.remaining_after == 3

    events = await db.get_usage_events("user-1", event_types=[UsageEventType.CONSUMPTION])
    (event,) = events
    assert event.action == "teleportation"
    assert event.credits_used == 0
    assert event.metadata == {"path": "/x"}


@pytest.mark.asyncio
async def test_change_plan_is_idempotent(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.BASIC)
    await service.consume("user-1", "resume_generation")

    once = await service.change_plan("user-1", PlanName.PRO, external_customer_ref="cus_1")
    twice = await service.change_plan("user-1", PlanName.PRO, external_customer_ref="cus_1")

    assert twice == once
    assert (once.plan, once.total_credits, once.used_credits, once.status) == (
        PlanName.PRO,
        200,
        0,
        SubscriptionStatus.ACTIVE,
    )
    assert once.external_customer_ref == "cus_1"
    changes = await db.get_usage_events("user-1", event_types=[UsageEventType.PLAN_CHANGE])
    assert len(list(changes)) == 1


@pytest.mark.asyncio
async def test_change_plan_reactivates_and_provisions(tmp_path):
    service, _ = _service(tmp_path)

    created = await service.change_plan("fresh", PlanName.STANDARD)
    assert created.plan == PlanName.STANDARD
    assert created.total_credits == 50

    await service.cancel("fresh")
    reactivated = await service.change_plan("fresh", PlanName.STANDARD)
    assert reactivated.status == SubscriptionStatus.ACTIVE


@pytest.mark.asyncio
async def test_refresh_resets_usage_and_keeps_plan(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.STANDARD)
    await service.consume("user-1", "resume_generation")
    await service.consume("user-1", "salary_negotiation")
    before = await db.get_subscription("user-1")
    assert before.used_credits == 7

    assert await service.refresh("user-1")

    after = await db.get_subscription("user-1")
    assert (after.plan, after.total_credits, after.used_credits) == (PlanName.STANDARD, 50, 0)
    assert after.period_start > before.period_start
    assert await _period_sum(db, "user-1") == 0


@pytest.mark.asyncio
async def test_refresh_uses_plan_written_by_concurrent_change(tmp_path):
    db = PlanChangingDBManager()
    service, _ = _service(tmp_path, db=db)
    db.service = service
    await service.provision("user-1", plan=PlanName.BASIC)
    await service.consume("user-1", "resume_generation")

    db.change_to = PlanName.PRO
    assert await service.refresh("user-1")

    after = await db.get_subscription("user-1")
    assert (after.plan, after.total_credits, after.used_credits) == (PlanName.PRO, 200, 0)
    assert await _period_sum(db, "user-1") == 0


@pytest.mark.asyncio
async def test_refresh_requires_active_subscription(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.STANDARD)
    await service.consume("user-1", "ai_suggestions")
    await service.cancel("user-1")

    assert not await service.refresh("user-1")
    assert not await service.refresh("nobody")
    assert (await db.get_subscription("user-1")).used_credits == 1


@pytest.mark.asyncio
async def test_cancel_is_a_status_transition(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.BASIC)

    canceled = await service.cancel("user-1")
    assert canceled.status == SubscriptionStatus.CANCELED
    assert (await db.get_subscription("user-1")) is not None

    with pytest.raises(NoSubscriptionError):
        await service.cancel("nobody")


@pytest.mark.asyncio
async def test_usage_log_sum_equals_used_credits(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.PRO)
    for action in ("resume_generation", "mock_interview", "ai_suggestions", "job_tailoring"):
        assert (await service.consume("user-1", action)).success

    sub = await db.get_subscription("user-1")
    assert sub.used_credits == 15
    assert await _period_sum(db, "user-1") == 15


@pytest.mark.asyncio
async def test_shrinking_allotment_logs_adjustment(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.STANDARD)
    for _ in range(5):
        await service.consume("user-1", "mock_interview")

    smaller = [
        p.model_copy(update={"credit_allotment": 20}) if p.name == PlanName.STANDARD else p
        for p in PlanCatalog.default().plans
    ]
    resized, _ = _service(tmp_path, db=db, catalog=PlanCatalog(smaller, DEFAULT_FEATURE_COSTS))

    before, after = await resized.apply_entitlement(
        "user-1", PlanName.STANDARD, SubscriptionStatus.ACTIVE
    )
    assert before.used_credits == 30
    assert (after.total_credits, after.used_credits) == (20, 20)
    assert after.period_start == before.period_start

    adjustments = list(
        await db.get_usage_events("user-1", event_types=[UsageEventType.ADJUSTMENT])
    )
    assert [e.credits_used for e in adjustments] == [-10]
    assert await _period_sum(db, "user-1") == 20


@pytest.mark.asyncio
async def test_record_unsettled_charge_carries_no_credits(tmp_path):
    service, db = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.BASIC)

    event = await service.record_unsettled_charge("user-1", "resume_generation", 5, "CONCURRENCY_CONFLICT")
    assert event.event_type == UsageEventType.CHARGE_FAILED
    assert event.credits_used == 0
    assert event.metadata["owed"] == 5
    assert await _period_sum(db, "user-1") == 0

    assert await service.record_unsettled_charge("nobody", "resume_generation", 5, "x") is None


@pytest.mark.asyncio
async def test_usage_events_are_mirrored_as_jsonl(tmp_path):
    service, _ = _service(tmp_path)
    await service.provision("user-1", plan=PlanName.BASIC)
    await service.consume("user-1", "cover_letter_generation")

    lines = (tmp_path / "usage.log").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    assert [r["event_type"] for r in records] == ["provision", "consumption"]
    assert records[1]["credits_used"] == 3
    assert records[1]["remaining_credits_after"] == 7
