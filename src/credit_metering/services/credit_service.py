from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Tuple

from ..db.base import BaseDBManager
from ..errors import ConcurrencyConflictError, NoSubscriptionError, PersistenceError
from ..logging.usage_logger import UsageLogger
from ..models.base import utcnow
from ..models.credits import ConsumeResult, CreditBalance, SufficiencyCheck
from ..models.plans import PlanCatalog
from ..models.subscription import AccountSubscription, PlanName, SubscriptionStatus
from ..models.usage import UsageEvent, UsageEventType


logger = logging.getLogger(__name__)

ChangeBuilder = Callable[[AccountSubscription], Optional[Mapping[str, Any]]]


class CreditService:
    """
    Credit Accounting API over the Ledger Store.

    Every mutation reads the row, builds the new field values and writes them
    with a compare-and-set on ``version``; a lost race re-reads and re-checks,
    up to ``max_retries`` times, before raising ConcurrencyConflictError.
    """

    def __init__(
        self,
        db: BaseDBManager,
        usage_logger: UsageLogger,
        catalog: PlanCatalog,
        *,
        default_plan: PlanName = PlanName.FREE,
        auto_provision: bool = True,
        max_retries: int = 5,
        billing_period_days: int = 30,
    ) -> None:
        self._db = db
        self._usage = usage_logger
        self._catalog = catalog
        self._default_plan = default_plan
        self._auto_provision = auto_provision
        self._max_retries = max_retries
        self._period = timedelta(days=billing_period_days)

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_subscription(self, user_id: str) -> Optional[AccountSubscription]:
        """Raw ledger row, without provisioning."""
        return await self._db.get_subscription(user_id)

    async def get_balance(self, user_id: str) -> CreditBalance:
        sub = await self._get_or_provision(user_id)
        return CreditBalance(
            user_id=user_id,
            total=sub.total_credits,
            used=sub.used_credits,
            remaining=sub.remaining_credits,
            plan=sub.plan,
            status=sub.status,
        )

    async def has_sufficient_credits(self, user_id: str, action: str) -> SufficiencyCheck:
        required = self._catalog.cost_of(action)
        try:
            sub = await self._get_or_provision(user_id)
        except NoSubscriptionError:
            return SufficiencyCheck(
                user_id=user_id, action=action, sufficient=False, remaining=0, required=required
            )

        sufficient = required == 0 or (sub.is_active and sub.remaining_credits >= required)
        return SufficiencyCheck(
            user_id=user_id,
            action=action,
            sufficient=sufficient,
            remaining=sub.remaining_credits,
            required=required,
            plan=sub.plan,
            status=sub.status,
        )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def consume(
        self,
        user_id: str,
        action: str,
        metadata: Optional[Mapping[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> ConsumeResult:
        """
        Charge the action's cost against the current period.

        Insufficient credits, inactive subscriptions and missing accounts are
        returned as failed results with nothing charged. Store failures raise
        PersistenceError and leave ``used_credits`` unchanged.
        """
        cost = self._catalog.cost_of(action)
        attempts = self._max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                sub = await self._get_or_provision(user_id)
            except NoSubscriptionError:
                return ConsumeResult(
                    success=False, action=action, required=cost, error="NO_SUBSCRIPTION"
                )

            if cost == 0:
                await self._append(
                    sub,
                    UsageEventType.CONSUMPTION,
                    action=action,
                    metadata=metadata,
                    correlation_id=correlation_id,
                )
                return ConsumeResult(
                    success=True, action=action, remaining_after=sub.remaining_credits
                )

            if not sub.is_active:
                logger.info(
                    "Consumption refused, subscription %s",
                    sub.status.value,
                    extra={"user_id": user_id, "action": action},
                )
                return ConsumeResult(
                    success=False,
                    action=action,
                    remaining_after=sub.remaining_credits,
                    required=cost,
                    error="INACTIVE_SUBSCRIPTION",
                )

            if sub.remaining_credits < cost:
                logger.info(
                    "Insufficient credits: required=%s remaining=%s",
                    cost,
                    sub.remaining_credits,
                    extra={"user_id": user_id, "action": action},
                )
                return ConsumeResult(
                    success=False,
                    action=action,
                    remaining_after=sub.remaining_credits,
                    required=cost,
                    error="INSUFFICIENT_CREDITS",
                )

            updated = await self._db.compare_and_set_subscription(
                user_id,
                sub.version,
                {"used_credits": sub.used_credits + cost, "updated_at": utcnow()},
            )
            if updated is None:
                logger.debug(
                    "Consume lost compare-and-set (attempt %s/%s)",
                    attempt,
                    attempts,
                    extra={"user_id": user_id, "action": action},
                )
                continue

            try:
                await self._append(
                    updated,
                    UsageEventType.CONSUMPTION,
                    action=action,
                    credits=cost,
                    metadata=metadata,
                    correlation_id=correlation_id,
                )
            except PersistenceError:
                await self._revert_charge(updated, cost)
                raise

            return ConsumeResult(
                success=True,
                action=action,
                credits_used=cost,
                remaining_after=updated.remaining_credits,
                required=cost,
            )

        logger.warning(
            "Consume gave up after %s conflicting attempts",
            attempts,
            extra={"user_id": user_id, "action": action},
        )
        raise ConcurrencyConflictError(user_id, attempts)

    async def record_unsettled_charge(
        self,
        user_id: str,
        action: str,
        owed: int,
        reason: str,
        metadata: Optional[Mapping[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> Optional[UsageEvent]:
        """
        Audit a charge that should have happened but did not, e.g. when the
        post-success consume in the request gate fails. Carries zero credits
        so the usage sum is unaffected; reconciliation reports these.
        """
        sub = await self._db.get_subscription(user_id)
        if sub is None:
            logger.error(
                "Cannot record unsettled charge for unknown account",
                extra={"user_id": user_id, "action": action, "owed": owed},
            )
            return None
        return await self._append(
            sub,
            UsageEventType.CHARGE_FAILED,
            action=action,
            metadata={**(metadata or {}), "owed": owed, "reason": reason},
            correlation_id=correlation_id,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def provision(
        self,
        user_id: str,
        plan: PlanName | None = None,
        email: str | None = None,
        external_customer_ref: str | None = None,
        external_subscription_ref: str | None = None,
        correlation_id: str | None = None,
    ) -> AccountSubscription:
        """Create the account's ledger row if it does not exist yet."""
        existing = await self._db.get_subscription(user_id)
        if existing is not None:
            return existing

        plan_def = self._catalog.get(plan or self._default_plan)
        now = utcnow()
        candidate = AccountSubscription(
            user_id=user_id,
            email=email,
            plan=plan_def.name,
            status=SubscriptionStatus.ACTIVE,
            total_credits=plan_def.credit_allotment,
            used_credits=0,
            external_customer_ref=external_customer_ref,
            external_subscription_ref=external_subscription_ref,
            period_start=now,
            period_end=now + self._period,
            created_at=now,
            updated_at=now,
        )
        stored = await self._db.insert_subscription(candidate)
        if stored is candidate:
            logger.info(
                "Provisioned subscription",
                extra={"user_id": user_id, "plan": plan_def.name.value},
            )
            await self._append(
                stored,
                UsageEventType.PROVISION,
                metadata={"plan": plan_def.name.value, "credits": plan_def.credit_allotment},
                correlation_id=correlation_id,
            )
        return stored

    async def refresh(self, user_id: str, correlation_id: str | None = None) -> bool:
        """
        Billing-cycle rollover: used back to 0, total back to the plan's
        allotment, new period. Only for active subscriptions.
        """
        sub = await self._db.get_subscription(user_id)
        if sub is None or not sub.is_active:
            return False

        def changes(cur: AccountSubscription) -> Optional[Mapping[str, Any]]:
            if not cur.is_active:
                return None
            # The plan may have changed since the first read
            plan_def = self._catalog.get(cur.plan)
            start = self._next_period_start(cur)
            return {
                "used_credits": 0,
                "total_credits": plan_def.credit_allotment,
                "period_start": start,
                "period_end": start + self._period,
                "updated_at": utcnow(),
            }

        before, after = await self._mutate(user_id, changes)
        if after is None:
            return False

        await self._append(
            after,
            UsageEventType.REFRESH,
            metadata={"plan": after.plan.value, "previous_used": before.used_credits},
            correlation_id=correlation_id,
        )
        logger.info(
            "Credits refreshed",
            extra={"user_id": user_id, "plan": after.plan.value, "credits": after.total_credits},
        )
        return True

    async def change_plan(
        self,
        user_id: str,
        new_plan: PlanName | str,
        external_customer_ref: str | None = None,
        external_subscription_ref: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        correlation_id: str | None = None,
    ) -> AccountSubscription:
        """
        Move the account onto ``new_plan`` with a fresh period. Idempotent:
        repeating the call against an account already in the target state
        changes nothing.
        """
        plan_def = self._catalog.get(new_plan)
        if await self._db.get_subscription(user_id) is None:
            await self.provision(
                user_id,
                plan=plan_def.name,
                external_customer_ref=external_customer_ref,
                external_subscription_ref=external_subscription_ref,
                correlation_id=correlation_id,
            )

        refs = {
            k: v
            for k, v in (
                ("external_customer_ref", external_customer_ref),
                ("external_subscription_ref", external_subscription_ref),
            )
            if v is not None
        }

        def changes(cur: AccountSubscription) -> Optional[Mapping[str, Any]]:
            in_target = (
                cur.plan == plan_def.name
                and cur.is_active
                and cur.used_credits == 0
                and cur.total_credits == plan_def.credit_allotment
                and all(getattr(cur, k) == v for k, v in refs.items())
            )
            if in_target:
                return None
            if period_start and period_start > cur.period_start:
                start = period_start
            else:
                start = self._next_period_start(cur)
            return {
                "plan": plan_def.name,
                "status": SubscriptionStatus.ACTIVE,
                "total_credits": plan_def.credit_allotment,
                "used_credits": 0,
                "period_start": start,
                "period_end": period_end or start + self._period,
                "updated_at": utcnow(),
                **refs,
            }

        before, after = await self._mutate(user_id, changes)
        if after is None:
            return before

        await self._append(
            after,
            UsageEventType.PLAN_CHANGE,
            metadata={
                "previous_plan": before.plan.value,
                "plan": after.plan.value,
                "previous_used": before.used_credits,
            },
            correlation_id=correlation_id,
        )
        logger.info(
            "Plan changed %s -> %s",
            before.plan.value,
            after.plan.value,
            extra={"user_id": user_id},
        )
        return after

    async def set_status(
        self,
        user_id: str,
        status: SubscriptionStatus,
        correlation_id: str | None = None,
    ) -> AccountSubscription:
        if await self._db.get_subscription(user_id) is None:
            raise NoSubscriptionError(user_id)

        def changes(cur: AccountSubscription) -> Optional[Mapping[str, Any]]:
            if cur.status == status:
                return None
            return {"status": status, "updated_at": utcnow()}

        before, after = await self._mutate(user_id, changes)
        if after is None:
            return before

        await self._append(
            after,
            UsageEventType.STATUS_CHANGE,
            metadata={"previous_status": before.status.value, "status": status.value},
            correlation_id=correlation_id,
        )
        return after

    async def cancel(self, user_id: str, correlation_id: str | None = None) -> AccountSubscription:
        return await self.set_status(user_id, SubscriptionStatus.CANCELED, correlation_id=correlation_id)

    async def link_external_refs(
        self,
        user_id: str,
        customer_ref: str | None = None,
        subscription_ref: str | None = None,
    ) -> AccountSubscription:
        """Persist billing linkage discovered outside the stored identifiers."""
        refs = {
            k: v
            for k, v in (
                ("external_customer_ref", customer_ref),
                ("external_subscription_ref", subscription_ref),
            )
            if v is not None
        }

        def changes(cur: AccountSubscription) -> Optional[Mapping[str, Any]]:
            if all(getattr(cur, k) == v for k, v in refs.items()):
                return None
            return {**refs, "updated_at": utcnow()}

        if await self._db.get_subscription(user_id) is None:
            raise NoSubscriptionError(user_id)
        before, after = await self._mutate(user_id, changes)
        if after is not None:
            logger.info("Linked external billing refs", extra={"user_id": user_id, **refs})
        return after or before

    async def apply_entitlement(
        self,
        user_id: str,
        plan: PlanName,
        status: SubscriptionStatus,
        external_customer_ref: str | None = None,
        external_subscription_ref: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        force: bool = False,
        event_type: UsageEventType = UsageEventType.SYNC,
        correlation_id: str | None = None,
    ) -> Tuple[AccountSubscription, AccountSubscription]:
        """
        Overwrite plan, allotment and status with externally authoritative
        values. A plan change or a newer external period starts a new local
        period; otherwise usage is preserved, capped at the new allotment, and
        any cap is logged as a signed adjustment event.
        """
        plan_def = self._catalog.get(plan)
        if await self._db.get_subscription(user_id) is None:
            await self.provision(
                user_id,
                plan=plan_def.name,
                external_customer_ref=external_customer_ref,
                external_subscription_ref=external_subscription_ref,
                correlation_id=correlation_id,
            )

        def changes(cur: AccountSubscription) -> Optional[Mapping[str, Any]]:
            rollover = cur.plan != plan_def.name or (
                period_start is not None and period_start > cur.period_start
            )
            target: dict[str, Any] = {
                "plan": plan_def.name,
                "status": status,
                "total_credits": plan_def.credit_allotment,
            }
            if external_customer_ref is not None:
                target["external_customer_ref"] = external_customer_ref
            if external_subscription_ref is not None:
                target["external_subscription_ref"] = external_subscription_ref

            if rollover:
                start = (
                    period_start
                    if period_start is not None and period_start > cur.period_start
                    else self._next_period_start(cur)
                )
                target.update(
                    used_credits=0,
                    period_start=start,
                    period_end=period_end or start + self._period,
                )
            else:
                target["used_credits"] = min(cur.used_credits, plan_def.credit_allotment)
                if period_end is not None:
                    target["period_end"] = period_end

            if not force and all(getattr(cur, k) == v for k, v in target.items()):
                return None
            target["updated_at"] = utcnow()
            return target

        before, after = await self._mutate(user_id, changes)
        if after is None:
            return before, before

        same_period = before.period_start == after.period_start
        if same_period and after.used_credits != before.used_credits:
            await self._append(
                after,
                UsageEventType.ADJUSTMENT,
                credits=after.used_credits - before.used_credits,
                metadata={"reason": "allotment reduced below usage"},
                correlation_id=correlation_id,
            )
        await self._append(
            after,
            event_type,
            metadata={
                "previous_plan": before.plan.value,
                "plan": after.plan.value,
                "previous_total": before.total_credits,
                "total": after.total_credits,
                "previous_status": before.status.value,
                "status": after.status.value,
                "forced": force,
            },
            correlation_id=correlation_id,
        )
        return before, after

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_or_provision(self, user_id: str) -> AccountSubscription:
        sub = await self._db.get_subscription(user_id)
        if sub is not None:
            return sub
        if not self._auto_provision:
            raise NoSubscriptionError(user_id)
        return await self.provision(user_id)

    async def _mutate(
        self, user_id: str, build_changes: ChangeBuilder
    ) -> Tuple[AccountSubscription, Optional[AccountSubscription]]:
        """
        Compare-and-set loop. Returns ``(before, after)``; ``after`` is None
        when ``build_changes`` declined to change the row.
        """
        attempts = self._max_retries + 1
        for _ in range(attempts):
            current = await self._db.get_subscription(user_id)
            if current is None:
                raise NoSubscriptionError(user_id)
            changes = build_changes(current)
            if changes is None:
                return current, None
            updated = await self._db.compare_and_set_subscription(
                user_id, current.version, changes
            )
            if updated is not None:
                return current, updated
        raise ConcurrencyConflictError(user_id, attempts)

    async def _revert_charge(self, charged: AccountSubscription, cost: int) -> None:
        """Undo a charge whose usage event could not be written."""
        current: Optional[AccountSubscription] = charged
        for _ in range(self._max_retries + 1):
            if current is None or current.period_start != charged.period_start:
                break
            reverted = await self._db.compare_and_set_subscription(
                charged.user_id,
                current.version,
                {"used_credits": max(current.used_credits - cost, 0), "updated_at": utcnow()},
            )
            if reverted is not None:
                return
            current = await self._db.get_subscription(charged.user_id)
        logger.error(
            "Charge stands without a usage event; reconciliation will flag it",
            extra={"user_id": charged.user_id, "credits": cost},
        )

    def _next_period_start(self, cur: AccountSubscription) -> datetime:
        # Strictly after the current period so usage events never straddle periods
        return max(utcnow(), cur.period_start + timedelta(milliseconds=1))

    async def _append(
        self,
        sub: AccountSubscription,
        event_type: UsageEventType,
        action: str | None = None,
        credits: int = 0,
        metadata: Optional[Mapping[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> UsageEvent:
        event = UsageEvent(
            user_id=sub.user_id,
            event_type=event_type,
            action=action,
            credits_used=credits,
            remaining_credits_after=sub.remaining_credits,
            period_start=sub.period_start,
            metadata=dict(metadata or {}),
            correlation_id=correlation_id,
        )
        return await self._usage.append(event)
