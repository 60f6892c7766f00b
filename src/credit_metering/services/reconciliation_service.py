from __future__ import annotations

import logging
from typing import Optional

from ..billing.base import Entitlement, ExternalBillingSource
from ..db.base import BaseDBManager
from ..errors import DivergenceError, ExternalSourceUnavailableError, NoSubscriptionError
from ..models.credits import (
    ConsistencyReport,
    RecoveryResult,
    SyncResult,
    SystemSnapshot,
    UsageAudit,
)
from ..models.subscription import AccountSubscription, PlanName
from ..models.usage import UsageEventType
from .credit_service import CreditService


logger = logging.getLogger(__name__)


class ReconciliationService:
    """
    Detects and corrects drift between the Ledger Store and the External
    Billing Source.

    The billing source is authoritative for plan, allotment and status; the
    ledger is authoritative for usage. Nothing here writes to the provider.
    """

    def __init__(
        self,
        db: BaseDBManager,
        credit_service: CreditService,
        billing: ExternalBillingSource,
    ) -> None:
        self._db = db
        self._credits = credit_service
        self._billing = billing

    async def audit_usage(self, user_id: str) -> UsageAudit:
        """Compare the current period's Usage Log sum against ``used_credits``."""
        sub = await self._db.get_subscription(user_id)
        if sub is None:
            raise NoSubscriptionError(user_id)
        events = list(await self._db.get_usage_events(user_id, period_start=sub.period_start))
        return UsageAudit(
            user_id=user_id,
            used_credits=sub.used_credits,
            logged_credits=sum(e.credits_used for e in events),
            unsettled_charges=sum(1 for e in events if e.event_type == UsageEventType.CHARGE_FAILED),
        )

    async def validate_consistency(self, user_id: str) -> ConsistencyReport:
        """Read-only diagnostics; never mutates either system."""
        issues: list[str] = []
        recommendations: list[str] = []

        sub = await self._db.get_subscription(user_id)
        if sub is None:
            issues.append("no ledger row")
            recommendations.append("Provision the account or run sync to create it from billing.")

        entitlement: Optional[Entitlement] = None
        try:
            entitlement = await self._billing.get_entitlement(
                user_id,
                customer_ref=sub.external_customer_ref if sub else None,
                email=sub.email if sub else None,
            )
        except ExternalSourceUnavailableError:
            issues.append("external billing source unavailable")
            recommendations.append("Retry once the billing provider is reachable.")

        if entitlement is not None:
            if not entitlement.plan_known:
                issues.append(f"unknown external plan: price {entitlement.price_ref}")
                recommendations.append("Add the external price reference to the plan catalog.")
            if not entitlement.is_active:
                issues.append(f"external subscription inactive: {entitlement.status.value}")
                recommendations.append("Ask the customer to update payment or reactivate.")
            if sub is not None and entitlement.plan_known:
                if sub.total_credits != entitlement.credit_allotment:
                    issues.append(
                        f"credit total mismatch: ledger={sub.total_credits} "
                        f"external={entitlement.credit_allotment}"
                    )
                    recommendations.append("Run sync to adopt the external allotment.")
                if sub.plan != entitlement.plan:
                    issues.append(f"plan mismatch: ledger={sub.plan.value} external={entitlement.plan.value}")
            if sub is not None and sub.status != entitlement.status:
                issues.append(f"status mismatch: ledger={sub.status.value} external={entitlement.status.value}")
                recommendations.append("Run sync to adopt the external status.")
            if entitlement.linkage_discovered:
                issues.append("external linkage not stored")
                recommendations.append("Run sync to persist the discovered customer linkage.")
        elif sub is not None and sub.plan != PlanName.FREE and not issues:
            issues.append("no external customer for paid plan")
            recommendations.append("Link the account to its billing customer or downgrade to free.")

        if sub is not None:
            audit = await self.audit_usage(user_id)
            if not audit.is_consistent:
                issues.append(
                    f"usage log mismatch: used={audit.used_credits} logged={audit.logged_credits}"
                )
                recommendations.append("Inspect the usage log for writes lost during failures.")
            if audit.unsettled_charges:
                issues.append(f"unsettled charges: {audit.unsettled_charges}")
                recommendations.append("Review charge_failed events and settle manually if needed.")

        if issues:
            logger.info("Consistency issues found: %s", issues, extra={"user_id": user_id})
        return ConsistencyReport(
            user_id=user_id,
            is_consistent=not issues,
            issues=issues,
            recommendations=recommendations,
        )

    async def require_consistency(self, user_id: str) -> ConsistencyReport:
        """Admin variant of validate_consistency that raises on divergence."""
        report = await self.validate_consistency(user_id)
        if not report.is_consistent:
            raise DivergenceError(user_id, report.issues)
        return report

    async def sync(self, user_id: str, force: bool = False) -> SyncResult:
        """
        Pull the authoritative entitlement (never cached) and overwrite the
        ledger's plan, allotment and status when they differ or ``force`` is set.
        An unreachable provider degrades to the last known ledger state.
        """
        sub = await self._db.get_subscription(user_id)
        ledger_before = sub.total_credits if sub else 0

        try:
            entitlement = await self._billing.get_entitlement(
                user_id,
                customer_ref=sub.external_customer_ref if sub else None,
                email=sub.email if sub else None,
                use_cache=False,
            )
        except ExternalSourceUnavailableError as exc:
            logger.warning(
                "Sync degraded to ledger state: %s",
                exc.message,
                extra={"user_id": user_id, **exc.details},
            )
            snapshot = SystemSnapshot(ledger=ledger_before, external=0)
            return SyncResult(
                success=False,
                message="External billing source unavailable; keeping ledger state",
                discrepancy_found=False,
                degraded=True,
                before_sync=snapshot,
                after_sync=snapshot,
                plan_before=sub.plan if sub else None,
                plan_after=sub.plan if sub else None,
            )

        if entitlement is None:
            snapshot = SystemSnapshot(ledger=ledger_before, external=0)
            return SyncResult(
                success=True,
                message="No external customer linked; ledger unchanged",
                discrepancy_found=sub is not None and sub.plan != PlanName.FREE,
                before_sync=snapshot,
                after_sync=snapshot,
                plan_before=sub.plan if sub else None,
                plan_after=sub.plan if sub else None,
            )

        before = SystemSnapshot(ledger=ledger_before, external=entitlement.credit_allotment)

        if not entitlement.plan_known:
            logger.warning(
                "Sync skipped, unknown external plan",
                extra={"user_id": user_id, "price_ref": entitlement.price_ref},
            )
            if sub is not None and entitlement.linkage_discovered:
                await self._credits.link_external_refs(
                    user_id, entitlement.customer_ref, entitlement.subscription_ref
                )
                await self._billing.invalidate(user_id)
            return SyncResult(
                success=False,
                message=f"External price {entitlement.price_ref} is not in the plan catalog; ledger unchanged",
                discrepancy_found=True,
                before_sync=before,
                after_sync=before,
                plan_before=sub.plan if sub else None,
                plan_after=sub.plan if sub else None,
            )

        discrepancy = self._diverges(sub, entitlement)
        if not discrepancy and not force:
            if entitlement.linkage_discovered and sub is not None:
                await self._credits.link_external_refs(
                    user_id, entitlement.customer_ref, entitlement.subscription_ref
                )
                await self._billing.invalidate(user_id)
            return SyncResult(
                success=True,
                message="Ledger already in sync",
                discrepancy_found=False,
                before_sync=before,
                after_sync=before,
                plan_before=sub.plan if sub else None,
                plan_after=sub.plan if sub else None,
            )

        previous, updated = await self._apply(user_id, entitlement, force, UsageEventType.SYNC)
        logger.info(
            "Synced ledger from external billing: %s/%s -> %s/%s",
            previous.plan.value,
            ledger_before,
            updated.plan.value,
            updated.total_credits,
            extra={"user_id": user_id, "forced": force},
        )
        return SyncResult(
            success=True,
            message="Ledger updated from external billing" if discrepancy else "Forced sync applied",
            discrepancy_found=discrepancy,
            before_sync=before,
            after_sync=SystemSnapshot(
                ledger=updated.total_credits, external=entitlement.credit_allotment
            ),
            plan_before=sub.plan if sub else None,
            plan_after=updated.plan,
        )

    async def emergency_recovery(self, user_id: str) -> RecoveryResult:
        """
        Last-resort balance recovery: external billing first, then whatever the
        ledger holds, then zero.
        """
        sub = await self._db.get_subscription(user_id)

        entitlement: Optional[Entitlement] = None
        try:
            entitlement = await self._billing.get_entitlement(
                user_id,
                customer_ref=sub.external_customer_ref if sub else None,
                email=sub.email if sub else None,
                use_cache=False,
            )
        except ExternalSourceUnavailableError as exc:
            logger.warning(
                "Recovery falling back to ledger: %s", exc.message, extra={"user_id": user_id}
            )

        if entitlement is not None and entitlement.plan_known and entitlement.is_active:
            _, updated = await self._apply(user_id, entitlement, False, UsageEventType.RECOVERY)
            return RecoveryResult(
                success=True,
                recovered_credits=updated.remaining_credits,
                source="external",
                message=f"Recovered {updated.plan.value} entitlement from external billing",
            )

        if sub is not None:
            return RecoveryResult(
                success=True,
                recovered_credits=sub.remaining_credits,
                source="ledger",
                message="External billing unusable; using last known ledger state",
            )

        logger.error("Recovery found no state in either system", extra={"user_id": user_id})
        return RecoveryResult(
            success=False,
            recovered_credits=0,
            source="none",
            message="No ledger row and no external entitlement",
        )

    async def _apply(
        self,
        user_id: str,
        entitlement: Entitlement,
        force: bool,
        event_type: UsageEventType,
    ) -> tuple[AccountSubscription, AccountSubscription]:
        result = await self._credits.apply_entitlement(
            user_id,
            plan=entitlement.plan,
            status=entitlement.status,
            external_customer_ref=entitlement.customer_ref,
            external_subscription_ref=entitlement.subscription_ref,
            period_start=entitlement.period_start,
            period_end=entitlement.period_end,
            force=force,
            event_type=event_type,
        )
        await self._billing.invalidate(user_id)
        return result

    @staticmethod
    def _diverges(sub: Optional[AccountSubscription], entitlement: Entitlement) -> bool:
        if sub is None:
            return True
        return (
            sub.total_credits != entitlement.credit_allotment
            or sub.plan != entitlement.plan
            or sub.status != entitlement.status
            or (
                entitlement.period_start is not None
                and entitlement.period_start > sub.period_start
            )
        )
