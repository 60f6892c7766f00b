from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..cache.base import AsyncCacheBackend
from ..models.plans import PlanCatalog
from ..models.subscription import PlanName, SubscriptionStatus


logger = logging.getLogger(__name__)

_ACTIVE = {"active", "trialing"}
_CANCELED = {"canceled", "unpaid", "incomplete_expired"}


def map_external_status(status: Optional[str]) -> SubscriptionStatus:
    """Translate a billing provider subscription status into a ledger status."""
    if status in _ACTIVE:
        return SubscriptionStatus.ACTIVE
    if status == "past_due":
        return SubscriptionStatus.PAST_DUE
    if status in _CANCELED:
        return SubscriptionStatus.CANCELED
    return SubscriptionStatus.INACTIVE


class ExternalSubscription(BaseModel):
    """Provider-side subscription, reduced to the fields entitlement needs."""

    subscription_ref: str
    status: str
    price_ref: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class Entitlement(BaseModel):
    """What the External Billing Source says an account is entitled to."""

    customer_ref: str
    subscription_ref: Optional[str] = None
    plan: PlanName
    status: SubscriptionStatus
    credit_allotment: int
    price_ref: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    linkage_discovered: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def plan_known(self) -> bool:
        return self.plan != PlanName.UNKNOWN


class ExternalBillingSource(ABC):
    """
    Read-only view of the billing provider.

    Subclasses implement the provider lookups; this class owns the linkage
    order (stored customer ref, account id in customer metadata, registered
    email), plan resolution through the catalog and the entitlement cache.
    Provider faults surface as ``ExternalSourceUnavailableError``.
    """

    cache_prefix = "entitlement:"

    def __init__(
        self,
        catalog: PlanCatalog,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 60,
    ) -> None:
        self._catalog = catalog
        self._cache = cache
        self._cache_ttl = cache_ttl_seconds

    async def close(self) -> None:
        return None

    @abstractmethod
    async def _customer_exists(self, customer_ref: str) -> bool: ...

    @abstractmethod
    async def _find_customer_by_account(self, user_id: str) -> Optional[str]: ...

    @abstractmethod
    async def _find_customer_by_email(self, email: str) -> Optional[str]: ...

    @abstractmethod
    async def _latest_subscription(self, customer_ref: str) -> Optional[ExternalSubscription]:
        """Most relevant subscription for the customer: live ones first, then newest."""
        ...

    async def get_entitlement(
        self,
        user_id: str,
        *,
        customer_ref: Optional[str] = None,
        email: Optional[str] = None,
        use_cache: bool = True,
    ) -> Optional[Entitlement]:
        """
        Resolve the account's current entitlement, or None when the provider
        knows no customer for it.
        """
        if use_cache and self._cache is not None:
            cached = await self._cache.get(self.cache_prefix + user_id)
            if cached is not None:
                return Entitlement.model_validate(cached)

        resolved, discovered = await self._resolve_customer(user_id, customer_ref, email)
        if resolved is None:
            logger.info("No external customer linked", extra={"user_id": user_id})
            return None

        subscription = await self._latest_subscription(resolved)
        entitlement = self._to_entitlement(resolved, subscription, discovered)

        if self._cache is not None:
            await self._cache.set(
                self.cache_prefix + user_id,
                entitlement.model_dump(mode="json"),
                ttl_seconds=self._cache_ttl,
            )
        return entitlement

    async def invalidate(self, user_id: str) -> None:
        if self._cache is not None:
            await self._cache.delete(self.cache_prefix + user_id)

    async def _resolve_customer(
        self, user_id: str, customer_ref: Optional[str], email: Optional[str]
    ) -> tuple[Optional[str], bool]:
        if customer_ref and await self._customer_exists(customer_ref):
            return customer_ref, False

        found = await self._find_customer_by_account(user_id)
        if found is None and email:
            found = await self._find_customer_by_email(email)
            if found is not None:
                logger.info(
                    "External customer found by email fallback",
                    extra={"user_id": user_id, "customer_ref": found},
                )
        return found, found is not None and found != customer_ref

    def _to_entitlement(
        self,
        customer_ref: str,
        subscription: Optional[ExternalSubscription],
        discovered: bool,
    ) -> Entitlement:
        if subscription is None:
            free = self._catalog.get(PlanName.FREE)
            return Entitlement(
                customer_ref=customer_ref,
                plan=free.name,
                status=SubscriptionStatus.ACTIVE,
                credit_allotment=free.credit_allotment,
                linkage_discovered=discovered,
            )

        plan = self._catalog.resolve_price_ref(subscription.price_ref)
        if plan.name == PlanName.UNKNOWN:
            logger.warning(
                "External price %s does not map to a catalog plan",
                subscription.price_ref,
                extra={"customer_ref": customer_ref},
            )
        return Entitlement(
            customer_ref=customer_ref,
            subscription_ref=subscription.subscription_ref,
            plan=plan.name,
            status=map_external_status(subscription.status),
            credit_allotment=plan.credit_allotment,
            price_ref=subscription.price_ref,
            period_start=subscription.period_start,
            period_end=subscription.period_end,
            linkage_discovered=discovered,
        )
