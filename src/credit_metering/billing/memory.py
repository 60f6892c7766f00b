from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from ..cache.base import AsyncCacheBackend
from ..errors import ExternalSourceUnavailableError
from ..models.plans import PlanCatalog
from .base import ExternalBillingSource, ExternalSubscription


class InMemoryBillingSource(ExternalBillingSource):
    """
    Billing provider double for tests and local development.

    Customers and subscriptions are registered directly; ``available = False``
    makes every lookup fail like an unreachable provider.
    """

    def __init__(
        self,
        catalog: PlanCatalog,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 60,
    ) -> None:
        super().__init__(catalog, cache=cache, cache_ttl_seconds=cache_ttl_seconds)
        self._customers: Dict[str, Dict[str, Optional[str]]] = {}
        self._subscriptions: Dict[str, List[ExternalSubscription]] = {}
        self.available = True
        self.lookups = 0

    def add_customer(
        self,
        customer_ref: str,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> None:
        self._customers[customer_ref] = {"user_id": user_id, "email": email}

    def add_subscription(
        self,
        customer_ref: str,
        price_ref: Optional[str],
        *,
        status: str = "active",
        subscription_ref: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> ExternalSubscription:
        subs = self._subscriptions.setdefault(customer_ref, [])
        sub = ExternalSubscription(
            subscription_ref=subscription_ref or f"sub_{customer_ref}_{len(subs) + 1}",
            status=status,
            price_ref=price_ref,
            period_start=period_start,
            period_end=period_end,
        )
        subs.insert(0, sub)
        return sub

    def _check(self) -> None:
        self.lookups += 1
        if not self.available:
            raise ExternalSourceUnavailableError(reason="in-memory source disabled")

    async def _customer_exists(self, customer_ref: str) -> bool:
        self._check()
        return customer_ref in self._customers

    async def _find_customer_by_account(self, user_id: str) -> Optional[str]:
        self._check()
        for ref, data in self._customers.items():
            if data["user_id"] == user_id:
                return ref
        return None

    async def _find_customer_by_email(self, email: str) -> Optional[str]:
        self._check()
        for ref, data in self._customers.items():
            if data["email"] == email:
                return ref
        return None

    async def _latest_subscription(self, customer_ref: str) -> Optional[ExternalSubscription]:
        self._check()
        subs = self._subscriptions.get(customer_ref, [])
        for sub in subs:
            if sub.status in ("active", "trialing", "past_due"):
                return sub
        return subs[0] if subs else None
