from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .base import BaseDBManager
from ..models.subscription import AccountSubscription, SubscriptionStatus
from ..models.usage import UsageEvent, UsageEventType


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    The compare-and-set has no suspension point between the version check
    and the write, so it is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, AccountSubscription] = {}
        self._usage_events: List[UsageEvent] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    # Ledger Store
    async def get_subscription(self, user_id: str) -> Optional[AccountSubscription]:
        sub = self._subscriptions.get(user_id)
        return sub.model_copy() if sub is not None else None

    async def insert_subscription(self, subscription: AccountSubscription) -> AccountSubscription:
        existing = self._subscriptions.get(subscription.user_id)
        if existing is not None:
            return existing.model_copy()
        self._subscriptions[subscription.user_id] = subscription.model_copy()
        return subscription

    async def compare_and_set_subscription(
        self,
        user_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> Optional[AccountSubscription]:
        current = self._subscriptions.get(user_id)
        if current is None or current.version != expected_version:
            return None
        updated = current.model_copy(update={**changes, "version": expected_version + 1})
        self._subscriptions[user_id] = updated
        return updated.model_copy()

    async def find_subscription_by_customer_ref(
        self, customer_ref: str
    ) -> Optional[AccountSubscription]:
        for sub in self._subscriptions.values():
            if sub.external_customer_ref == customer_ref:
                return sub.model_copy()
        return None

    async def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        period_ends_before: Optional[datetime] = None,
    ) -> Iterable[AccountSubscription]:
        result = []
        for sub in self._subscriptions.values():
            if status is not None and sub.status != status:
                continue
            if period_ends_before is not None and (
                sub.period_end is None or sub.period_end > period_ends_before
            ):
                continue
            result.append(sub.model_copy())
        return result

    # Usage Log
    async def add_usage_event(self, event: UsageEvent) -> UsageEvent:
        if event.id is None:
            event.id = self._next_id()
        self._usage_events.append(event)
        return event

    async def get_usage_events(
        self,
        user_id: str,
        period_start: Optional[datetime] = None,
        event_types: Optional[Sequence[UsageEventType]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> Iterable[UsageEvent]:
        events = [
            e
            for e in self._usage_events
            if e.user_id == user_id
            and (period_start is None or e.period_start == period_start)
            and (event_types is None or e.event_type in event_types)
        ]
        if newest_first:
            events.reverse()
        if limit is not None:
            events = events[:limit]
        return events
