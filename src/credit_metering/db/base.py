from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..models.subscription import AccountSubscription, SubscriptionStatus
from ..models.usage import UsageEvent, UsageEventType


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface for the Ledger Store and Usage Log.

    Subscription rows are only ever mutated through
    ``compare_and_set_subscription``, which must be a single atomic
    conditional write at the data layer. Backends raise
    ``PersistenceError`` when the store is unreachable or rejects a write.
    """

    async def close(self) -> None:
        """Release client resources; called once on shutdown."""
        return None

    # Ledger Store
    @abstractmethod
    async def get_subscription(self, user_id: str) -> Optional[AccountSubscription]: ...

    @abstractmethod
    async def insert_subscription(self, subscription: AccountSubscription) -> AccountSubscription:
        """
        Insert-if-absent. Returns the stored row, which is the pre-existing one
        when another writer provisioned the account first.
        """
        ...

    @abstractmethod
    async def compare_and_set_subscription(
        self,
        user_id: str,
        expected_version: int,
        changes: Mapping[str, Any],
    ) -> Optional[AccountSubscription]:
        """
        Apply ``changes`` and bump ``version`` only if the stored row still has
        ``expected_version``. Returns the updated row, or None on conflict.
        """
        ...

    @abstractmethod
    async def find_subscription_by_customer_ref(
        self, customer_ref: str
    ) -> Optional[AccountSubscription]: ...

    @abstractmethod
    async def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        period_ends_before: Optional[datetime] = None,
    ) -> Iterable[AccountSubscription]: ...

    # Usage Log
    @abstractmethod
    async def add_usage_event(self, event: UsageEvent) -> UsageEvent: ...

    @abstractmethod
    async def get_usage_events(
        self,
        user_id: str,
        period_start: Optional[datetime] = None,
        event_types: Optional[Sequence[UsageEventType]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> Iterable[UsageEvent]: ...
