from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from ..db.base import BaseDBManager
from ..errors import ConcurrencyConflictError
from ..models.base import utcnow
from ..models.subscription import SubscriptionStatus
from .credit_service import CreditService


logger = logging.getLogger(__name__)


class RenewalService:
    """
    Billing-period rollover for accounts the billing provider does not renew.

    Invoked by an external scheduler. Accounts with an external subscription
    are renewed by the provider's invoice webhooks and skipped here.
    """

    def __init__(self, db: BaseDBManager, credit_service: CreditService) -> None:
        self._db = db
        self._credit_service = credit_service

    async def renew_elapsed_periods(self, as_of: Optional[datetime] = None) -> List[str]:
        as_of = as_of or utcnow()
        due = await self._db.list_subscriptions(
            status=SubscriptionStatus.ACTIVE, period_ends_before=as_of
        )

        renewed: List[str] = []
        for sub in due:
            if sub.external_subscription_ref:
                continue
            try:
                if await self._credit_service.refresh(sub.user_id):
                    renewed.append(sub.user_id)
            except ConcurrencyConflictError:
                # Picked up again by the next run
                logger.warning("Renewal skipped after conflicts", extra={"user_id": sub.user_id})

        logger.info("Renewed %s elapsed periods", len(renewed), extra={"as_of": as_of.isoformat()})
        return renewed
