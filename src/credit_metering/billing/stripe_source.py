"""
Stripe-backed External Billing Source.

Uses the async resource methods of the ``stripe`` package with a per-request
``api_key``, so no global client state is mutated. Only read calls are made;
plan changes happen through Stripe's own checkout and webhooks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from ..cache.base import AsyncCacheBackend
from ..errors import ExternalSourceUnavailableError
from ..models.plans import PlanCatalog
from .base import ExternalBillingSource, ExternalSubscription


logger = logging.getLogger(__name__)

_LIVE_STATUSES = ("active", "trialing", "past_due")


def as_dict(obj: Any) -> Dict[str, Any]:
    """Plain-dict view of a StripeObject (or a dict already)."""
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if to_dict is not None:
        return to_dict()
    return dict(obj)


def _ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _search_literal(value: str) -> str:
    """Escape a value for a single-quoted Stripe search query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def subscription_from_payload(data: Dict[str, Any]) -> ExternalSubscription:
    """
    Build an ExternalSubscription from a Stripe subscription payload.

    Newer API versions report the billing period on the subscription item
    rather than the subscription.
    """
    items = (data.get("items") or {}).get("data") or []
    item = items[0] if items else {}
    price = item.get("price") or {}
    return ExternalSubscription(
        subscription_ref=data["id"],
        status=data.get("status") or "",
        price_ref=price.get("id"),
        period_start=_ts(data.get("current_period_start") or item.get("current_period_start")),
        period_end=_ts(data.get("current_period_end") or item.get("current_period_end")),
    )


class StripeBillingSource(ExternalBillingSource):
    def __init__(
        self,
        api_key: str,
        catalog: PlanCatalog,
        *,
        user_id_metadata_key: str = "user_id",
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 60,
    ) -> None:
        super().__init__(catalog, cache=cache, cache_ttl_seconds=cache_ttl_seconds)
        self._api_key = api_key
        self._metadata_key = user_id_metadata_key

    async def _customer_exists(self, customer_ref: str) -> bool:
        try:
            customer = await stripe.Customer.retrieve_async(customer_ref, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                logger.warning("Stored customer ref no longer exists", extra={"customer_ref": customer_ref})
                return False
            raise self._unavailable(exc, "customer retrieve") from exc
        except stripe.StripeError as exc:
            raise self._unavailable(exc, "customer retrieve") from exc
        return not as_dict(customer).get("deleted", False)

    async def _find_customer_by_account(self, user_id: str) -> Optional[str]:
        query = f"metadata['{self._metadata_key}']:'{_search_literal(user_id)}'"
        try:
            result = await stripe.Customer.search_async(query=query, limit=1, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise self._unavailable(exc, "customer search") from exc
        data = as_dict(result).get("data") or []
        return data[0]["id"] if data else None

    async def _find_customer_by_email(self, email: str) -> Optional[str]:
        try:
            result = await stripe.Customer.list_async(email=email, limit=1, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise self._unavailable(exc, "customer list") from exc
        data = as_dict(result).get("data") or []
        return data[0]["id"] if data else None

    async def _latest_subscription(self, customer_ref: str) -> Optional[ExternalSubscription]:
        try:
            result = await stripe.Subscription.list_async(
                customer=customer_ref, status="all", limit=10, api_key=self._api_key
            )
        except stripe.StripeError as exc:
            raise self._unavailable(exc, "subscription list") from exc

        subs = sorted(
            (as_dict(s) for s in as_dict(result).get("data") or []),
            key=lambda s: s.get("created") or 0,
            reverse=True,
        )
        if not subs:
            return None
        live = [s for s in subs if s.get("status") in _LIVE_STATUSES]
        return subscription_from_payload(live[0] if live else subs[0])

    @staticmethod
    def _unavailable(exc: Exception, operation: str) -> ExternalSourceUnavailableError:
        logger.warning("Stripe %s failed: %s", operation, exc)
        return ExternalSourceUnavailableError(reason=f"{operation}: {exc}")
