"""
Stripe webhook ingestion.

Verifies the signature, drops redelivered event ids and maps subscription
lifecycle events onto Credit Accounting operations. The provider is never
written to from here.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import stripe

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import UnknownPlanError, WebhookError
from ..models.api_models import WebhookResponse
from ..models.plans import PlanCatalog
from ..models.subscription import PlanName, SubscriptionStatus
from ..services.credit_service import CreditService
from .base import ExternalBillingSource, map_external_status
from .stripe_source import as_dict, subscription_from_payload


logger = logging.getLogger(__name__)

Handler = Callable[[str, Mapping[str, Any]], Awaitable[bool]]


class StripeWebhookHandler:
    def __init__(
        self,
        credit_service: CreditService,
        db: BaseDBManager,
        catalog: PlanCatalog,
        cache: AsyncCacheBackend,
        billing: ExternalBillingSource,
        *,
        webhook_secret: Optional[str] = None,
        user_id_metadata_key: str = "user_id",
        dedup_ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self._credits = credit_service
        self._db = db
        self._catalog = catalog
        self._cache = cache
        self._billing = billing
        self._secret = webhook_secret
        self._metadata_key = user_id_metadata_key
        self._dedup_ttl = dedup_ttl_seconds
        self._handlers: Dict[str, Handler] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.updated": self._subscription_updated,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.payment_succeeded": self._payment_succeeded,
            "invoice.payment_failed": self._payment_failed,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Check the ``Stripe-Signature`` header and return the event as a dict."""
        if not self._secret:
            raise WebhookError("Webhook secret not configured")
        if not signature:
            raise WebhookError("Missing stripe-signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Invalid webhook signature: %s", exc)
            raise WebhookError("Invalid webhook signature") from exc
        except ValueError as exc:
            logger.warning("Invalid webhook payload: %s", exc)
            raise WebhookError("Invalid payload") from exc
        return as_dict(event)

    async def handle_event(self, event: Mapping[str, Any]) -> WebhookResponse:
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise WebhookError("Event is missing id or type")

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring webhook event type %s", event_type)
            return WebhookResponse(event_type=event_type, handled=False)

        dedup_key = f"stripe_event:{event_id}"
        if not await self._cache.add(dedup_key, event_type, ttl_seconds=self._dedup_ttl):
            logger.info("Skipping redelivered event %s", event_id, extra={"event_type": event_type})
            return WebhookResponse(event_type=event_type, handled=False)

        obj = (event.get("data") or {}).get("object") or {}
        try:
            handled = await handler(event_id, obj)
        except Exception:
            # Let the provider redeliver
            await self._cache.delete(dedup_key)
            raise

        logger.info(
            "Processed webhook event %s",
            event_type,
            extra={"event_id": event_id, "handled": handled},
        )
        return WebhookResponse(event_type=event_type, handled=handled)

    async def _resolve_user(self, obj: Mapping[str, Any]) -> Optional[str]:
        metadata = obj.get("metadata") or {}
        user_id = metadata.get(self._metadata_key) or obj.get("client_reference_id")
        if user_id:
            return user_id
        customer = obj.get("customer")
        if customer:
            sub = await self._db.find_subscription_by_customer_ref(customer)
            if sub is not None:
                return sub.user_id
        logger.warning(
            "Webhook object cannot be linked to an account",
            extra={"object_id": obj.get("id"), "customer_ref": customer},
        )
        return None

    async def _checkout_completed(self, event_id: str, obj: Mapping[str, Any]) -> bool:
        user_id = await self._resolve_user(obj)
        if user_id is None:
            return False

        metadata = obj.get("metadata") or {}
        customer_ref = obj.get("customer")
        subscription_ref = obj.get("subscription")
        try:
            plan = self._catalog.get(metadata["plan"]).name if metadata.get("plan") else None
        except UnknownPlanError:
            logger.warning("Checkout for unknown plan %s", metadata.get("plan"), extra={"user_id": user_id})
            plan = None

        entitlement = None
        if plan is None:
            # Session payloads carry no line items; ask the provider
            entitlement = await self._billing.get_entitlement(
                user_id, customer_ref=customer_ref, use_cache=False
            )
            if entitlement is None or not entitlement.plan_known:
                logger.warning("Checkout completed without a known plan", extra={"user_id": user_id})
                return False
            plan = entitlement.plan

        await self._credits.change_plan(
            user_id,
            plan,
            external_customer_ref=customer_ref,
            external_subscription_ref=subscription_ref,
            period_start=entitlement.period_start if entitlement else None,
            period_end=entitlement.period_end if entitlement else None,
            correlation_id=event_id,
        )
        await self._billing.invalidate(user_id)
        return True

    async def _subscription_updated(self, event_id: str, obj: Mapping[str, Any]) -> bool:
        user_id = await self._resolve_user(obj)
        if user_id is None:
            return False

        external = subscription_from_payload(dict(obj))
        status = map_external_status(external.status)
        plan = self._catalog.resolve_price_ref(external.price_ref)
        current = await self._db.get_subscription(user_id)

        if plan.name != PlanName.UNKNOWN and status == SubscriptionStatus.ACTIVE and (
            current is None or current.plan != plan.name
        ):
            await self._credits.change_plan(
                user_id,
                plan.name,
                external_customer_ref=obj.get("customer"),
                external_subscription_ref=external.subscription_ref,
                period_start=external.period_start,
                period_end=external.period_end,
                correlation_id=event_id,
            )
        elif current is not None:
            await self._credits.set_status(user_id, status, correlation_id=event_id)
        else:
            return False
        await self._billing.invalidate(user_id)
        return True

    async def _subscription_deleted(self, event_id: str, obj: Mapping[str, Any]) -> bool:
        user_id = await self._resolve_user(obj)
        if user_id is None or await self._db.get_subscription(user_id) is None:
            return False
        await self._credits.cancel(user_id, correlation_id=event_id)
        await self._billing.invalidate(user_id)
        return True

    async def _payment_succeeded(self, event_id: str, obj: Mapping[str, Any]) -> bool:
        user_id = await self._resolve_user(obj)
        if user_id is None or await self._db.get_subscription(user_id) is None:
            return False
        await self._credits.set_status(user_id, SubscriptionStatus.ACTIVE, correlation_id=event_id)
        # First invoices belong to a checkout that already started the period
        if obj.get("billing_reason") == "subscription_cycle":
            await self._credits.refresh(user_id, correlation_id=event_id)
        await self._billing.invalidate(user_id)
        return True

    async def _payment_failed(self, event_id: str, obj: Mapping[str, Any]) -> bool:
        user_id = await self._resolve_user(obj)
        if user_id is None or await self._db.get_subscription(user_id) is None:
            return False
        await self._credits.set_status(user_id, SubscriptionStatus.PAST_DUE, correlation_id=event_id)
        await self._billing.invalidate(user_id)
        return True
