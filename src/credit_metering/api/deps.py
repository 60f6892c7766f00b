from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import Depends, Request

from ..billing.base import ExternalBillingSource
from ..billing.webhooks import StripeWebhookHandler
from ..cache.base import AsyncCacheBackend
from ..config import Settings
from ..db.base import BaseDBManager
from ..errors import NotAuthenticatedError
from ..logging.usage_logger import UsageLogger
from ..models.plans import PlanCatalog
from ..services.analytics_service import AnalyticsService
from ..services.credit_service import CreditService
from ..services.reconciliation_service import ReconciliationService
from ..services.renewal_service import RenewalService


@dataclass
class ServiceContainer:
    """Everything built once at startup and shared by request handlers."""

    settings: Settings
    db: BaseDBManager
    cache: AsyncCacheBackend
    catalog: PlanCatalog
    usage_logger: UsageLogger
    billing: ExternalBillingSource
    credit_service: CreditService
    reconciliation: ReconciliationService
    analytics: AnalyticsService
    renewals: RenewalService
    webhooks: StripeWebhookHandler

    async def close(self) -> None:
        await self.billing.close()
        await self.db.close()


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def current_user(
    request: Request, services: ServiceContainer = Depends(get_services)
) -> str:
    """
    Caller identity from the configured header. A registered email, when sent,
    is stored on first contact so billing lookups can fall back to it.
    """
    settings = services.settings
    user_id = request.headers.get(settings.USER_ID_HEADER)
    if not user_id:
        raise NotAuthenticatedError()

    email = request.headers.get(settings.USER_EMAIL_HEADER)
    if email and settings.AUTO_PROVISION:
        await services.credit_service.provision(user_id, email=email)
    return user_id


def require_admin(request: Request, services: ServiceContainer = Depends(get_services)) -> None:
    expected = services.settings.ADMIN_API_TOKEN
    supplied = request.headers.get("X-Admin-Token", "")
    if expected is None or not secrets.compare_digest(supplied, expected.get_secret_value()):
        raise NotAuthenticatedError("Admin token required")
