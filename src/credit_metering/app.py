"""
Application factory.

Builds every client and service once, wires the credit gate around the given
feature routes and tears the clients down on shutdown.

Run:
  credit-metering            (uses CREDIT_* environment variables)
  uvicorn credit_metering.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.deps import ServiceContainer
from .api.middleware import CreditGateMiddleware, FeatureRoute
from .api.router import admin_router, router, webhook_router
from .billing.base import ExternalBillingSource
from .billing.memory import InMemoryBillingSource
from .billing.stripe_source import StripeBillingSource
from .billing.webhooks import StripeWebhookHandler
from .cache.base import AsyncCacheBackend
from .cache.memory import InMemoryAsyncCache
from .config import Settings, get_settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .db.mongo import MongoDBManager
from .errors import CreditError
from .logging.usage_logger import UsageLogger
from .models.plans import PlanCatalog
from .services.analytics_service import AnalyticsService
from .services.credit_service import CreditService
from .services.reconciliation_service import ReconciliationService
from .services.renewal_service import RenewalService


logger = logging.getLogger(__name__)


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("CREDIT_MONGO_URI not set; using the in-memory ledger store")
    return InMemoryDBManager()


def _create_billing_source(
    settings: Settings, catalog: PlanCatalog, cache: AsyncCacheBackend
) -> ExternalBillingSource:
    if settings.STRIPE_SECRET_KEY is not None:
        return StripeBillingSource(
            settings.STRIPE_SECRET_KEY.get_secret_value(),
            catalog,
            user_id_metadata_key=settings.STRIPE_USER_ID_METADATA_KEY,
            cache=cache,
            cache_ttl_seconds=settings.ENTITLEMENT_CACHE_TTL_SECONDS,
        )
    logger.warning("CREDIT_STRIPE_SECRET_KEY not set; using the in-memory billing source")
    return InMemoryBillingSource(
        catalog, cache=cache, cache_ttl_seconds=settings.ENTITLEMENT_CACHE_TTL_SECONDS
    )


def build_services(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    billing: Optional[ExternalBillingSource] = None,
    cache: Optional[AsyncCacheBackend] = None,
) -> ServiceContainer:
    cache = cache or InMemoryAsyncCache()
    catalog = PlanCatalog.default(
        basic_price_ref=settings.STRIPE_PRICE_BASIC,
        standard_price_ref=settings.STRIPE_PRICE_STANDARD,
        pro_price_ref=settings.STRIPE_PRICE_PRO,
        allow_unmapped_actions=settings.ALLOW_UNMAPPED_ACTIONS,
    )
    db = db or _create_db_manager(settings)
    billing = billing or _create_billing_source(settings, catalog, cache)
    usage_logger = UsageLogger(db=db, file_path=settings.USAGE_LOG_PATH)

    credit_service = CreditService(
        db,
        usage_logger,
        catalog,
        default_plan=settings.DEFAULT_PLAN,
        auto_provision=settings.AUTO_PROVISION,
        max_retries=settings.CONSUME_MAX_RETRIES,
        billing_period_days=settings.BILLING_PERIOD_DAYS,
    )
    webhook_secret = settings.STRIPE_WEBHOOK_SECRET
    return ServiceContainer(
        settings=settings,
        db=db,
        cache=cache,
        catalog=catalog,
        usage_logger=usage_logger,
        billing=billing,
        credit_service=credit_service,
        reconciliation=ReconciliationService(db, credit_service, billing),
        analytics=AnalyticsService(db, catalog),
        renewals=RenewalService(db, credit_service),
        webhooks=StripeWebhookHandler(
            credit_service,
            db,
            catalog,
            cache,
            billing,
            webhook_secret=webhook_secret.get_secret_value() if webhook_secret else None,
            user_id_metadata_key=settings.STRIPE_USER_ID_METADATA_KEY,
            dedup_ttl_seconds=settings.WEBHOOK_DEDUP_TTL_SECONDS,
        ),
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    services: Optional[ServiceContainer] = None,
    features: Sequence[FeatureRoute] = (),
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(services.db, MongoDBManager):
            await services.db.ensure_indexes()
        yield
        await services.close()

    app = FastAPI(title="Credit metering", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(CreditError)
    async def credit_error_handler(request: Request, exc: CreditError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    app.include_router(admin_router)
    app.include_router(webhook_router)
    app.add_middleware(
        CreditGateMiddleware,
        credit_service=services.credit_service,
        features=features,
        user_id_header=settings.USER_ID_HEADER,
    )
    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    main()
