from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from ..models.api_models import (
    ChangePlanRequest,
    PlanCatalogResponse,
    PlanResponse,
    RenewalsRequest,
    RenewalsResponse,
    SetStatusRequest,
    SubscriptionAnalyticsResponse,
    SubscriptionResponse,
    SyncRequest,
    UsageHistoryItem,
    UsageSummaryResponse,
    WebhookResponse,
)
from ..models.credits import (
    ConsistencyReport,
    CreditBalance,
    RecoveryResult,
    SufficiencyCheck,
    SyncResult,
)
from ..models.subscription import AccountSubscription
from .deps import ServiceContainer, current_user, get_services, require_admin


router = APIRouter(prefix="/credits", tags=["credits"])
admin_router = APIRouter(
    prefix="/credits/admin", tags=["credits-admin"], dependencies=[Depends(require_admin)]
)
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _subscription_response(sub: AccountSubscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        user_id=sub.user_id,
        plan=sub.plan,
        status=sub.status,
        total_credits=sub.total_credits,
        used_credits=sub.used_credits,
        remaining_credits=sub.remaining_credits,
        period_start=sub.period_start,
        period_end=sub.period_end,
    )


@router.get("/balance", response_model=CreditBalance)
async def get_balance(
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> CreditBalance:
    return await services.credit_service.get_balance(user_id)


@router.get("/check/{action}", response_model=SufficiencyCheck)
async def check_credits(
    action: str,
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> SufficiencyCheck:
    return await services.credit_service.has_sufficient_credits(user_id, action)


@router.get("/history", response_model=List[UsageHistoryItem])
async def usage_history(
    limit: int = Query(default=50, ge=1, le=500),
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> List[UsageHistoryItem]:
    return await services.analytics.usage_history(user_id, limit=limit)


@router.get("/summary", response_model=UsageSummaryResponse)
async def usage_summary(
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> UsageSummaryResponse:
    return await services.analytics.usage_summary(user_id)


@router.get("/plans", response_model=PlanCatalogResponse)
async def list_plans(services: ServiceContainer = Depends(get_services)) -> PlanCatalogResponse:
    catalog = services.catalog
    return PlanCatalogResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                credit_allotment=p.credit_allotment,
                price=p.price,
            )
            for p in catalog.plans
        ],
        feature_costs=catalog.feature_costs,
    )


@router.post("/sync", response_model=SyncResult)
async def sync_credits(
    payload: Optional[SyncRequest] = None,
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> SyncResult:
    force = payload.force if payload is not None else False
    return await services.reconciliation.sync(user_id, force=force)


@router.get("/consistency", response_model=ConsistencyReport)
async def validate_consistency(
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> ConsistencyReport:
    return await services.reconciliation.validate_consistency(user_id)


@router.post("/recover", response_model=RecoveryResult)
async def emergency_recovery(
    user_id: str = Depends(current_user),
    services: ServiceContainer = Depends(get_services),
) -> RecoveryResult:
    return await services.reconciliation.emergency_recovery(user_id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


@admin_router.get("/analytics", response_model=SubscriptionAnalyticsResponse)
async def subscription_analytics(
    services: ServiceContainer = Depends(get_services),
) -> SubscriptionAnalyticsResponse:
    return await services.analytics.subscription_analytics()


@admin_router.post("/renewals", response_model=RenewalsResponse)
async def renew_elapsed_periods(
    payload: Optional[RenewalsRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> RenewalsResponse:
    as_of = payload.as_of if payload is not None else None
    renewed = await services.renewals.renew_elapsed_periods(as_of)
    return RenewalsResponse(renewed=renewed)


@admin_router.post("/{user_id}/plan", response_model=SubscriptionResponse)
async def change_plan(
    user_id: str,
    payload: ChangePlanRequest,
    services: ServiceContainer = Depends(get_services),
) -> SubscriptionResponse:
    sub = await services.credit_service.change_plan(
        user_id,
        payload.plan,
        external_customer_ref=payload.external_customer_ref,
        external_subscription_ref=payload.external_subscription_ref,
    )
    return _subscription_response(sub)


@admin_router.post("/{user_id}/refresh")
async def refresh_credits(
    user_id: str, services: ServiceContainer = Depends(get_services)
) -> dict:
    refreshed = await services.credit_service.refresh(user_id)
    return {"user_id": user_id, "refreshed": refreshed}


@admin_router.post("/{user_id}/status", response_model=SubscriptionResponse)
async def set_status(
    user_id: str,
    payload: SetStatusRequest,
    services: ServiceContainer = Depends(get_services),
) -> SubscriptionResponse:
    sub = await services.credit_service.set_status(user_id, payload.status)
    return _subscription_response(sub)


@admin_router.get("/{user_id}/consistency", response_model=ConsistencyReport)
async def require_consistency(
    user_id: str, services: ServiceContainer = Depends(get_services)
) -> ConsistencyReport:
    return await services.reconciliation.require_consistency(user_id)


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@webhook_router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request, services: ServiceContainer = Depends(get_services)
) -> WebhookResponse:
    payload = await request.body()
    event = services.webhooks.verify(payload, request.headers.get("stripe-signature"))
    return await services.webhooks.handle_event(event)
