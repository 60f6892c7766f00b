"""
FastAPI/Starlette Request Gate for credit-gated feature endpoints.

Flow:
  1. Resolve the caller from the user id header; reject with 401 when absent.
  2. Credit-exempt features run directly.
  3. Check sufficiency; reject with 402 and the current/required amounts.
  4. Run the feature.
  5. Charge only when the feature returned a 2xx response, then annotate the
     response with the remaining balance and the amount charged.
  A failed charge after a successful feature is logged and recorded as an
  unsettled charge; the feature's response is still returned.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import compile_path

from ..errors import (
    CreditError,
    InactiveSubscriptionError,
    InsufficientCreditsError,
    NoSubscriptionError,
    NotAuthenticatedError,
)
from ..models.credits import SufficiencyCheck
from ..models.subscription import SubscriptionStatus
from ..services.credit_service import CreditService


logger = logging.getLogger(__name__)


class FeatureRoute(BaseModel):
    """Registration of a credit-gated feature endpoint."""

    model_config = ConfigDict(frozen=True)

    path: str
    action: str
    methods: Tuple[str, ...] = ("POST",)
    skip_credits_check: bool = False


class CreditGateMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        credit_service: CreditService,
        features: Sequence[FeatureRoute],
        *,
        user_id_header: str = "X-User-Id",
        request_id_header: str = "X-Request-Id",
    ) -> None:
        super().__init__(app)
        self.credit_service = credit_service
        self.user_id_header = user_id_header
        self.request_id_header = request_id_header

        catalog = credit_service.catalog
        self._routes: list[tuple[re.Pattern[str], FeatureRoute]] = []
        for feature in features:
            if not feature.skip_credits_check and not (
                catalog.is_known_action(feature.action) or catalog.allow_unmapped_actions
            ):
                raise ValueError(f"Feature {feature.path} uses unmapped action {feature.action!r}")
            regex, _, _ = compile_path(feature.path)
            self._routes.append((regex, feature))

    def _match(self, request: Request) -> Optional[FeatureRoute]:
        for regex, feature in self._routes:
            if request.method in feature.methods and regex.match(request.url.path):
                return feature
        return None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        feature = self._match(request)
        if feature is None:
            return await call_next(request)

        user_id = request.headers.get(self.user_id_header)
        if not user_id:
            err = NotAuthenticatedError()
            return JSONResponse(status_code=err.status_code, content=err.to_dict())

        if feature.skip_credits_check:
            return await call_next(request)

        try:
            check = await self.credit_service.has_sufficient_credits(user_id, feature.action)
        except CreditError as exc:
            return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        if not check.sufficient:
            return self._payment_required(user_id, check)

        # Gated handlers can read which action they are billed as
        request.state.credit_action = feature.action
        # A raising feature propagates and is never charged
        response = await call_next(request)
        if not 200 <= response.status_code < 300:
            logger.info(
                "Feature failed with %s; not charged",
                response.status_code,
                extra={"user_id": user_id, "action": feature.action},
            )
            return response

        correlation_id = request.headers.get(self.request_id_header)
        metadata = {"path": request.url.path, "method": request.method}
        try:
            result = await self.credit_service.consume(
                user_id, feature.action, metadata=metadata, correlation_id=correlation_id
            )
        except CreditError as exc:
            logger.error(
                "Charge after successful feature failed: %s",
                exc.message,
                extra={"user_id": user_id, "action": feature.action, "code": exc.code},
            )
            await self._record_unsettled(
                user_id, feature.action, check.required, exc.code, metadata, correlation_id
            )
            return response

        if not result.success:
            logger.warning(
                "Charge after successful feature refused: %s",
                result.error,
                extra={"user_id": user_id, "action": feature.action},
            )
            await self._record_unsettled(
                user_id, feature.action, result.required, result.error or "UNKNOWN", metadata, correlation_id
            )
            return response

        response.headers["X-Remaining-Credits"] = str(result.remaining_after)
        response.headers["X-Credits-Used"] = str(result.credits_used)
        response.headers["X-Credits-Action"] = feature.action
        return response

    def _payment_required(self, user_id: str, check: SufficiencyCheck) -> JSONResponse:
        err: CreditError
        if check.status is None:
            err = NoSubscriptionError(user_id)
        elif check.status != SubscriptionStatus.ACTIVE:
            err = InactiveSubscriptionError(user_id, check.status.value)
        else:
            err = InsufficientCreditsError(check.action, check.required, check.remaining)
        return JSONResponse(
            status_code=err.status_code,
            content={
                "error": err.message,
                "code": err.code,
                "currentCredits": check.remaining,
                "requiredCredits": check.required,
                "action": check.action,
                "plan": check.plan.value if check.plan else None,
                "status": check.status.value if check.status else None,
            },
        )

    async def _record_unsettled(
        self,
        user_id: str,
        action: str,
        owed: int,
        reason: str,
        metadata: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        try:
            await self.credit_service.record_unsettled_charge(
                user_id, action, owed, reason, metadata=metadata, correlation_id=correlation_id
            )
        except CreditError:
            logger.exception(
                "Could not record unsettled charge",
                extra={"user_id": user_id, "action": action, "owed": owed},
            )
