"""
Credit metering exceptions.

Every error carries a stable ``code`` and a ``details`` dict so the HTTP layer
can render it without knowing the concrete type.
"""

from __future__ import annotations

from typing import Any, Optional


class CreditError(Exception):
    """Base exception for all credit-system errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "CREDIT_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {"error": self.message, "code": self.code, "details": self.details}


class NotAuthenticatedError(CreditError):
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message, code="NOT_AUTHENTICATED")


class NoSubscriptionError(CreditError):
    """The account has no ledger row and could not be provisioned."""

    status_code = 402

    def __init__(self, user_id: str) -> None:
        super().__init__(
            "No subscription found for account",
            code="NO_SUBSCRIPTION",
            details={"user_id": user_id, "current_credits": 0, "plan": None},
        )
        self.user_id = user_id


class InsufficientCreditsError(CreditError):
    status_code = 402

    def __init__(self, action: str, required: int, available: int) -> None:
        super().__init__(
            "Insufficient credits",
            code="INSUFFICIENT_CREDITS",
            details={
                "action": action,
                "required": required,
                "available": available,
                "shortfall": max(0, required - available),
            },
        )
        self.action = action
        self.required = required
        self.available = available


class InactiveSubscriptionError(CreditError):
    status_code = 402

    def __init__(self, user_id: str, status: str) -> None:
        super().__init__(
            f"Subscription is {status}",
            code="INACTIVE_SUBSCRIPTION",
            details={"user_id": user_id, "status": status},
        )
        self.status = status


class ConcurrencyConflictError(CreditError):
    """Compare-and-set kept losing to concurrent writers after all retries."""

    status_code = 409

    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(
            "Concurrent update conflict, try again",
            code="CONCURRENCY_CONFLICT",
            details={"user_id": user_id, "attempts": attempts},
        )
        self.attempts = attempts


class PersistenceError(CreditError):
    status_code = 503

    def __init__(self, message: str = "Ledger store unavailable", operation: str | None = None) -> None:
        super().__init__(
            message,
            code="PERSISTENCE_FAILURE",
            details={"operation": operation} if operation else {},
        )


class ExternalSourceUnavailableError(CreditError):
    status_code = 502

    def __init__(self, message: str = "External billing source unavailable", reason: str | None = None) -> None:
        super().__init__(
            message,
            code="EXTERNAL_SOURCE_UNAVAILABLE",
            details={"reason": reason} if reason else {},
        )


class DivergenceError(CreditError):
    """Ledger and external billing disagree; for reconciliation and admin tooling only."""

    status_code = 409

    def __init__(self, user_id: str, issues: list[str]) -> None:
        super().__init__(
            "Ledger diverges from external billing",
            code="DIVERGENCE",
            details={"user_id": user_id, "issues": issues},
        )
        self.issues = issues


class UnknownActionError(CreditError):
    status_code = 400

    def __init__(self, action: str) -> None:
        super().__init__(
            f"Action {action!r} has no configured credit cost",
            code="UNKNOWN_ACTION",
            details={"action": action},
        )
        self.action = action


class UnknownPlanError(CreditError):
    status_code = 400

    def __init__(self, plan: str) -> None:
        super().__init__(
            f"Plan {plan!r} is not in the catalog",
            code="UNKNOWN_PLAN",
            details={"plan": plan},
        )
        self.plan = plan


class WebhookError(CreditError):
    status_code = 400

    def __init__(self, message: str = "Invalid webhook payload") -> None:
        super().__init__(message, code="WEBHOOK_ERROR")
