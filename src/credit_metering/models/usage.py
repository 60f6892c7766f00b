from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class UsageEventType(str, Enum):
    CONSUMPTION = "consumption"
    REFRESH = "refresh"
    PLAN_CHANGE = "plan_change"
    STATUS_CHANGE = "status_change"
    PROVISION = "provision"
    SYNC = "sync"
    RECOVERY = "recovery"
    ADJUSTMENT = "adjustment"
    CHARGE_FAILED = "charge_failed"


class UsageEvent(DBSerializableModel):
    """
    Append-only Usage Log record.

    ``credits_used`` is the signed amount applied to ``used_credits`` in the
    period identified by ``period_start``; only consumption and adjustment
    events carry non-zero amounts.
    """

    collection_name: ClassVar[str] = "credit_usage_events"

    id: Optional[str] = Field(default=None)
    user_id: str
    event_type: UsageEventType
    action: Optional[str] = None
    credits_used: int = 0
    remaining_credits_after: int = 0
    period_start: datetime
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
