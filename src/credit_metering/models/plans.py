from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from ..errors import UnknownActionError, UnknownPlanError
from .subscription import PlanName


DEFAULT_FEATURE_COSTS: Dict[str, int] = {
    "resume_generation": 5,
    "cover_letter_generation": 3,
    "job_tailoring": 3,
    "salary_negotiation": 2,
    "linkedin_optimization": 4,
    "personal_brand_strategy": 8,
    "mock_interview": 6,
    "ai_suggestions": 1,
}


class PlanDefinition(BaseModel):
    """
    Static plan configuration shared across accounts.
    """

    name: PlanName
    display_name: str
    credit_allotment: int = Field(ge=0, description="Credits granted per billing period.")
    price: float
    external_price_ref: Optional[str] = None


UNKNOWN_PLAN = PlanDefinition(
    name=PlanName.UNKNOWN, display_name="Unknown", credit_allotment=0, price=0.0
)


class PlanCatalog:
    """
    Plan Catalog: plan name -> allotment/price/external price, plus the
    feature cost table.
    """

    def __init__(
        self,
        plans: Iterable[PlanDefinition],
        feature_costs: Mapping[str, int],
        allow_unmapped_actions: bool = False,
    ) -> None:
        self._plans: Dict[PlanName, PlanDefinition] = {p.name: p for p in plans}
        self._by_price_ref: Dict[str, PlanDefinition] = {
            p.external_price_ref: p for p in self._plans.values() if p.external_price_ref
        }
        for action, cost in feature_costs.items():
            if cost < 0:
                raise ValueError(f"cost for {action!r} must not be negative")
        self._feature_costs: Dict[str, int] = dict(feature_costs)
        self.allow_unmapped_actions = allow_unmapped_actions

    @classmethod
    def default(
        cls,
        basic_price_ref: str = "price_basic",
        standard_price_ref: str = "price_standard",
        pro_price_ref: str = "price_pro",
        allow_unmapped_actions: bool = False,
    ) -> "PlanCatalog":
        return cls(
            plans=[
                PlanDefinition(
                    name=PlanName.FREE, display_name="Free", credit_allotment=3, price=0.0
                ),
                PlanDefinition(
                    name=PlanName.BASIC,
                    display_name="Basic",
                    credit_allotment=10,
                    price=9.99,
                    external_price_ref=basic_price_ref,
                ),
                PlanDefinition(
                    name=PlanName.STANDARD,
                    display_name="Standard",
                    credit_allotment=50,
                    price=19.99,
                    external_price_ref=standard_price_ref,
                ),
                PlanDefinition(
                    name=PlanName.PRO,
                    display_name="Pro",
                    credit_allotment=200,
                    price=49.99,
                    external_price_ref=pro_price_ref,
                ),
            ],
            feature_costs=DEFAULT_FEATURE_COSTS,
            allow_unmapped_actions=allow_unmapped_actions,
        )

    @property
    def plans(self) -> list[PlanDefinition]:
        return list(self._plans.values())

    @property
    def feature_costs(self) -> Dict[str, int]:
        return dict(self._feature_costs)

    def get(self, plan: PlanName | str) -> PlanDefinition:
        """Look up a plan; raises UnknownPlanError for anything not in the catalog."""
        try:
            key = PlanName(plan)
        except ValueError as exc:
            raise UnknownPlanError(str(plan)) from exc
        definition = self._plans.get(key)
        if definition is None:
            raise UnknownPlanError(key.value)
        return definition

    def resolve_price_ref(self, price_ref: Optional[str]) -> PlanDefinition:
        """Map an external price identifier to a plan; unmapped ids resolve to UNKNOWN_PLAN."""
        if not price_ref:
            return UNKNOWN_PLAN
        return self._by_price_ref.get(price_ref, UNKNOWN_PLAN)

    def is_known_action(self, action: str) -> bool:
        return action in self._feature_costs

    def cost_of(self, action: str) -> int:
        if action in self._feature_costs:
            return self._feature_costs[action]
        if self.allow_unmapped_actions:
            return 0
        raise UnknownActionError(action)
