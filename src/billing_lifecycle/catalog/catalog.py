"""Entitlement catalog: read-only plan lookup."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import ValidationError as PydanticValidationError

from billing_lifecycle.catalog.models import Plan
from billing_lifecycle.core.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


@runtime_checkable
class EntitlementCatalog(Protocol):
    """Structural type for any plan source (database, config service, file)."""

    async def get_plan(self, plan_id: str) -> Plan | None: ...


class InMemoryEntitlementCatalog:
    """Dict-backed catalog, loadable from a JSON document.

    Example::

        catalog = InMemoryEntitlementCatalog.from_dict({
            "plans": [{"id": "pro", "base_price": 1000, "interval": "month",
                       "features": [{"id": "api_calls", "included_units": 100,
                                     "overage_rate": 2}]}]
        })
    """

    def __init__(self, plans: Iterable[Plan] | None = None) -> None:
        self._plans: dict[str, Plan] = {}
        for plan in plans or ():
            self.add_plan(plan)

    def add_plan(self, plan: Plan) -> None:
        self._plans[plan.id] = plan
        logger.debug("catalog_plan_added", plan_id=plan.id)

    def remove_plan(self, plan_id: str) -> bool:
        return self._plans.pop(plan_id, None) is not None

    async def get_plan(self, plan_id: str) -> Plan | None:
        plan = self._plans.get(plan_id)
        return plan.model_copy(deep=True) if plan is not None else None

    @property
    def plans(self) -> list[Plan]:
        return list(self._plans.values())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryEntitlementCatalog:
        raw_plans = data.get("plans") if isinstance(data, dict) else None
        if not isinstance(raw_plans, list):
            raise ConfigurationError(
                "Catalog document must contain a 'plans' list", code="invalid_catalog"
            )
        try:
            plans = [Plan.model_validate(p) for p in raw_plans]
        except PydanticValidationError as exc:
            raise ConfigurationError(f"Invalid plan in catalog: {exc}", code="invalid_catalog") from exc
        return cls(plans)

    @classmethod
    def from_json_file(cls, path: str | Path) -> InMemoryEntitlementCatalog:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(
                f"Cannot read plan catalog from {path}: {exc}", code="invalid_catalog"
            ) from exc
        return cls.from_dict(data)
