"""Tax-rate lookup collaborator."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field


class TaxRate(BaseModel):
    name: str
    percentage: float = Field(ge=0.0)
    jurisdiction: str | None = None
    active: bool = True

    def applies_to(self, jurisdiction: str | None) -> bool:
        return self.active and (self.jurisdiction is None or self.jurisdiction == jurisdiction)


@runtime_checkable
class TaxRateProvider(Protocol):
    async def lookup_rates(self, jurisdiction: str) -> list[TaxRate]: ...


class StaticTaxRateProvider:
    """Fixed rates per jurisdiction code (e.g. ``"US-CA"``)."""

    def __init__(self, rates: dict[str, list[TaxRate]] | None = None) -> None:
        self._rates: dict[str, list[TaxRate]] = {k: list(v) for k, v in (rates or {}).items()}

    def set_rates(self, jurisdiction: str, rates: list[TaxRate]) -> None:
        self._rates[jurisdiction] = list(rates)

    async def lookup_rates(self, jurisdiction: str) -> list[TaxRate]:
        return [r.model_copy() for r in self._rates.get(jurisdiction, [])]
