"""Shared test fixtures."""
from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest

from billing_lifecycle.catalog.catalog import InMemoryEntitlementCatalog
from billing_lifecycle.catalog.models import FeatureEntitlement, Plan
from billing_lifecycle.core.config import EngineConfig
from billing_lifecycle.core.constants import BillingInterval
from billing_lifecycle.core.engine import BillingEngine
from billing_lifecycle.notifications.notifier import Notifier
from billing_lifecycle.notifications.sinks import InMemoryNotificationSink
from billing_lifecycle.processor.mock import MockPaymentProcessor
from billing_lifecycle.storage.memory import InMemoryBillingStore

START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


def _feature_x(included: float = 100, rate: float = 2) -> FeatureEntitlement:
    return FeatureEntitlement(id="X", name="API calls", included_units=included, overage_rate=rate)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def catalog() -> InMemoryEntitlementCatalog:
    return InMemoryEntitlementCatalog(
        [
            Plan(
                id="pro",
                name="Pro",
                base_price=1000,
                interval=BillingInterval.MONTH,
                features=[_feature_x()],
            ),
            Plan(
                id="premium",
                name="Premium",
                base_price=3000,
                interval=BillingInterval.MONTH,
                features=[_feature_x(included=500, rate=1)],
            ),
            Plan(
                id="trial",
                name="Trial",
                base_price=1000,
                trial_days=14,
                features=[_feature_x()],
            ),
            Plan(id="free", name="Free", base_price=0, features=[_feature_x(included=10, rate=0)]),
            Plan(id="retired", base_price=500, active=False),
        ]
    )


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def processor() -> MockPaymentProcessor:
    return MockPaymentProcessor()


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def notifier(sink: InMemoryNotificationSink) -> Notifier:
    return Notifier([sink])


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig(persistence_read_retries=0)


@pytest.fixture
async def engine(
    store: InMemoryBillingStore,
    catalog: InMemoryEntitlementCatalog,
    processor: MockPaymentProcessor,
    notifier: Notifier,
    config: EngineConfig,
    clock: FakeClock,
) -> AsyncGenerator[BillingEngine, None]:
    eng = BillingEngine(
        store,
        catalog,
        processor,
        notifier=notifier,
        config=config,
        clock=clock,
    )
    yield eng
    await eng.close()
