"""Shared fixtures for subscription engine tests."""

from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import pytest
import sqlalchemy as sa

from agents.subscriptions.collaborators import RecordingEventSink, StaticPaymentProcessor
from agents.subscriptions.config import DeliverySchedule, MerchantConfig, ZoneSchedules
from agents.subscriptions.dto import Frequency, FrequencyUnit, RecipeItem
from agents.subscriptions.repository import metadata
from backend.core.observability import metrics

TENANT = "11111111-1111-1111-1111-111111111111"
BERLIN = ZoneInfo("Europe/Berlin")
EVERY_DAY = DeliverySchedule(weekdays=(0, 1, 2, 3, 4, 5, 6), lead_days=0)


def item(product_id: str, count: int, unit: str, quantity: int = 1, price: int = 500) -> RecipeItem:
    return RecipeItem(
        item_id=f"item-{product_id}",
        product_id=product_id,
        quantity=quantity,
        frequency=Frequency(count, FrequencyUnit(unit)),
        unit_price_cents=price,
    )


def local(day: date, hour: int = 10, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=BERLIN)


class FakeClock:
    """Mutable clock handed to the orchestrator."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def engine(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'billing.db'}", future=True)
    metadata().create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def config():
    return MerchantConfig(
        tenant_id=TENANT,
        zones={"default": ZoneSchedules(recurring=EVERY_DAY, first_order=EVERY_DAY)},
    )


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def processor():
    return StaticPaymentProcessor()


@pytest.fixture
def clock():
    return FakeClock(local(date(2025, 10, 1)))


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()
