import json
from datetime import date

import pytest
import sqlalchemy as sa

from agents.subscriptions import repository as repo
from agents.subscriptions.config import DeliverySchedule, ZoneSchedules
from agents.subscriptions.dto import SubscriptionStatus
from agents.subscriptions.errors import (
    ConfigurationError,
    DeliveryNotFoundError,
    InvalidTransitionError,
    SubscriptionNotFoundError,
)
from agents.subscriptions.service import (
    cancel_subscription,
    create_subscription,
    mark_delivery_delivered,
    mark_delivery_packed,
    pause_subscription,
    resume_subscription,
    synchronize_subscription,
    update_payment_method,
    update_recipe_items,
)

from .conftest import EVERY_DAY, TENANT, item

OCT_1 = date(2025, 10, 1)  # Wednesday


def _create(engine, config, items=None, **kwargs):
    return create_subscription(
        engine,
        config,
        customer_id="cust-1",
        delivery_zone=kwargs.pop("delivery_zone", "default"),
        items=items or [item("milk", 1, "weeks")],
        **kwargs,
    ).subscription_id


def _status(engine, subscription_id):
    with engine.connect() as conn:
        return repo.load_subscription(conn, TENANT, subscription_id).status


def _force_status(engine, subscription_id, expected, new):
    with engine.begin() as conn:
        assert repo.compare_and_set_status(conn, TENANT, subscription_id, expected, new)


def _deliveries(engine, subscription_id):
    with engine.connect() as conn:
        return (
            conn.execute(
                sa.select(repo.DELIVERIES)
                .where(repo.DELIVERIES.c.subscription_id == subscription_id)
                .order_by(repo.DELIVERIES.c.delivery_date)
            )
            .mappings()
            .all()
        )


class TestCreateSubscription:
    def test_starts_incomplete_with_recipe(self, engine, config):
        subscription_id = _create(engine, config, [item("milk", 1, "weeks"), item("coffee", 1, "months")])

        with engine.connect() as conn:
            record = repo.load_subscription(conn, TENANT, subscription_id)
            recipe = repo.load_recipe_items(conn, TENANT, subscription_id)
        assert record.status is SubscriptionStatus.INCOMPLETE
        assert record.currency == "EUR"
        assert [i.product_id for i in recipe] == ["coffee", "milk"]

    def test_frequencies_are_shared(self, engine, config):
        _create(engine, config, [item("milk", 1, "weeks")])
        _create(engine, config, [item("eggs", 1, "weeks")])

        with engine.connect() as conn:
            count = conn.execute(sa.select(sa.func.count()).select_from(repo.FREQUENCIES)).scalar_one()
        assert count == 1

    def test_unknown_zone_rejected(self, engine, config):
        with pytest.raises(ConfigurationError):
            _create(engine, config, delivery_zone="mars")

    def test_empty_recipe_rejected(self, engine, config):
        with pytest.raises(ConfigurationError):
            create_subscription(engine, config, customer_id="c", delivery_zone="default", items=[])

    def test_duplicate_products_rejected(self, engine, config):
        with pytest.raises(ConfigurationError, match="milk"):
            _create(engine, config, [item("milk", 1, "weeks"), item("milk", 2, "weeks")])

    def test_empty_weekday_set_rejected(self, engine, config):
        empty = DeliverySchedule(weekdays=(), lead_days=0)
        config.zones["empty"] = ZoneSchedules(recurring=empty, first_order=EVERY_DAY)
        with pytest.raises(ConfigurationError):
            _create(engine, config, delivery_zone="empty")


class TestSynchronize:
    def test_first_order_is_due_today(self, engine, config):
        subscription_id = _create(engine, config)

        created = synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        assert len(created) == 1
        assert created[0].delivery_date == OCT_1
        assert created[0].product_ids == ("milk",)

    def test_idempotent_for_same_day(self, engine, config):
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        assert synchronize_subscription(engine, config, subscription_id, as_of=OCT_1) == []
        assert len(_deliveries(engine, subscription_id)) == 1

    def test_orders_ahead_materializes_several(self, engine, config):
        config.orders_ahead = 3
        subscription_id = _create(engine, config)

        created = synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        assert [o.delivery_date for o in created] == [OCT_1, date(2025, 10, 8), date(2025, 10, 15)]
        with engine.connect() as conn:
            assert repo.load_cursors(conn, TENANT, subscription_id) == {"milk": (date(2025, 10, 15), 3)}

    def test_next_day_continues_from_cursor(self, engine, config):
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        created = synchronize_subscription(engine, config, subscription_id, as_of=date(2025, 10, 2))

        assert [o.delivery_date for o in created] == [date(2025, 10, 8)]

    def test_first_order_uses_first_order_schedule(self, engine, config):
        fridays = DeliverySchedule(weekdays=(4,), lead_days=0)
        config.zones["friday-start"] = ZoneSchedules(recurring=EVERY_DAY, first_order=fridays)
        config.orders_ahead = 2
        subscription_id = _create(engine, config, delivery_zone="friday-start")

        created = synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        assert created[0].delivery_date == date(2025, 10, 3)
        assert created[1].delivery_date == date(2025, 10, 8)

    def test_cancelled_subscription_gets_no_orders(self, engine, config, sink):
        subscription_id = _create(engine, config)
        cancel_subscription(engine, config, subscription_id, sink=sink)

        assert synchronize_subscription(engine, config, subscription_id, as_of=OCT_1) == []

    def test_unknown_subscription(self, engine, config):
        with pytest.raises(SubscriptionNotFoundError):
            synchronize_subscription(engine, config, "missing", as_of=OCT_1)


class TestCustomerActions:
    def test_pause_requires_active(self, engine, config, sink):
        subscription_id = _create(engine, config)

        with pytest.raises(InvalidTransitionError):
            pause_subscription(engine, config, subscription_id, as_of=OCT_1, sink=sink)

    def test_pause_cancels_future_deliveries_and_resume_restarts(self, engine, config, sink):
        config.orders_ahead = 3
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)
        _force_status(engine, subscription_id, SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE)

        assert pause_subscription(engine, config, subscription_id, as_of=OCT_1, sink=sink) is SubscriptionStatus.ON_HOLD
        assert all(d["cancelled"] for d in _deliveries(engine, subscription_id))
        assert "subscription.on_hold" in sink.names()

        resumed = resume_subscription(engine, config, subscription_id, as_of=date(2025, 10, 10), sink=sink)

        assert resumed is SubscriptionStatus.ACTIVE
        open_dates = [d["delivery_date"] for d in _deliveries(engine, subscription_id) if not d["cancelled"]]
        assert open_dates == [date(2025, 10, 10), date(2025, 10, 17), date(2025, 10, 24)]

    def test_pause_keeps_past_deliveries(self, engine, config, sink):
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)
        _force_status(engine, subscription_id, SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE)

        pause_subscription(engine, config, subscription_id, as_of=date(2025, 10, 5), sink=sink)

        assert [d["cancelled"] for d in _deliveries(engine, subscription_id)] == [False]

    def test_cancel_emits_once_and_is_final(self, engine, config, sink):
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        assert cancel_subscription(engine, config, subscription_id, sink=sink) is SubscriptionStatus.CANCELLED
        assert sink.names() == ["subscription.cancelled"]
        assert all(d["cancelled"] for d in _deliveries(engine, subscription_id))

        with pytest.raises(InvalidTransitionError):
            cancel_subscription(engine, config, subscription_id, sink=sink)
        assert sink.names() == ["subscription.cancelled"]

    def test_cancel_writes_outbox_event_by_default(self, engine, config):
        subscription_id = _create(engine, config)

        cancel_subscription(engine, config, subscription_id)

        with engine.connect() as conn:
            row = conn.execute(sa.select(repo.EVENT_OUTBOX)).mappings().one()
        assert row["event_type"] == "subscription.cancelled"
        assert row["tenant_id"] == TENANT
        assert row["idempotency_key"] == f"subscription.cancelled:{subscription_id}"
        assert json.loads(row["payload_json"])["subscription_id"] == subscription_id

    def test_payment_method_update_leaves_error(self, engine, config, sink):
        subscription_id = _create(engine, config)
        _force_status(engine, subscription_id, SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ERROR)

        status = update_payment_method(engine, config, subscription_id, "tok_new1234", sink=sink)

        assert status is SubscriptionStatus.PAST_DUE
        with engine.connect() as conn:
            assert repo.load_subscription(conn, TENANT, subscription_id).payment_token == "tok_new1234"

    def test_payment_method_update_on_active_keeps_status(self, engine, config, sink):
        subscription_id = _create(engine, config)
        _force_status(engine, subscription_id, SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE)

        assert update_payment_method(engine, config, subscription_id, "tok_new1234", sink=sink) is SubscriptionStatus.ACTIVE
        assert sink.events == []

    def test_payment_method_update_after_cancel_rejected(self, engine, config, sink):
        subscription_id = _create(engine, config)
        cancel_subscription(engine, config, subscription_id, sink=sink)

        with pytest.raises(InvalidTransitionError):
            update_payment_method(engine, config, subscription_id, "tok_new1234", sink=sink)


class TestRecipeUpdates:
    def test_existing_orders_keep_their_snapshot(self, engine, config):
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)

        update_recipe_items(engine, config, subscription_id, [item("eggs", 2, "weeks")])

        with engine.connect() as conn:
            recipe = repo.load_recipe_items(conn, TENANT, subscription_id)
            snapshot = conn.execute(sa.select(repo.ORDERS.c.recipe_snapshot)).scalar_one()
        assert [i.product_id for i in recipe] == ["eggs"]
        assert [i["product_id"] for i in snapshot["items"]] == ["milk"]

    def test_new_items_are_scheduled_on_next_sync(self, engine, config):
        subscription_id = _create(engine, config)
        synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)
        update_recipe_items(engine, config, subscription_id, [item("eggs", 2, "weeks")])

        created = synchronize_subscription(engine, config, subscription_id, as_of=date(2025, 10, 2))

        assert created[0].product_ids == ("eggs",)
        assert created[0].delivery_date == date(2025, 10, 2)

    def test_cancelled_subscription_recipe_is_frozen(self, engine, config, sink):
        subscription_id = _create(engine, config)
        cancel_subscription(engine, config, subscription_id, sink=sink)

        with pytest.raises(InvalidTransitionError):
            update_recipe_items(engine, config, subscription_id, [item("eggs", 2, "weeks")])


class TestDeliveryFlags:
    def test_delivered_delivery_is_no_longer_open(self, engine, config):
        subscription_id = _create(engine, config)
        order = synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)[0]

        mark_delivery_packed(engine, TENANT, order.delivery_id)
        mark_delivery_delivered(engine, TENANT, order.delivery_id)

        delivery = _deliveries(engine, subscription_id)[0]
        assert delivery["packed"] and delivery["delivered"]
        with engine.connect() as conn:
            assert repo.count_open_orders(conn, TENANT, subscription_id, OCT_1) == 0

    def test_unknown_delivery(self, engine):
        with pytest.raises(DeliveryNotFoundError):
            mark_delivery_delivered(engine, TENANT, "missing")

    def test_other_tenant_cannot_flag(self, engine, config):
        subscription_id = _create(engine, config)
        order = synchronize_subscription(engine, config, subscription_id, as_of=OCT_1)[0]

        with pytest.raises(DeliveryNotFoundError):
            mark_delivery_packed(engine, "22222222-2222-2222-2222-222222222222", order.delivery_id)
