"""Service API of the subscription engine.

Entry points used by the (excluded) API layer and by the daily billing
run: subscription setup, synchronization and customer actions.
"""

import logging
from dataclasses import replace
from datetime import UTC, date, datetime
from itertools import islice
from typing import Iterable, List, Optional

from sqlalchemy.engine import Engine

from . import repository as repo
from .collaborators import EventSink, OutboxEventSink
from .config import MerchantConfig
from .dto import RecipeItem, SubscriptionEvent, SubscriptionRecord, SubscriptionStatus
from .dunning import apply_event
from .errors import ConfigurationError, DeliveryNotFoundError, InvalidTransitionError
from .materializer import MaterializedOrder, materialize
from .state_machine import require_transition
from .synchronizer import DeliverySynchronizer

logger = logging.getLogger(__name__)

# Only these subscriptions get new orders materialized
GENERATING_STATUSES = frozenset(
    {SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}
)


def _today(config: MerchantConfig) -> date:
    return datetime.now(config.tzinfo).date()


def _default_sink(config: MerchantConfig, sink: Optional[EventSink]) -> EventSink:
    return sink or OutboxEventSink(repo.EVENT_OUTBOX, config.tenant_id)


def _validate_recipe(items: List[RecipeItem]) -> None:
    if not items:
        raise ConfigurationError("A subscription needs at least one recipe item")
    products = [item.product_id for item in items]
    duplicates = sorted({p for p in products if products.count(p) > 1})
    if duplicates:
        raise ConfigurationError(f"Duplicate products in recipe: {', '.join(duplicates)}")


def create_subscription(
    engine: Engine,
    config: MerchantConfig,
    *,
    customer_id: str,
    delivery_zone: str,
    items: Iterable[RecipeItem],
    payment_token: Optional[str] = None,
    receiver_id: Optional[str] = None,
    currency: Optional[str] = None,
    subscription_id: Optional[str] = None,
) -> SubscriptionRecord:
    """Create an `incomplete` subscription with its recipe.

    Raises:
        ConfigurationError: Unknown zone, empty weekday set or invalid recipe
    """
    config.validate()
    config.schedules_for_zone(delivery_zone)
    items = [replace(item, item_id=repo.new_id()) for item in items]
    _validate_recipe(items)

    record = SubscriptionRecord(
        subscription_id=subscription_id or repo.new_id(),
        tenant_id=config.tenant_id,
        customer_id=customer_id,
        status=SubscriptionStatus.INCOMPLETE,
        delivery_zone=delivery_zone,
        currency=currency or config.currency,
        payment_token=payment_token,
        receiver_id=receiver_id,
        created_at=datetime.now(UTC),
    )
    with engine.begin() as conn:
        repo.insert_subscription(conn, record)
        repo.record_milestone(conn, config.tenant_id, record.subscription_id, SubscriptionStatus.INCOMPLETE)
        for item in items:
            repo.insert_recipe_item(conn, config.tenant_id, record.subscription_id, item)

    logger.info(
        "Subscription created",
        extra={"subscription_id": record.subscription_id, "items": len(items), "zone": delivery_zone},
    )
    return record


def synchronize_subscription(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    resume_from_today: bool = False,
    as_of: Optional[date] = None,
) -> List[MaterializedOrder]:
    """Top the subscription up to `orders_ahead` open future orders.

    Idempotent for one date: once enough open orders exist, nothing is
    generated.

    Args:
        engine: Database engine
        config: Merchant configuration
        subscription_id: Subscription to synchronize
        resume_from_today: Ignore missed cycles and start from `as_of`
        as_of: Reference date (tenant local today by default)

    Returns:
        Orders created by this call
    """
    as_of = as_of or _today(config)
    tenant_id = config.tenant_id
    with engine.connect() as conn:
        record = repo.load_subscription(conn, tenant_id, subscription_id)
        if record.status not in GENERATING_STATUSES:
            return []
        items = repo.load_recipe_items(conn, tenant_id, subscription_id)
        cursors = repo.load_cursors(conn, tenant_id, subscription_id)
        open_orders = repo.count_open_orders(conn, tenant_id, subscription_id, as_of)
        prior = repo.has_orders(conn, tenant_id, subscription_id)

    missing = config.orders_ahead - open_orders
    if missing <= 0 or not items:
        return []

    schedules = config.schedules_for_zone(record.delivery_zone)
    synchronizer = DeliverySynchronizer(
        window_days=config.joinable_window_days,
        schedule=schedules.recurring,
        first_schedule=schedules.first_order,
    )
    preliminary_orders = synchronizer.iter_preliminary_orders(
        items,
        {product_id: until for product_id, (until, _) in cursors.items()},
        as_of,
        resume_from_today=resume_from_today,
        has_prior_orders=prior,
    )

    created: List[MaterializedOrder] = []
    for preliminary in islice(preliminary_orders, missing):
        created.append(materialize(engine, tenant_id, subscription_id, preliminary, items, cursors=cursors))
        cursors = {
            **cursors,
            **{
                product_id: (preliminary.fulfilled_until, cursors[product_id][1] + 1 if product_id in cursors else 1)
                for product_id in preliminary.product_ids
            },
        }
    return created


def _customer_action(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    event: SubscriptionEvent,
    sink: Optional[EventSink],
    after=None,
) -> SubscriptionStatus:
    sink = _default_sink(config, sink)
    with engine.begin() as conn:
        record = repo.load_subscription(conn, config.tenant_id, subscription_id)
        require_transition(record.status, event)
        new_status = apply_event(conn, config.tenant_id, subscription_id, event, sink)
        if new_status is None:
            raise InvalidTransitionError(record.status.value, event.value)
        if after is not None:
            after(conn)

    logger.info(
        "Customer action applied",
        extra={"subscription_id": subscription_id, "event": event.value, "to_status": new_status.value},
    )
    return new_status


def pause_subscription(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    as_of: Optional[date] = None,
    sink: Optional[EventSink] = None,
) -> SubscriptionStatus:
    """Put an active subscription on hold and cancel its open future deliveries."""
    as_of = as_of or _today(config)
    return _customer_action(
        engine,
        config,
        subscription_id,
        SubscriptionEvent.PAUSE,
        sink,
        after=lambda conn: repo.cancel_open_deliveries(conn, config.tenant_id, subscription_id, from_date=as_of),
    )


def resume_subscription(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    as_of: Optional[date] = None,
    sink: Optional[EventSink] = None,
) -> SubscriptionStatus:
    """Resume a paused subscription; scheduling restarts from today."""
    new_status = _customer_action(engine, config, subscription_id, SubscriptionEvent.RESUME, sink)
    synchronize_subscription(engine, config, subscription_id, resume_from_today=True, as_of=as_of)
    return new_status


def cancel_subscription(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    sink: Optional[EventSink] = None,
) -> SubscriptionStatus:
    """Cancel for good; open deliveries and unresolved payments are cancelled too."""
    return _customer_action(
        engine,
        config,
        subscription_id,
        SubscriptionEvent.CANCEL,
        sink,
        after=lambda conn: repo.cancel_open_deliveries(conn, config.tenant_id, subscription_id),
    )


def update_recipe_items(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    items: Iterable[RecipeItem],
) -> List[RecipeItem]:
    """Replace the recipe. Already materialized orders keep their snapshot."""
    items = [replace(item, item_id=repo.new_id()) for item in items]
    _validate_recipe(items)
    with engine.begin() as conn:
        record = repo.load_subscription(conn, config.tenant_id, subscription_id)
        if record.status.is_terminal:
            raise InvalidTransitionError(record.status.value, "update_recipe_items")
        repo.deactivate_recipe_items(conn, config.tenant_id, subscription_id)
        for item in items:
            repo.insert_recipe_item(conn, config.tenant_id, subscription_id, item)

    logger.info("Recipe updated", extra={"subscription_id": subscription_id, "items": len(items)})
    return items


def update_payment_method(
    engine: Engine,
    config: MerchantConfig,
    subscription_id: str,
    payment_token: str,
    sink: Optional[EventSink] = None,
) -> SubscriptionStatus:
    """Store a new payment token; an `error` subscription goes back to `past_due`."""
    sink = _default_sink(config, sink)
    with engine.begin() as conn:
        record = repo.load_subscription(conn, config.tenant_id, subscription_id)
        if record.status.is_terminal:
            raise InvalidTransitionError(record.status.value, SubscriptionEvent.PAYMENT_METHOD_UPDATED.value)
        repo.update_payment_token(conn, config.tenant_id, subscription_id, payment_token)
        new_status = apply_event(
            conn, config.tenant_id, subscription_id, SubscriptionEvent.PAYMENT_METHOD_UPDATED, sink
        )
    return new_status or record.status


def _flag_delivery(engine: Engine, tenant_id: str, delivery_id: str, **flags: bool) -> None:
    with engine.begin() as conn:
        if not repo.set_delivery_flags(conn, tenant_id, delivery_id, **flags):
            raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
    logger.info("Delivery updated", extra={"delivery_id": delivery_id, **flags})


def mark_delivery_packed(engine: Engine, tenant_id: str, delivery_id: str) -> None:
    _flag_delivery(engine, tenant_id, delivery_id, packed=True)


def mark_delivery_delivered(engine: Engine, tenant_id: str, delivery_id: str) -> None:
    _flag_delivery(engine, tenant_id, delivery_id, delivered=True)
