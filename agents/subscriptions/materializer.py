"""Persist a preliminary order as order + order items + delivery.

Everything happens in one transaction together with the fulfillment
cursor advance, so an order without its delivery is never visible.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.engine import Engine

from backend.core.observability import metrics

from . import repository as repo
from .dto import PreliminaryOrder, RecipeItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaterializedOrder:
    order_id: str
    delivery_id: str
    delivery_date: date
    product_ids: Tuple[str, ...]


def materialize(
    engine: Engine,
    tenant_id: str,
    subscription_id: str,
    preliminary: PreliminaryOrder,
    recipe: Iterable[RecipeItem],
    cursors: Optional[Dict[str, Tuple[date, int]]] = None,
) -> MaterializedOrder:
    """Write one preliminary order atomically.

    Args:
        engine: Database engine
        tenant_id: Tenant UUID
        subscription_id: Owning subscription
        preliminary: Batch produced by the synchronizer
        recipe: Full recipe at synchronization time (stored as snapshot)
        cursors: Cursor versions the batch was computed from; read inside
            the transaction when omitted

    Returns:
        Ids of the created order and delivery

    Raises:
        CursorConflictError: If a cursor moved since it was read; nothing
            is written in that case
    """
    snapshot = {
        "items": [item.to_dict() for item in recipe],
        "included": preliminary.product_ids,
        "anchor_date": preliminary.anchor_date.isoformat(),
        "first_order": preliminary.first_order,
    }

    with engine.begin() as conn:
        if cursors is None:
            cursors = repo.load_cursors(conn, tenant_id, subscription_id)

        order_id = repo.insert_order(
            conn, tenant_id, subscription_id, preliminary.fulfilled_until, snapshot
        )
        for scheduled in preliminary.items:
            repo.insert_order_item(conn, tenant_id, order_id, scheduled.item)
        delivery_id = repo.insert_delivery(
            conn, tenant_id, subscription_id, order_id, preliminary.delivery_date
        )

        for product_id in preliminary.product_ids:
            current = cursors.get(product_id)
            repo.advance_cursor(
                conn,
                tenant_id,
                subscription_id,
                product_id,
                preliminary.fulfilled_until,
                expected_version=current[1] if current else None,
            )

    metrics.increment_orders_materialized()
    logger.info(
        "Order materialized",
        extra={
            "subscription_id": subscription_id,
            "order_id": order_id,
            "delivery_date": preliminary.delivery_date.isoformat(),
            "products": preliminary.product_ids,
        },
    )
    return MaterializedOrder(
        order_id=order_id,
        delivery_id=delivery_id,
        delivery_date=preliminary.delivery_date,
        product_ids=tuple(preliminary.product_ids),
    )
