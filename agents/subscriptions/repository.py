"""Table definitions and persistence helpers for the subscription engine.

All helpers take an open SQLAlchemy connection so callers decide the
transaction boundaries (``with engine.begin() as conn``). Every query is
scoped to one tenant.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from typing import Any, Iterable, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Connection

from backend.core.outbox.publisher import get_outbox_events_table

from .dto import (
    DueDelivery,
    Frequency,
    FrequencyUnit,
    PaymentStatus,
    RecipeItem,
    RESOLVED_PAYMENT_STATUSES,
    SubscriptionRecord,
    SubscriptionStatus,
)
from .errors import CursorConflictError, SubscriptionNotFoundError

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")

_METADATA = sa.MetaData()

SUBSCRIPTIONS = sa.Table(
    "subscriptions",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False, index=True),
    sa.Column("customer_id", sa.String(64), nullable=False),
    sa.Column("receiver_id", sa.String(64)),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("delivery_zone", sa.String(64), nullable=False),
    sa.Column("payment_token", sa.String(255)),
    sa.Column("currency", sa.String(3), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
)

FREQUENCIES = sa.Table(
    "frequencies",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("count", sa.Integer(), nullable=False),
    sa.Column("unit", sa.String(8), nullable=False),
    sa.UniqueConstraint("tenant_id", "count", "unit", name="uq_frequencies_tenant_count_unit"),
    sa.CheckConstraint("count > 0", name="ck_frequencies_count_positive"),
)

RECIPE_ITEMS = sa.Table(
    "recipe_items",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False, index=True),
    sa.Column("product_id", sa.String(64), nullable=False),
    sa.Column("quantity", sa.Integer(), nullable=False),
    sa.Column("unit_price_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("frequency_id", sa.String(36), sa.ForeignKey("frequencies.id"), nullable=False),
    sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.CheckConstraint("quantity > 0", name="ck_recipe_items_quantity_positive"),
)

FULFILLMENT_CURSORS = sa.Table(
    "fulfillment_cursors",
    _METADATA,
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), primary_key=True),
    sa.Column("product_id", sa.String(64), primary_key=True),
    sa.Column("fulfilled_until", sa.Date(), nullable=False),
    sa.Column("version", sa.Integer(), nullable=False),
)

ORDERS = sa.Table(
    "orders",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False, index=True),
    sa.Column("fulfilled_until", sa.Date(), nullable=False),
    sa.Column("recipe_snapshot", JSONType, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
)

ORDER_ITEMS = sa.Table(
    "order_items",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False, index=True),
    sa.Column("recipe_item_id", sa.String(36), nullable=False),
    sa.Column("product_id", sa.String(64), nullable=False),
    sa.Column("quantity", sa.Integer(), nullable=False),
    sa.Column("unit_price_cents", sa.Integer(), nullable=False),
)

DELIVERIES = sa.Table(
    "deliveries",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False, unique=True),
    sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
    sa.Column("delivery_date", sa.Date(), nullable=False),
    sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("packed", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Index("ix_deliveries_tenant_date", "tenant_id", "delivery_date"),
)

PAYMENTS = sa.Table(
    "payments",
    _METADATA,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("order_id", sa.String(36), sa.ForeignKey("orders.id"), nullable=False, unique=True),
    sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("amount_cents", sa.Integer(), nullable=False),
    sa.Column("currency", sa.String(3), nullable=False),
    sa.Column("line_items", JSONType, nullable=False),
    sa.Column("settling_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_attempt", sa.DateTime(timezone=True)),
    sa.Column("last_response", JSONType),
    sa.Column("error_code", sa.String(64)),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    sa.Index("ix_payments_tenant_status", "tenant_id", "status"),
)

SUBSCRIPTION_MILESTONES = sa.Table(
    "subscription_milestones",
    _METADATA,
    sa.Column("tenant_id", sa.String(36), nullable=False),
    sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), primary_key=True),
    sa.Column("status", sa.String(16), primary_key=True),
    sa.Column("reached_at", sa.DateTime(timezone=True), nullable=False),
)

EVENT_OUTBOX = get_outbox_events_table(_METADATA)


def metadata() -> sa.MetaData:
    """Metadata holding every engine table (used by Alembic and tests)."""
    return _METADATA


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything is written in UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def local_day_start(day: date, tz: ZoneInfo) -> datetime:
    """UTC instant of local midnight of `day`."""
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(UTC)


# Subscriptions -------------------------------------------------------------


def insert_subscription(conn: Connection, record: SubscriptionRecord) -> None:
    now = record.created_at or utcnow()
    conn.execute(
        sa.insert(SUBSCRIPTIONS).values(
            id=record.subscription_id,
            tenant_id=record.tenant_id,
            customer_id=record.customer_id,
            receiver_id=record.receiver_id,
            status=SubscriptionStatus(record.status).value,
            delivery_zone=record.delivery_zone,
            payment_token=record.payment_token,
            currency=record.currency,
            created_at=now,
            updated_at=now,
        )
    )


def load_subscription(conn: Connection, tenant_id: str, subscription_id: str) -> SubscriptionRecord:
    """Load one subscription.

    Raises:
        SubscriptionNotFoundError: If it does not exist for the tenant
    """
    row = conn.execute(
        sa.select(SUBSCRIPTIONS)
        .where(SUBSCRIPTIONS.c.tenant_id == tenant_id)
        .where(SUBSCRIPTIONS.c.id == subscription_id)
    ).mappings().first()
    if row is None:
        raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
    return SubscriptionRecord(
        subscription_id=row["id"],
        tenant_id=row["tenant_id"],
        customer_id=row["customer_id"],
        receiver_id=row["receiver_id"],
        status=SubscriptionStatus(row["status"]),
        delivery_zone=row["delivery_zone"],
        payment_token=row["payment_token"],
        currency=row["currency"],
        created_at=_aware(row["created_at"]),
    )


def list_subscription_ids(
    conn: Connection, tenant_id: str, statuses: Iterable[SubscriptionStatus]
) -> list[str]:
    rows = conn.execute(
        sa.select(SUBSCRIPTIONS.c.id)
        .where(SUBSCRIPTIONS.c.tenant_id == tenant_id)
        .where(SUBSCRIPTIONS.c.status.in_([SubscriptionStatus(s).value for s in statuses]))
        .order_by(SUBSCRIPTIONS.c.created_at, SUBSCRIPTIONS.c.id)
    ).fetchall()
    return [row.id for row in rows]


def compare_and_set_status(
    conn: Connection,
    tenant_id: str,
    subscription_id: str,
    expected: SubscriptionStatus,
    new: SubscriptionStatus,
) -> bool:
    """Set the status only if it still equals `expected`; True if applied."""
    result = conn.execute(
        sa.update(SUBSCRIPTIONS)
        .where(SUBSCRIPTIONS.c.tenant_id == tenant_id)
        .where(SUBSCRIPTIONS.c.id == subscription_id)
        .where(SUBSCRIPTIONS.c.status == SubscriptionStatus(expected).value)
        .values(status=SubscriptionStatus(new).value, updated_at=utcnow())
    )
    return result.rowcount == 1


def record_milestone(
    conn: Connection, tenant_id: str, subscription_id: str, status: SubscriptionStatus
) -> bool:
    """Remember that a status was reached; True only the first time."""
    exists = conn.execute(
        sa.select(SUBSCRIPTION_MILESTONES.c.status)
        .where(SUBSCRIPTION_MILESTONES.c.subscription_id == subscription_id)
        .where(SUBSCRIPTION_MILESTONES.c.status == SubscriptionStatus(status).value)
    ).first()
    if exists is not None:
        return False
    conn.execute(
        sa.insert(SUBSCRIPTION_MILESTONES).values(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            status=SubscriptionStatus(status).value,
            reached_at=utcnow(),
        )
    )
    return True


def update_payment_token(conn: Connection, tenant_id: str, subscription_id: str, token: str) -> None:
    conn.execute(
        sa.update(SUBSCRIPTIONS)
        .where(SUBSCRIPTIONS.c.tenant_id == tenant_id)
        .where(SUBSCRIPTIONS.c.id == subscription_id)
        .values(payment_token=token, updated_at=utcnow())
    )


# Recipe items ----------------------------------------------------------------


def get_or_create_frequency(conn: Connection, tenant_id: str, frequency: Frequency) -> str:
    """Frequencies are shared and immutable; reuse an existing row."""
    row = conn.execute(
        sa.select(FREQUENCIES.c.id)
        .where(FREQUENCIES.c.tenant_id == tenant_id)
        .where(FREQUENCIES.c.count == frequency.count)
        .where(FREQUENCIES.c.unit == frequency.unit.value)
    ).first()
    if row is not None:
        return row.id
    frequency_id = new_id()
    conn.execute(
        sa.insert(FREQUENCIES).values(
            id=frequency_id,
            tenant_id=tenant_id,
            count=frequency.count,
            unit=frequency.unit.value,
        )
    )
    return frequency_id


def insert_recipe_item(
    conn: Connection, tenant_id: str, subscription_id: str, item: RecipeItem
) -> None:
    conn.execute(
        sa.insert(RECIPE_ITEMS).values(
            id=item.item_id,
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
            frequency_id=get_or_create_frequency(conn, tenant_id, item.frequency),
            active=True,
        )
    )


def deactivate_recipe_items(conn: Connection, tenant_id: str, subscription_id: str) -> None:
    conn.execute(
        sa.update(RECIPE_ITEMS)
        .where(RECIPE_ITEMS.c.tenant_id == tenant_id)
        .where(RECIPE_ITEMS.c.subscription_id == subscription_id)
        .values(active=False)
    )


def load_recipe_items(conn: Connection, tenant_id: str, subscription_id: str) -> list[RecipeItem]:
    rows = conn.execute(
        sa.select(
            RECIPE_ITEMS.c.id,
            RECIPE_ITEMS.c.product_id,
            RECIPE_ITEMS.c.quantity,
            RECIPE_ITEMS.c.unit_price_cents,
            FREQUENCIES.c.count,
            FREQUENCIES.c.unit,
        )
        .join(FREQUENCIES, FREQUENCIES.c.id == RECIPE_ITEMS.c.frequency_id)
        .where(RECIPE_ITEMS.c.tenant_id == tenant_id)
        .where(RECIPE_ITEMS.c.subscription_id == subscription_id)
        .where(RECIPE_ITEMS.c.active.is_(True))
        .order_by(RECIPE_ITEMS.c.product_id, RECIPE_ITEMS.c.id)
    ).fetchall()
    return [
        RecipeItem(
            item_id=row.id,
            product_id=row.product_id,
            quantity=row.quantity,
            unit_price_cents=row.unit_price_cents,
            frequency=Frequency(count=row.count, unit=FrequencyUnit(row.unit)),
        )
        for row in rows
    ]


# Fulfillment cursors ---------------------------------------------------------


def load_cursors(
    conn: Connection, tenant_id: str, subscription_id: str
) -> dict[str, tuple[date, int]]:
    """Return {product_id: (fulfilled_until, version)}."""
    rows = conn.execute(
        sa.select(
            FULFILLMENT_CURSORS.c.product_id,
            FULFILLMENT_CURSORS.c.fulfilled_until,
            FULFILLMENT_CURSORS.c.version,
        )
        .where(FULFILLMENT_CURSORS.c.tenant_id == tenant_id)
        .where(FULFILLMENT_CURSORS.c.subscription_id == subscription_id)
    ).fetchall()
    return {row.product_id: (row.fulfilled_until, row.version) for row in rows}


def advance_cursor(
    conn: Connection,
    tenant_id: str,
    subscription_id: str,
    product_id: str,
    fulfilled_until: date,
    expected_version: Optional[int],
) -> int:
    """Move a cursor forward with a version check; returns the new version.

    Raises:
        CursorConflictError: If another writer advanced the cursor first
    """
    if expected_version is None:
        exists = conn.execute(
            sa.select(FULFILLMENT_CURSORS.c.version)
            .where(FULFILLMENT_CURSORS.c.subscription_id == subscription_id)
            .where(FULFILLMENT_CURSORS.c.product_id == product_id)
        ).first()
        if exists is not None:
            raise CursorConflictError(
                f"Cursor {subscription_id}/{product_id} was created concurrently"
            )
        conn.execute(
            sa.insert(FULFILLMENT_CURSORS).values(
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                product_id=product_id,
                fulfilled_until=fulfilled_until,
                version=1,
            )
        )
        return 1

    result = conn.execute(
        sa.update(FULFILLMENT_CURSORS)
        .where(FULFILLMENT_CURSORS.c.tenant_id == tenant_id)
        .where(FULFILLMENT_CURSORS.c.subscription_id == subscription_id)
        .where(FULFILLMENT_CURSORS.c.product_id == product_id)
        .where(FULFILLMENT_CURSORS.c.version == expected_version)
        .values(fulfilled_until=fulfilled_until, version=expected_version + 1)
    )
    if result.rowcount != 1:
        raise CursorConflictError(
            f"Cursor {subscription_id}/{product_id} moved past version {expected_version}"
        )
    return expected_version + 1


# Orders and deliveries -------------------------------------------------------


def insert_order(
    conn: Connection,
    tenant_id: str,
    subscription_id: str,
    fulfilled_until: date,
    recipe_snapshot: dict[str, Any],
) -> str:
    order_id = new_id()
    conn.execute(
        sa.insert(ORDERS).values(
            id=order_id,
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            fulfilled_until=fulfilled_until,
            recipe_snapshot=recipe_snapshot,
            created_at=utcnow(),
        )
    )
    return order_id


def insert_order_item(conn: Connection, tenant_id: str, order_id: str, item: RecipeItem) -> None:
    conn.execute(
        sa.insert(ORDER_ITEMS).values(
            id=new_id(),
            tenant_id=tenant_id,
            order_id=order_id,
            recipe_item_id=item.item_id,
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
        )
    )


def insert_delivery(
    conn: Connection, tenant_id: str, subscription_id: str, order_id: str, delivery_date: date
) -> str:
    delivery_id = new_id()
    conn.execute(
        sa.insert(DELIVERIES).values(
            id=delivery_id,
            tenant_id=tenant_id,
            order_id=order_id,
            subscription_id=subscription_id,
            delivery_date=delivery_date,
            delivered=False,
            packed=False,
            cancelled=False,
        )
    )
    return delivery_id


def load_order_items(conn: Connection, tenant_id: str, order_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        sa.select(
            ORDER_ITEMS.c.product_id,
            ORDER_ITEMS.c.quantity,
            ORDER_ITEMS.c.unit_price_cents,
        )
        .where(ORDER_ITEMS.c.tenant_id == tenant_id)
        .where(ORDER_ITEMS.c.order_id == order_id)
        .order_by(ORDER_ITEMS.c.product_id)
    ).fetchall()
    return [
        {
            "product_id": row.product_id,
            "quantity": row.quantity,
            "unit_price_cents": row.unit_price_cents,
            "total_cents": row.quantity * row.unit_price_cents,
        }
        for row in rows
    ]


def count_open_orders(conn: Connection, tenant_id: str, subscription_id: str, as_of: date) -> int:
    """Deliveries dated today or later that are neither cancelled nor delivered."""
    return conn.execute(
        sa.select(sa.func.count())
        .select_from(DELIVERIES)
        .where(DELIVERIES.c.tenant_id == tenant_id)
        .where(DELIVERIES.c.subscription_id == subscription_id)
        .where(DELIVERIES.c.delivery_date >= as_of)
        .where(DELIVERIES.c.cancelled.is_(False))
        .where(DELIVERIES.c.delivered.is_(False))
    ).scalar_one()


def has_orders(conn: Connection, tenant_id: str, subscription_id: str) -> bool:
    row = conn.execute(
        sa.select(ORDERS.c.id)
        .where(ORDERS.c.tenant_id == tenant_id)
        .where(ORDERS.c.subscription_id == subscription_id)
        .limit(1)
    ).first()
    return row is not None


def set_delivery_flags(
    conn: Connection, tenant_id: str, delivery_id: str, **flags: bool
) -> bool:
    allowed = {k: v for k, v in flags.items() if k in ("delivered", "packed", "cancelled")}
    result = conn.execute(
        sa.update(DELIVERIES)
        .where(DELIVERIES.c.tenant_id == tenant_id)
        .where(DELIVERIES.c.id == delivery_id)
        .values(**allowed)
    )
    return result.rowcount == 1


def reschedule_delivery(conn: Connection, tenant_id: str, delivery_id: str, new_date: date) -> None:
    conn.execute(
        sa.update(DELIVERIES)
        .where(DELIVERIES.c.tenant_id == tenant_id)
        .where(DELIVERIES.c.id == delivery_id)
        .values(delivery_date=new_date)
    )


def cancel_open_deliveries(
    conn: Connection, tenant_id: str, subscription_id: str, from_date: Optional[date] = None
) -> list[str]:
    """Cancel undelivered deliveries (and their unresolved payments).

    Deliveries whose payment already settled are kept. Returns the order
    ids that were cancelled.
    """
    query = (
        sa.select(DELIVERIES.c.id, DELIVERIES.c.order_id, PAYMENTS.c.status)
        .select_from(DELIVERIES.outerjoin(PAYMENTS, PAYMENTS.c.order_id == DELIVERIES.c.order_id))
        .where(DELIVERIES.c.tenant_id == tenant_id)
        .where(DELIVERIES.c.subscription_id == subscription_id)
        .where(DELIVERIES.c.cancelled.is_(False))
        .where(DELIVERIES.c.delivered.is_(False))
    )
    if from_date is not None:
        query = query.where(DELIVERIES.c.delivery_date >= from_date)

    cancelled: list[str] = []
    for row in conn.execute(query).fetchall():
        if row.status is not None and PaymentStatus(row.status) in RESOLVED_PAYMENT_STATUSES:
            continue
        set_delivery_flags(conn, tenant_id, row.id, cancelled=True)
        if row.status is not None:
            set_payment_status(conn, tenant_id, row.order_id, PaymentStatus.CANCELLED)
        cancelled.append(row.order_id)
    return cancelled


# Payments --------------------------------------------------------------------


def _due_delivery_query(tenant_id: str) -> sa.Select:
    return (
        sa.select(
            DELIVERIES.c.id.label("delivery_id"),
            DELIVERIES.c.order_id,
            DELIVERIES.c.subscription_id,
            DELIVERIES.c.delivery_date,
            DELIVERIES.c.delivered,
            DELIVERIES.c.cancelled,
            SUBSCRIPTIONS.c.status.label("subscription_status"),
            PAYMENTS.c.id.label("payment_id"),
            PAYMENTS.c.status.label("payment_status"),
            PAYMENTS.c.settling_attempts,
            PAYMENTS.c.last_attempt,
            PAYMENTS.c.created_at.label("payment_created_at"),
        )
        .select_from(
            DELIVERIES.join(SUBSCRIPTIONS, SUBSCRIPTIONS.c.id == DELIVERIES.c.subscription_id)
            .outerjoin(PAYMENTS, PAYMENTS.c.order_id == DELIVERIES.c.order_id)
        )
        .where(DELIVERIES.c.tenant_id == tenant_id)
    )


def _to_due_delivery(row) -> DueDelivery:
    return DueDelivery(
        delivery_id=row.delivery_id,
        order_id=row.order_id,
        subscription_id=row.subscription_id,
        delivery_date=row.delivery_date,
        delivered=bool(row.delivered),
        cancelled=bool(row.cancelled),
        subscription_status=SubscriptionStatus(row.subscription_status),
        payment_id=row.payment_id,
        payment_status=PaymentStatus(row.payment_status) if row.payment_status else None,
        settling_attempts=row.settling_attempts or 0,
        last_attempt=_aware(row.last_attempt),
        payment_created_at=_aware(row.payment_created_at),
    )


def select_new_charge_candidates(
    conn: Connection, tenant_id: str, as_of: date, since: Optional[date] = None
) -> list[DueDelivery]:
    """Deliveries dated up to `as_of` that have no payment or a never-attempted one.

    `since` bounds how far back deliveries missed by skipped runs are picked up.
    """
    query = _due_delivery_query(tenant_id).where(DELIVERIES.c.delivery_date <= as_of)
    if since is not None:
        query = query.where(DELIVERIES.c.delivery_date >= since)
    rows = conn.execute(
        query.where(DELIVERIES.c.cancelled.is_(False))
        .where(DELIVERIES.c.delivered.is_(False))
        .where(
            sa.or_(
                PAYMENTS.c.id.is_(None),
                sa.and_(
                    PAYMENTS.c.status == PaymentStatus.PENDING.value,
                    PAYMENTS.c.settling_attempts == 0,
                ),
            )
        )
        .order_by(DELIVERIES.c.delivery_date, DELIVERIES.c.subscription_id, DELIVERIES.c.id)
    ).fetchall()
    return [_to_due_delivery(row) for row in rows]


def select_retry_candidates(
    conn: Connection,
    tenant_id: str,
    window_start: date,
    window_end: date,
) -> list[DueDelivery]:
    """Failed (or interrupted) payments in the window.

    Active and past-due subscriptions qualify; error subscriptions only for
    deliveries already marked delivered.
    """
    rows = conn.execute(
        _due_delivery_query(tenant_id)
        .where(DELIVERIES.c.delivery_date >= window_start)
        .where(DELIVERIES.c.delivery_date <= window_end)
        .where(DELIVERIES.c.cancelled.is_(False))
        .where(
            sa.or_(
                SUBSCRIPTIONS.c.status.in_(
                    [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value]
                ),
                sa.and_(
                    SUBSCRIPTIONS.c.status == SubscriptionStatus.ERROR.value,
                    DELIVERIES.c.delivered.is_(True),
                ),
            )
        )
        .where(
            sa.or_(
                PAYMENTS.c.status == PaymentStatus.FAILED.value,
                # an attempt was claimed but its outcome never recorded
                sa.and_(
                    PAYMENTS.c.status == PaymentStatus.PENDING.value,
                    PAYMENTS.c.settling_attempts > 0,
                ),
            )
        )
        .order_by(DELIVERIES.c.delivery_date, DELIVERIES.c.id)
    ).fetchall()
    return [_to_due_delivery(row) for row in rows]


def select_stale_payments(
    conn: Connection, tenant_id: str, created_before: datetime
) -> list[DueDelivery]:
    """Unresolved payments created before the given instant."""
    rows = conn.execute(
        _due_delivery_query(tenant_id)
        .where(PAYMENTS.c.id.is_not(None))
        .where(PAYMENTS.c.status.not_in([s.value for s in RESOLVED_PAYMENT_STATUSES]))
        .where(PAYMENTS.c.created_at < created_before)
        .order_by(PAYMENTS.c.created_at, PAYMENTS.c.id)
    ).fetchall()
    return [_to_due_delivery(row) for row in rows]


def lock_delivery(conn: Connection, tenant_id: str, delivery_id: str) -> Optional[DueDelivery]:
    """Re-read a delivery inside the caller's transaction.

    On PostgreSQL the row is locked with SKIP LOCKED, so a delivery another
    worker is processing reads as None.
    """
    row = conn.execute(
        _due_delivery_query(tenant_id)
        .where(DELIVERIES.c.id == delivery_id)
        .with_for_update(of=DELIVERIES, skip_locked=True)
    ).first()
    return _to_due_delivery(row) if row is not None else None


def create_payment(
    conn: Connection,
    tenant_id: str,
    delivery: DueDelivery,
    amount_cents: int,
    currency: str,
    line_items: list[dict[str, Any]],
    created_at: Optional[datetime] = None,
) -> str:
    payment_id = new_id()
    conn.execute(
        sa.insert(PAYMENTS).values(
            id=payment_id,
            tenant_id=tenant_id,
            order_id=delivery.order_id,
            subscription_id=delivery.subscription_id,
            status=PaymentStatus.PENDING.value,
            amount_cents=amount_cents,
            currency=currency,
            line_items=line_items,
            settling_attempts=0,
            last_attempt=None,
            last_response=None,
            error_code=None,
            created_at=(created_at or utcnow()).astimezone(UTC),
        )
    )
    return payment_id


def load_payment(conn: Connection, tenant_id: str, payment_id: str) -> dict[str, Any]:
    row = conn.execute(
        sa.select(PAYMENTS)
        .where(PAYMENTS.c.tenant_id == tenant_id)
        .where(PAYMENTS.c.id == payment_id)
    ).mappings().one()
    payment = dict(row)
    payment["last_attempt"] = _aware(payment["last_attempt"])
    payment["created_at"] = _aware(payment["created_at"])
    return payment


def claim_attempt(
    conn: Connection,
    tenant_id: str,
    payment_id: str,
    expected_last_attempt: Optional[datetime],
    now: datetime,
) -> bool:
    """Count a charge attempt before calling the processor.

    The update is guarded by the previously read `last_attempt`, so two
    workers racing on the same payment cannot both claim it.
    """
    query = (
        sa.update(PAYMENTS)
        .where(PAYMENTS.c.tenant_id == tenant_id)
        .where(PAYMENTS.c.id == payment_id)
        .where(PAYMENTS.c.status.not_in([s.value for s in RESOLVED_PAYMENT_STATUSES]))
    )
    if expected_last_attempt is None:
        query = query.where(PAYMENTS.c.last_attempt.is_(None))
    else:
        query = query.where(PAYMENTS.c.last_attempt == expected_last_attempt)
    result = conn.execute(
        query.values(
            settling_attempts=PAYMENTS.c.settling_attempts + 1,
            last_attempt=now.astimezone(UTC),
        )
    )
    return result.rowcount == 1


def record_charge_result(
    conn: Connection,
    tenant_id: str,
    payment_id: str,
    status: PaymentStatus,
    error_code: Optional[str],
    raw_response: dict[str, Any],
) -> None:
    conn.execute(
        sa.update(PAYMENTS)
        .where(PAYMENTS.c.tenant_id == tenant_id)
        .where(PAYMENTS.c.id == payment_id)
        .values(
            status=PaymentStatus(status).value,
            error_code=error_code,
            last_response=raw_response,
        )
    )


def set_payment_status(conn: Connection, tenant_id: str, order_id: str, status: PaymentStatus) -> None:
    conn.execute(
        sa.update(PAYMENTS)
        .where(PAYMENTS.c.tenant_id == tenant_id)
        .where(PAYMENTS.c.order_id == order_id)
        .values(status=PaymentStatus(status).value)
    )
