"""Delivery synchronizer: merge recipe items into delivery/charge events.

Greedy left-to-right merge over per-item due dates. Each round takes the
earliest due item as anchor, joins every item due less than the joinable
window after it, aligns the batch to an allowed weekday and advances the
included items' fulfillment cursors to the anchor before the next round
recomputes every due date.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, Iterator, Optional

from .config import DeliverySchedule
from .dto import PreliminaryOrder, RecipeItem, ScheduledItem
from .errors import ConfigurationError
from .frequency import next_due

logger = logging.getLogger(__name__)


def align_delivery_date(anchor: date, schedule: DeliverySchedule) -> date:
    """Add the packing lead time, then move to the next allowed weekday.

    The day reached after the lead time counts if it is itself allowed;
    otherwise the search wraps into the following week.

    Raises:
        ConfigurationError: If the schedule has no weekdays
    """
    schedule.validate()
    candidate = anchor + timedelta(days=schedule.lead_days)
    for offset in range(7):
        day = candidate + timedelta(days=offset)
        if day.weekday() in schedule.weekdays:
            return day
    # unreachable for a validated schedule
    raise ConfigurationError(f"No allowed weekday in {schedule.weekdays}")


@dataclass
class DeliverySynchronizer:
    """Produce merged preliminary orders for one subscription.

    Args:
        window_days: Joinable window in days
        schedule: Weekday schedule for recurring orders
        first_schedule: Weekday schedule for the subscription's first order
            (defaults to `schedule`)
    """

    window_days: int
    schedule: DeliverySchedule
    first_schedule: Optional[DeliverySchedule] = None

    def __post_init__(self):
        if self.window_days < 1:
            raise ConfigurationError("joinable window must be at least one day")
        self.schedule.validate()
        if self.first_schedule is None:
            self.first_schedule = self.schedule
        self.first_schedule.validate()

    def due_dates(
        self,
        items: Iterable[RecipeItem],
        cursors: Dict[str, Optional[date]],
        reference_date: date,
    ) -> list[ScheduledItem]:
        """Compute each item's due date, clamped to the reference date.

        Items whose due date already passed are due on `reference_date`.
        Result is sorted by (due date, product id) for deterministic anchors.
        """
        scheduled = []
        for item in items:
            due = next_due(cursors.get(item.product_id), item.frequency, reference_date)
            scheduled.append(ScheduledItem(item=item, due_date=max(due, reference_date)))
        scheduled.sort(key=lambda s: (s.due_date, s.item.product_id, s.item.item_id))
        return scheduled

    def iter_preliminary_orders(
        self,
        items: Iterable[RecipeItem],
        cursors: Dict[str, Optional[date]],
        reference_date: date,
        *,
        resume_from_today: bool = False,
        has_prior_orders: bool = True,
        until: Optional[date] = None,
    ) -> Iterator[PreliminaryOrder]:
        """Lazily yield merged preliminary orders in delivery order.

        Args:
            items: Recipe items of the subscription
            cursors: Fulfilled-through date per product id (None = never)
            reference_date: Today; nothing is scheduled before it
            resume_from_today: Drop missed cycles and treat every item as
                due on `reference_date` (used when resuming after a pause)
            has_prior_orders: False selects the first-order schedule for the
                first emitted batch
            until: Stop before the first batch anchored after this date

        The caller bounds the sequence (islice or `until`); the generator is
        infinite otherwise. The cursors mapping is not mutated.
        """
        items = list(items)
        if not items:
            return

        cursors = dict(cursors)
        if resume_from_today:
            # no cursor means due on reference_date
            cursors = {item.product_id: None for item in items}

        first = not has_prior_orders
        while True:
            batch = self._next_batch(self.due_dates(items, cursors, reference_date))
            anchor = batch[0].due_date
            if until is not None and anchor > until:
                return

            schedule = self.first_schedule if first else self.schedule
            delivery_date = align_delivery_date(anchor, schedule)
            order = PreliminaryOrder(
                anchor_date=anchor,
                delivery_date=delivery_date,
                items=batch,
                first_order=first,
            )
            logger.debug(
                "Preliminary order built",
                extra={
                    "anchor_date": anchor.isoformat(),
                    "delivery_date": delivery_date.isoformat(),
                    "products": order.product_ids,
                },
            )
            yield order

            first = False
            # cadence runs from the anchor; lead time and weekday shift only
            # move the delivery row
            for s in batch:
                cursors[s.item.product_id] = order.fulfilled_until

    def _next_batch(self, scheduled: list[ScheduledItem]) -> list[ScheduledItem]:
        """Anchor plus every item due less than the window after it."""
        anchor = scheduled[0].due_date
        return [s for s in scheduled if (s.due_date - anchor).days < self.window_days]
