"""Daily billing run for one tenant.

Phases run in order: materialize orders, charge new deliveries, retry
failed charges, expire stale payments. Per-subscription and per-delivery
failures are collected in the result instead of aborting the run.
"""

import logging
import time
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from backend.core.observability import metrics

from . import repository as repo
from .collaborators import EventSink, Inventory, PaymentProcessor
from .config import MerchantConfig
from .dto import BillingRunResult
from .dunning import DunningOrchestrator
from .errors import CursorConflictError
from .service import GENERATING_STATUSES, synchronize_subscription

logger = logging.getLogger(__name__)


def materialize_due_orders(
    engine: Engine, config: MerchantConfig, as_of: date, result: BillingRunResult
) -> BillingRunResult:
    """Synchronize every subscription that may still receive orders."""
    with engine.connect() as conn:
        subscription_ids = repo.list_subscription_ids(conn, config.tenant_id, GENERATING_STATUSES)

    for subscription_id in subscription_ids:
        try:
            created = synchronize_subscription(engine, config, subscription_id, as_of=as_of)
            result.orders_materialized += len(created)
        except CursorConflictError as e:
            # a concurrent writer got there first; the next run picks it up
            logger.warning("Cursor conflict", extra={"subscription_id": subscription_id})
            result.add_warning(f"materialize {subscription_id}: {e}")
        except Exception as e:
            logger.error(
                "Materializing subscription failed",
                extra={"subscription_id": subscription_id},
                exc_info=True,
            )
            result.add_error(f"materialize {subscription_id}: {e}")
    return result


def run_daily_billing(
    engine: Engine,
    tenant_id: str,
    as_of: date,
    processor: PaymentProcessor,
    inventory: Optional[Inventory] = None,
    sink: Optional[EventSink] = None,
    config: Optional[MerchantConfig] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> BillingRunResult:
    """Run all billing phases for one tenant and day.

    Args:
        engine: Database engine
        tenant_id: Tenant UUID
        as_of: Billing date (tenant local)
        processor: Payment processor
        inventory: Inventory collaborator (always fulfillable by default)
        sink: Event sink (transactional outbox by default)
        config: Merchant configuration (loaded from the environment by default)
        clock: Current time provider for the retry gate

    Returns:
        Counts, errors and warnings of the run
    """
    start = time.time()
    config = config or MerchantConfig.from_tenant(tenant_id)
    if config.tenant_id != tenant_id:
        raise ValueError(f"Config belongs to tenant {config.tenant_id}, not {tenant_id}")

    result = BillingRunResult(tenant_id=tenant_id, as_of=as_of)
    logger.info("Billing run started", extra={"as_of": as_of.isoformat()})

    materialize_due_orders(engine, config, as_of, result)

    orchestrator = DunningOrchestrator(engine, config, processor, inventory=inventory, sink=sink, clock=clock)
    orchestrator.charge_new(as_of, result)
    orchestrator.retry_failed(as_of, result)
    orchestrator.expire_stale(as_of, result)

    result.processing_time_seconds = time.time() - start
    metrics.observe_run_duration(start)
    logger.info("Billing run finished", extra=result.to_dict())
    return result
