"""Payment/dunning orchestrator: the daily charge, retry and expiry phases.

Each phase selects its candidates, then processes every delivery on its
own: re-read under a row lock, decide, claim the attempt with a
compare-and-set update, call the processor outside any transaction, and
record the outcome together with the subscription transition and the
notification events in one transaction. Re-running a phase for the same
day is a no-op for everything already handled.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from backend.core.observability import metrics

from . import policies
from . import repository as repo
from .collaborators import EventSink, Inventory, NullInventory, OutboxEventSink, PaymentProcessor
from .config import MerchantConfig
from .dto import (
    BillingRunResult,
    ChargeOutcome,
    ChargeResponse,
    DueDelivery,
    PaymentStatus,
    RESOLVED_PAYMENT_STATUSES,
    SubscriptionEvent,
    SubscriptionStatus,
)
from .state_machine import transition

logger = logging.getLogger(__name__)

# Subscriptions whose deliveries are never charged by the first-charge phase
_NO_CHARGE_STATUSES = frozenset(
    {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED, SubscriptionStatus.ON_HOLD}
)
_RETRY_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE})
# Shipped goods are still charged after the retry limit moved the subscription to error
_FORCED_RETRY_STATUSES = _RETRY_STATUSES | {SubscriptionStatus.ERROR}


@dataclass
class _ClaimedAttempt:
    delivery: DueDelivery
    payment: Dict[str, Any]
    token: Optional[str]
    attempt_no: int
    forced: bool = False


def apply_event(
    conn: Connection,
    tenant_id: str,
    subscription_id: str,
    event: SubscriptionEvent,
    sink: EventSink,
    context: Optional[Dict[str, Any]] = None,
) -> Optional[SubscriptionStatus]:
    """Apply a state machine event and persist it with compare-and-set.

    Emits ``subscription.<status>`` the first time the subscription ever
    enters the new status.

    Returns:
        The new status, or None if the event did not change anything
    """
    for _ in range(3):
        record = repo.load_subscription(conn, tenant_id, subscription_id)
        new_status, changed = transition(record.status, event)
        if not changed:
            return None
        if repo.compare_and_set_status(conn, tenant_id, subscription_id, record.status, new_status):
            break
        logger.warning(
            "Subscription status changed concurrently, re-evaluating",
            extra={"subscription_id": subscription_id, "event": event.value},
        )
    else:
        return None

    metrics.increment_status_transition(record.status.value, new_status.value)
    logger.info(
        "Subscription status changed",
        extra={
            "subscription_id": subscription_id,
            "from_status": record.status.value,
            "to_status": new_status.value,
            "event": event.value,
        },
    )
    if repo.record_milestone(conn, tenant_id, subscription_id, new_status):
        sink.emit(
            f"subscription.{new_status.value}",
            {
                "subscription_id": subscription_id,
                "customer_id": record.customer_id,
                "previous_status": record.status.value,
                **(context or {}),
            },
            conn=conn,
            idempotency_key=f"subscription.{new_status.value}:{subscription_id}",
        )
    return new_status


class DunningOrchestrator:
    """Drive charges, retries and expiry for one tenant.

    Args:
        engine: Database engine
        config: Merchant configuration of the tenant
        processor: Payment processor
        inventory: Inventory used for reschedule decisions and releases
        sink: Notification event sink
        clock: Returns the current aware datetime (injectable for tests)
    """

    def __init__(
        self,
        engine: Engine,
        config: MerchantConfig,
        processor: PaymentProcessor,
        inventory: Optional[Inventory] = None,
        sink: Optional[EventSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.config = config
        self.tenant_id = config.tenant_id
        self.processor = processor
        self.inventory = inventory or NullInventory()
        self.sink = sink or OutboxEventSink(repo.EVENT_OUTBOX, self.tenant_id)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.tz = config.tzinfo

    # Phase 1 ---------------------------------------------------------------

    def charge_new(self, as_of: date, result: Optional[BillingRunResult] = None) -> BillingRunResult:
        """Create and charge payments for deliveries dated up to `as_of`.

        Deliveries inside the retry look-back window that a skipped run
        never charged are picked up as well.
        """
        result = result or BillingRunResult(tenant_id=self.tenant_id, as_of=as_of)
        since = as_of - timedelta(days=self.config.retry_lookback_days)
        with self.engine.connect() as conn:
            candidates = repo.select_new_charge_candidates(conn, self.tenant_id, as_of, since=since)

        logger.info("Charge phase started", extra={"as_of": as_of.isoformat(), "candidates": len(candidates)})
        for delivery in candidates:
            try:
                claim = self._claim_new(delivery, result)
                if claim is not None:
                    self._charge(claim, result)
            except Exception as e:
                logger.error(
                    "Charging delivery failed",
                    extra={"delivery_id": delivery.delivery_id},
                    exc_info=True,
                )
                result.add_error(f"charge {delivery.delivery_id}: {e}")
        return result

    def _claim_new(self, delivery: DueDelivery, result: BillingRunResult) -> Optional[_ClaimedAttempt]:
        now = self.clock()
        try:
            with self.engine.begin() as conn:
                current = repo.lock_delivery(conn, self.tenant_id, delivery.delivery_id)
                if current is None or current.cancelled or current.delivered:
                    return None
                if current.subscription_status in _NO_CHARGE_STATUSES:
                    return None

                if current.payment_id is None:
                    subscription = repo.load_subscription(conn, self.tenant_id, current.subscription_id)
                    line_items = repo.load_order_items(conn, self.tenant_id, current.order_id)
                    current.payment_id = repo.create_payment(
                        conn,
                        self.tenant_id,
                        current,
                        amount_cents=sum(item["total_cents"] for item in line_items),
                        currency=subscription.currency or self.config.currency,
                        line_items=line_items,
                        created_at=now,
                    )
                    result.payments_created += 1
                elif current.settling_attempts > 0 or current.payment_status is not PaymentStatus.PENDING:
                    return None

                return self._claim(conn, current, now)
        except IntegrityError:
            # another worker created the payment for this order first
            logger.warning("Payment already created concurrently", extra={"order_id": delivery.order_id})
            return None

    # Phase 2 ---------------------------------------------------------------

    def retry_failed(self, as_of: date, result: Optional[BillingRunResult] = None) -> BillingRunResult:
        """Retry failed payments inside the look-back/look-ahead window."""
        result = result or BillingRunResult(tenant_id=self.tenant_id, as_of=as_of)
        start, end = policies.retry_window(
            as_of, self.config.retry_lookback_days, self.config.retry_lookahead_days
        )
        with self.engine.connect() as conn:
            candidates = repo.select_retry_candidates(conn, self.tenant_id, start, end)

        logger.info("Retry phase started", extra={"as_of": as_of.isoformat(), "candidates": len(candidates)})
        for delivery in candidates:
            try:
                claim = self._claim_retry(delivery, as_of, result)
                if claim is not None:
                    self._charge(claim, result)
            except Exception as e:
                logger.error(
                    "Retrying delivery failed",
                    extra={"delivery_id": delivery.delivery_id},
                    exc_info=True,
                )
                result.add_error(f"retry {delivery.delivery_id}: {e}")
        return result

    def _claim_retry(
        self, delivery: DueDelivery, as_of: date, result: BillingRunResult
    ) -> Optional[_ClaimedAttempt]:
        now = self.clock()
        with self.engine.begin() as conn:
            current = repo.lock_delivery(conn, self.tenant_id, delivery.delivery_id)
            if current is None or current.cancelled or current.payment_id is None:
                return None
            allowed = _FORCED_RETRY_STATUSES if current.delivered else _RETRY_STATUSES
            if current.subscription_status not in allowed:
                return None
            if current.payment_status not in (PaymentStatus.FAILED, PaymentStatus.PENDING):
                return None

            if policies.already_attempted_today(
                current.last_attempt, now, self.tz, self.config.retry_cutoff_hour
            ):
                result.retries_skipped += 1
                metrics.increment_retry_skipped("attempted_today")
                return None

            if not current.delivered:
                if policies.retries_exhausted(current.settling_attempts, self.config.max_retry_attempts):
                    apply_event(
                        conn,
                        self.tenant_id,
                        current.subscription_id,
                        SubscriptionEvent.RETRIES_EXHAUSTED,
                        self.sink,
                        {"payment_id": current.payment_id},
                    )
                    result.retries_skipped += 1
                    metrics.increment_retry_skipped("exhausted")
                    return None

                missing = [
                    item["product_id"]
                    for item in repo.load_order_items(conn, self.tenant_id, current.order_id)
                    if not self.inventory.can_fulfill(item["product_id"], item["quantity"])
                ]
                if missing:
                    self._reschedule(conn, current, as_of, missing)
                    result.deliveries_rescheduled += 1
                    return None

            claim = self._claim(conn, current, now)
            if claim is not None:
                claim.forced = current.delivered
            return claim

    def _reschedule(self, conn: Connection, delivery: DueDelivery, as_of: date, missing: list) -> None:
        new_date = max(delivery.delivery_date, as_of) + timedelta(days=self.config.reschedule_days)
        repo.reschedule_delivery(conn, self.tenant_id, delivery.delivery_id, new_date)
        self.sink.emit(
            "delivery.rescheduled",
            {
                "delivery_id": delivery.delivery_id,
                "subscription_id": delivery.subscription_id,
                "previous_date": delivery.delivery_date.isoformat(),
                "delivery_date": new_date.isoformat(),
                "unavailable_products": missing,
            },
            conn=conn,
            idempotency_key=f"delivery.rescheduled:{delivery.delivery_id}:{new_date.isoformat()}",
        )
        logger.info(
            "Delivery rescheduled",
            extra={
                "delivery_id": delivery.delivery_id,
                "delivery_date": new_date.isoformat(),
                "unavailable_products": missing,
            },
        )

    # Phase 3 ---------------------------------------------------------------

    def expire_stale(self, as_of: date, result: Optional[BillingRunResult] = None) -> BillingRunResult:
        """Cancel unresolved payments older than the cancellation threshold."""
        result = result or BillingRunResult(tenant_id=self.tenant_id, as_of=as_of)
        threshold = self.config.failed_payment_cancel_days
        created_before = repo.local_day_start(as_of - timedelta(days=threshold), self.tz)
        with self.engine.connect() as conn:
            candidates = repo.select_stale_payments(conn, self.tenant_id, created_before)

        logger.info("Expiry phase started", extra={"as_of": as_of.isoformat(), "candidates": len(candidates)})
        for delivery in candidates:
            try:
                if self._expire_one(delivery, as_of):
                    result.payments_expired += 1
            except Exception as e:
                logger.error(
                    "Expiring payment failed",
                    extra={"delivery_id": delivery.delivery_id},
                    exc_info=True,
                )
                result.add_error(f"expire {delivery.delivery_id}: {e}")
        return result

    def _expire_one(self, delivery: DueDelivery, as_of: date) -> bool:
        threshold = self.config.failed_payment_cancel_days
        with self.engine.begin() as conn:
            current = repo.lock_delivery(conn, self.tenant_id, delivery.delivery_id)
            if current is None or current.payment_id is None:
                return False
            if current.payment_status is None or current.payment_status in RESOLVED_PAYMENT_STATUSES:
                return False
            if not policies.is_stale(current.payment_created_at, as_of, self.tz, threshold):
                return False

            repo.set_payment_status(conn, self.tenant_id, current.order_id, PaymentStatus.CANCELLED)
            if not current.delivered:
                repo.set_delivery_flags(conn, self.tenant_id, current.delivery_id, cancelled=True)
            self.inventory.release(current.order_id)
            apply_event(
                conn,
                self.tenant_id,
                current.subscription_id,
                SubscriptionEvent.PAYMENT_EXPIRED,
                self.sink,
                {"payment_id": current.payment_id},
            )
            self.sink.emit(
                "payment.expired",
                {
                    "payment_id": current.payment_id,
                    "order_id": current.order_id,
                    "subscription_id": current.subscription_id,
                    "settling_attempts": current.settling_attempts,
                },
                conn=conn,
                idempotency_key=f"payment.expired:{current.payment_id}",
            )

        metrics.increment_payments_expired()
        logger.info(
            "Payment expired",
            extra={"payment_id": current.payment_id, "subscription_id": current.subscription_id},
        )
        return True

    # Charging --------------------------------------------------------------

    def _claim(self, conn: Connection, delivery: DueDelivery, now: datetime) -> Optional[_ClaimedAttempt]:
        payment = repo.load_payment(conn, self.tenant_id, delivery.payment_id)
        if not repo.claim_attempt(conn, self.tenant_id, payment["id"], payment["last_attempt"], now):
            logger.info("Charge attempt already claimed", extra={"payment_id": payment["id"]})
            return None
        subscription = repo.load_subscription(conn, self.tenant_id, delivery.subscription_id)
        return _ClaimedAttempt(
            delivery=delivery,
            payment=payment,
            token=subscription.payment_token,
            attempt_no=payment["settling_attempts"] + 1,
        )

    def _call_processor(self, claim: _ClaimedAttempt) -> ChargeResponse:
        payment = claim.payment
        try:
            return self.processor.charge(
                payment["amount_cents"],
                payment["currency"],
                f"{payment['id']}:{claim.attempt_no}",
                claim.token,
            )
        except (TimeoutError, httpx.TimeoutException):
            logger.warning("Processor call timed out", extra={"payment_id": payment["id"]})
            return ChargeResponse(success=False, error_code="timeout", raw={"exception": "timeout"})
        except Exception as e:
            logger.error("Processor call failed", extra={"payment_id": payment["id"]}, exc_info=True)
            return ChargeResponse(
                success=False,
                error_code="processor_unavailable",
                raw={"exception": type(e).__name__},
            )

    def _charge(self, claim: _ClaimedAttempt, result: BillingRunResult) -> ChargeOutcome:
        response = self._call_processor(claim)
        outcome = policies.classify_charge(response)
        payment_id = claim.payment["id"]
        delivery = claim.delivery
        result.charges_attempted += 1
        metrics.increment_charge_attempts(outcome.value)

        status = PaymentStatus.SETTLED if outcome is ChargeOutcome.SETTLED else PaymentStatus.FAILED
        context = {
            "payment_id": payment_id,
            "order_id": delivery.order_id,
            "subscription_id": delivery.subscription_id,
            "amount_cents": claim.payment["amount_cents"],
            "currency": claim.payment["currency"],
            "attempt": claim.attempt_no,
        }
        with self.engine.begin() as conn:
            repo.record_charge_result(conn, self.tenant_id, payment_id, status, response.error_code, response.raw)
            apply_event(
                conn,
                self.tenant_id,
                delivery.subscription_id,
                policies.outcome_event(outcome),
                self.sink,
                {"payment_id": payment_id},
            )
            if (
                outcome is ChargeOutcome.RETRYABLE_FAILURE
                and not claim.forced
                and policies.retries_exhausted(claim.attempt_no, self.config.max_retry_attempts)
            ):
                apply_event(
                    conn,
                    self.tenant_id,
                    delivery.subscription_id,
                    SubscriptionEvent.RETRIES_EXHAUSTED,
                    self.sink,
                    {"payment_id": payment_id},
                )
            self.sink.emit(
                f"payment.{status.value}",
                {**context, "error_code": response.error_code, "outcome": outcome.value},
                conn=conn,
                idempotency_key=f"payment.{status.value}:{payment_id}:{claim.attempt_no}",
            )

        if outcome is ChargeOutcome.SETTLED:
            result.charges_settled += 1
        else:
            result.charges_failed += 1
        logger.info(
            "Charge attempt recorded",
            extra={**context, "outcome": outcome.value, "error_code": response.error_code, "forced": claim.forced},
        )
        return outcome
