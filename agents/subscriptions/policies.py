"""Business policies for charging and dunning decisions.

All functions are pure for deterministic behavior; the orchestrator
passes "now" explicitly.
"""

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Tuple

from .dto import ChargeOutcome, ChargeResponse, SubscriptionEvent

# Declines the customer's bank may accept on a later day
RETRYABLE_ERROR_CODES = frozenset(
    {
        "insufficient_funds",
        "generic_decline",
        "card_declined",
        "do_not_honor",
        "try_again_later",
        "issuer_unavailable",
        "processing_error",
        "rate_limited",
        # normalized transport failures (no definitive processor answer)
        "timeout",
        "connection_error",
        "processor_unavailable",
    }
)

# Declines that need the customer to act (new card, contact bank)
TERMINAL_ERROR_CODES = frozenset(
    {
        "expired_card",
        "incorrect_number",
        "invalid_account",
        "lost_card",
        "stolen_card",
        "fraudulent",
        "fraud_suspected",
        "card_not_supported",
        "authentication_required",
        "gateway_error",
        "invalid_request",
        "missing_payment_method",
    }
)


def classify_charge(response: ChargeResponse) -> ChargeOutcome:
    """Map a processor response to settled / retryable / terminal.

    Unknown error codes fail closed to terminal so the engine never
    retries something it does not understand.
    """
    if response.success:
        return ChargeOutcome.SETTLED
    code = (response.error_code or "").strip().lower()
    if code in RETRYABLE_ERROR_CODES:
        return ChargeOutcome.RETRYABLE_FAILURE
    return ChargeOutcome.TERMINAL_FAILURE


def outcome_event(outcome: ChargeOutcome) -> SubscriptionEvent:
    """State machine event for a classified charge outcome."""
    return {
        ChargeOutcome.SETTLED: SubscriptionEvent.PAYMENT_SETTLED,
        ChargeOutcome.RETRYABLE_FAILURE: SubscriptionEvent.PAYMENT_FAILED_RETRYABLE,
        ChargeOutcome.TERMINAL_FAILURE: SubscriptionEvent.PAYMENT_FAILED_TERMINAL,
    }[outcome]


def local_midnight(now: datetime, tz: tzinfo) -> datetime:
    """Start of the local calendar day containing `now`."""
    local_now = now.astimezone(tz)
    return datetime.combine(local_now.date(), time.min, tzinfo=tz)


def already_attempted_today(
    last_attempt: Optional[datetime],
    now: datetime,
    tz: tzinfo,
    cutoff_hour: int,
) -> bool:
    """Check the once-per-day charge gate.

    An attempt made at or after local midnight closes the day. An attempt
    made between midnight and `cutoff_hour` is attributed to the previous
    day's late-running batch, so one more attempt is allowed once the local
    time reaches the cutoff. At most two attempts can land on one calendar
    day.

    Args:
        last_attempt: Persisted timestamp of the last attempt (aware)
        now: Current time (aware)
        tz: Tenant timezone
        cutoff_hour: Local hour closing the near-midnight band

    Returns:
        True if the payment must not be charged again now
    """
    if last_attempt is None:
        return False
    if last_attempt.tzinfo is None:
        raise ValueError("last_attempt must be timezone-aware")

    midnight = local_midnight(now, tz)
    local_last = last_attempt.astimezone(tz)
    if local_last < midnight:
        return False

    cutoff = midnight + timedelta(hours=cutoff_hour)
    local_now = now.astimezone(tz)
    if local_last < cutoff and local_now >= cutoff:
        return False
    return True


def retry_window(as_of: date, lookback_days: int, lookahead_days: int) -> Tuple[date, date]:
    """Inclusive delivery-date window considered by the retry phase."""
    return as_of - timedelta(days=lookback_days), as_of + timedelta(days=lookahead_days)


def payment_age_days(created_at: datetime, as_of: date, tz: tzinfo) -> int:
    """Whole days between the payment's local creation date and `as_of`."""
    if created_at.tzinfo is None:
        raise ValueError("created_at must be timezone-aware")
    return (as_of - created_at.astimezone(tz).date()).days


def is_stale(created_at: datetime, as_of: date, tz: tzinfo, threshold_days: int) -> bool:
    """True once an unresolved payment is older than the cancellation threshold."""
    return payment_age_days(created_at, as_of, tz) > threshold_days


def retries_exhausted(settling_attempts: int, max_attempts: int) -> bool:
    return settling_attempts >= max_attempts
