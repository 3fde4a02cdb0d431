"""Subscription lifecycle state machine.

`transition` is the only place that knows which status follows which.
It is a pure function; persistence applies its result with a
compare-and-set update so concurrent workers cannot lose an update.
"""

from collections import deque
from typing import Dict, Iterable, Set, Tuple

from .dto import SubscriptionEvent, SubscriptionStatus
from .errors import InvalidTransitionError

S = SubscriptionStatus
E = SubscriptionEvent

TRANSITIONS: Dict[Tuple[SubscriptionStatus, SubscriptionEvent], SubscriptionStatus] = {
    # first charge
    (S.INCOMPLETE, E.PAYMENT_SETTLED): S.ACTIVE,
    (S.INCOMPLETE, E.PAYMENT_FAILED_RETRYABLE): S.PAST_DUE,
    (S.INCOMPLETE, E.PAYMENT_FAILED_TERMINAL): S.ERROR,
    (S.INCOMPLETE, E.PAYMENT_EXPIRED): S.EXPIRED,
    (S.INCOMPLETE, E.CANCEL): S.CANCELLED,
    # recurring charges
    (S.ACTIVE, E.PAYMENT_FAILED_RETRYABLE): S.PAST_DUE,
    (S.ACTIVE, E.PAYMENT_FAILED_TERMINAL): S.ERROR,
    (S.ACTIVE, E.PAUSE): S.ON_HOLD,
    (S.ACTIVE, E.CANCEL): S.CANCELLED,
    # dunning
    (S.PAST_DUE, E.PAYMENT_SETTLED): S.ACTIVE,
    (S.PAST_DUE, E.PAYMENT_FAILED_TERMINAL): S.ERROR,
    (S.PAST_DUE, E.RETRIES_EXHAUSTED): S.ERROR,
    (S.PAST_DUE, E.PAYMENT_EXPIRED): S.EXPIRED,
    (S.PAST_DUE, E.CANCEL): S.CANCELLED,
    # customer intervention required
    (S.ERROR, E.PAYMENT_SETTLED): S.ACTIVE,
    (S.ERROR, E.PAYMENT_METHOD_UPDATED): S.PAST_DUE,
    (S.ERROR, E.PAYMENT_EXPIRED): S.EXPIRED,
    (S.ERROR, E.CANCEL): S.CANCELLED,
    # paused
    (S.ON_HOLD, E.RESUME): S.ACTIVE,
    (S.ON_HOLD, E.CANCEL): S.CANCELLED,
}

CUSTOMER_EVENTS = frozenset(
    {E.PAUSE, E.RESUME, E.CANCEL, E.PAYMENT_METHOD_UPDATED}
)


def transition(
    current: SubscriptionStatus, event: SubscriptionEvent
) -> Tuple[SubscriptionStatus, bool]:
    """Apply one event.

    Args:
        current: Current status
        event: Event to apply

    Returns:
        Tuple of (new_status, changed). Events that do not apply to the
        current status (including everything in a terminal status) are
        no-ops and return (current, False).
    """
    current = SubscriptionStatus(current)
    if current.is_terminal:
        return current, False
    new_status = TRANSITIONS.get((current, SubscriptionEvent(event)))
    if new_status is None or new_status == current:
        return current, False
    return new_status, True


def require_transition(
    current: SubscriptionStatus, event: SubscriptionEvent
) -> SubscriptionStatus:
    """Like `transition`, but for customer actions: anything that does not apply is an error.

    Raises:
        InvalidTransitionError: If the event is not a customer action or
            does not apply to `current`
    """
    event = SubscriptionEvent(event)
    new_status, changed = transition(current, event)
    if event not in CUSTOMER_EVENTS or not changed:
        raise InvalidTransitionError(SubscriptionStatus(current).value, event.value)
    return new_status


def reachable_from(
    start: SubscriptionStatus, events: Iterable[SubscriptionEvent] = tuple(SubscriptionEvent)
) -> Set[SubscriptionStatus]:
    """All statuses reachable from `start` by any finite event sequence."""
    events = list(events)
    seen = {start}
    queue = deque([start])
    while queue:
        status = queue.popleft()
        for event in events:
            new_status, changed = transition(status, event)
            if changed and new_status not in seen:
                seen.add(new_status)
                queue.append(new_status)
    return seen
