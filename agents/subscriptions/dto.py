"""Data Transfer Objects for the subscription engine.

Plain dataclasses and enums shared by the synchronizer, the state machine,
the repository and the dunning orchestrator.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import ConfigurationError


class FrequencyUnit(str, Enum):
    """Calendar unit of a billing frequency."""
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    ON_HOLD = "on_hold"
    ERROR = "error"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class SubscriptionEvent(str, Enum):
    """Inputs of the subscription state machine."""
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED_RETRYABLE = "payment_failed_retryable"
    PAYMENT_FAILED_TERMINAL = "payment_failed_terminal"
    RETRIES_EXHAUSTED = "retries_exhausted"
    PAYMENT_EXPIRED = "payment_expired"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    PAYMENT_METHOD_UPDATED = "payment_method_updated"


class PaymentStatus(str, Enum):
    """Payment lifecycle status."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    SETTLED = "settled"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


# Payments in these states are never charged or expired again
RESOLVED_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.SETTLED,
        PaymentStatus.AUTHORIZED,
        PaymentStatus.REFUNDED,
        PaymentStatus.CANCELLED,
    }
)


class ChargeOutcome(str, Enum):
    """Classified result of one processor call."""
    SETTLED = "settled"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class Frequency:
    """Immutable frequency descriptor: every `count` `unit`s."""

    count: int
    unit: FrequencyUnit

    def __post_init__(self):
        if not isinstance(self.unit, FrequencyUnit):
            try:
                object.__setattr__(self, "unit", FrequencyUnit(self.unit))
            except ValueError as err:
                raise ConfigurationError(f"Unknown frequency unit: {self.unit!r}") from err
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count <= 0:
            raise ConfigurationError(f"Frequency count must be a positive integer, got {self.count!r}")

    def describe(self) -> str:
        unit = self.unit.value
        if self.count == 1:
            unit = unit[:-1]
        return f"every {self.count} {unit}"


@dataclass(frozen=True)
class RecipeItem:
    """One product/quantity/frequency entry of a subscription."""

    item_id: str
    product_id: str
    quantity: int
    frequency: Frequency
    unit_price_cents: int = 0

    def __post_init__(self):
        if self.quantity <= 0:
            raise ConfigurationError(f"Quantity must be positive for product {self.product_id}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "frequency": {"count": self.frequency.count, "unit": self.frequency.unit.value},
        }


@dataclass(frozen=True)
class ScheduledItem:
    """Recipe item with its computed due date inside one merge round."""

    item: RecipeItem
    due_date: date


@dataclass
class PreliminaryOrder:
    """In-memory merged batch produced by the synchronizer (not yet persisted)."""

    anchor_date: date
    delivery_date: date
    items: List[ScheduledItem] = field(default_factory=list)
    first_order: bool = False

    @property
    def fulfilled_until(self) -> date:
        """Cursor value of every included item: the batch anchor, not the aligned date."""
        return self.anchor_date

    @property
    def product_ids(self) -> List[str]:
        return [scheduled.item.product_id for scheduled in self.items]

    @property
    def amount_cents(self) -> int:
        return sum(s.item.quantity * s.item.unit_price_cents for s in self.items)


@dataclass
class SubscriptionRecord:
    """Persisted subscription as read by the repository."""

    subscription_id: str
    tenant_id: str
    customer_id: str
    status: SubscriptionStatus
    delivery_zone: str
    currency: str
    payment_token: Optional[str] = None
    receiver_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class DueDelivery:
    """Delivery joined with its subscription and payment, as seen by the orchestrator."""

    delivery_id: str
    order_id: str
    subscription_id: str
    delivery_date: date
    delivered: bool
    cancelled: bool
    subscription_status: SubscriptionStatus
    payment_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    settling_attempts: int = 0
    last_attempt: Optional[datetime] = None
    payment_created_at: Optional[datetime] = None


@dataclass
class ChargeResponse:
    """Normalized processor response."""

    success: bool
    error_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BillingRunResult:
    """Result of one daily billing run for a tenant."""

    tenant_id: str
    as_of: date
    success: bool = True
    orders_materialized: int = 0
    payments_created: int = 0
    charges_attempted: int = 0
    charges_settled: int = 0
    charges_failed: int = 0
    retries_skipped: int = 0
    deliveries_rescheduled: int = 0
    payments_expired: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processing_time_seconds: float = 0.0

    def add_error(self, error: str) -> None:
        """Add error message."""
        self.errors.append(error)
        self.success = False

    def add_warning(self, warning: str) -> None:
        """Add warning message."""
        self.warnings.append(warning)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tenant_id": self.tenant_id,
            "as_of": self.as_of.isoformat(),
            "success": self.success,
            "orders_materialized": self.orders_materialized,
            "payments_created": self.payments_created,
            "charges_attempted": self.charges_attempted,
            "charges_settled": self.charges_settled,
            "charges_failed": self.charges_failed,
            "retries_skipped": self.retries_skipped,
            "deliveries_rescheduled": self.deliveries_rescheduled,
            "payments_expired": self.payments_expired,
            "errors": self.errors,
            "warnings": self.warnings,
            "processing_time_seconds": self.processing_time_seconds,
        }
