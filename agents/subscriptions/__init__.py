"""Subscription billing engine - delivery synchronization and dunning.

Turns per-item recipe frequencies into merged delivery/charge events and
drives the daily charge, retry and expiry phases that keep subscription
status consistent with payment outcomes.

Key Components:
- Frequency: next due date per recipe item (month-end clamping)
- Synchronizer: greedy merge of due items into weekday-aligned deliveries
- Materializer: atomic order + delivery creation with cursor compare-and-set
- State machine: subscription lifecycle transitions
- Dunning: charge, retry-once-per-day and expiry phases
- Service: subscription setup and customer actions

All persistence is tenant-scoped.
"""

__version__ = "1.0.0"

from .billing_run import run_daily_billing
from .collaborators import (
    HttpPaymentProcessor,
    NullInventory,
    OutboxEventSink,
    RecordingEventSink,
    StaticInventory,
    StaticPaymentProcessor,
)
from .config import DeliverySchedule, MerchantConfig, ZoneSchedules
from .dto import (
    BillingRunResult,
    ChargeOutcome,
    ChargeResponse,
    Frequency,
    FrequencyUnit,
    PaymentStatus,
    PreliminaryOrder,
    RecipeItem,
    SubscriptionEvent,
    SubscriptionStatus,
)
from .dunning import DunningOrchestrator
from .errors import (
    ConfigurationError,
    CursorConflictError,
    DeliveryNotFoundError,
    InvalidTransitionError,
    SubscriptionEngineError,
    SubscriptionNotFoundError,
)
from .frequency import next_due, parse_frequency
from .materializer import materialize
from .service import (
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
from .state_machine import transition
from .synchronizer import DeliverySynchronizer

__all__ = [
    "BillingRunResult",
    "ChargeOutcome",
    "ChargeResponse",
    "ConfigurationError",
    "CursorConflictError",
    "DeliveryNotFoundError",
    "DeliverySchedule",
    "DeliverySynchronizer",
    "DunningOrchestrator",
    "Frequency",
    "FrequencyUnit",
    "HttpPaymentProcessor",
    "InvalidTransitionError",
    "MerchantConfig",
    "NullInventory",
    "OutboxEventSink",
    "PaymentStatus",
    "PreliminaryOrder",
    "RecipeItem",
    "RecordingEventSink",
    "StaticInventory",
    "StaticPaymentProcessor",
    "SubscriptionEngineError",
    "SubscriptionEvent",
    "SubscriptionNotFoundError",
    "SubscriptionStatus",
    "ZoneSchedules",
    "cancel_subscription",
    "create_subscription",
    "mark_delivery_delivered",
    "mark_delivery_packed",
    "materialize",
    "next_due",
    "parse_frequency",
    "pause_subscription",
    "resume_subscription",
    "run_daily_billing",
    "synchronize_subscription",
    "transition",
    "update_payment_method",
    "update_recipe_items",
]
