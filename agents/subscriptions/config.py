"""Merchant configuration for the subscription engine.

Provides tenant-specific configuration with sensible defaults,
environment-based overrides and a YAML file for delivery zones.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from backend.core.config import settings

from .errors import ConfigurationError

WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass(frozen=True)
class DeliverySchedule:
    """Allowed delivery weekdays (0=Monday) plus packing lead time in days."""

    weekdays: tuple[int, ...]
    lead_days: int = 3

    def validate(self) -> "DeliverySchedule":
        """Raise ConfigurationError unless the schedule can produce a date."""
        if not self.weekdays:
            raise ConfigurationError("Delivery schedule has no allowed weekdays")
        if any(day not in range(7) for day in self.weekdays):
            raise ConfigurationError(f"Invalid weekday in schedule: {self.weekdays}")
        if self.lead_days < 0:
            raise ConfigurationError(f"Lead time must not be negative, got {self.lead_days}")
        return self


@dataclass(frozen=True)
class ZoneSchedules:
    """Weekday schedules of one delivery zone."""

    recurring: DeliverySchedule
    first_order: DeliverySchedule


def _default_zones() -> Dict[str, ZoneSchedules]:
    weekdays = DeliverySchedule(weekdays=(0, 1, 2, 3, 4), lead_days=3)
    return {"default": ZoneSchedules(recurring=weekdays, first_order=weekdays)}


class ScheduleModel(BaseModel):
    """YAML schema of one delivery schedule."""

    weekdays: list[int | str] = Field(..., description="Weekday names or numbers (0=Monday)")
    lead_days: int = Field(default=3, ge=0)

    @field_validator("weekdays")
    @classmethod
    def _normalize_weekdays(cls, value: list[int | str]) -> list[int]:
        days: list[int] = []
        for entry in value:
            if isinstance(entry, str):
                key = entry.strip().lower()[:3]
                if key not in WEEKDAY_NAMES:
                    raise ValueError(f"unknown weekday {entry!r}")
                days.append(WEEKDAY_NAMES.index(key))
            elif 0 <= entry <= 6:
                days.append(entry)
            else:
                raise ValueError(f"weekday out of range: {entry}")
        return sorted(set(days))

    def to_schedule(self) -> DeliverySchedule:
        return DeliverySchedule(weekdays=tuple(self.weekdays), lead_days=self.lead_days)


class ZoneModel(ScheduleModel):
    """YAML schema of a delivery zone; `first_order` falls back to the recurring schedule."""

    first_order: Optional[ScheduleModel] = None


def load_zones(path: Path) -> Dict[str, ZoneSchedules]:
    """Load delivery zones from a YAML file.

    Args:
        path: YAML file with a top-level ``zones`` mapping

    Returns:
        Mapping of zone name to schedules

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    if not path.exists():
        raise ConfigurationError(f"Zones file not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    raw_zones = data.get("zones") if isinstance(data, dict) else None
    if not isinstance(raw_zones, dict) or not raw_zones:
        raise ConfigurationError(f"Zones file {path} defines no zones")

    zones: Dict[str, ZoneSchedules] = {}
    for name, raw in raw_zones.items():
        try:
            model = ZoneModel.model_validate(raw)
        except ValidationError as err:
            raise ConfigurationError(f"Invalid zone '{name}' in {path}: {err}") from err
        recurring = model.to_schedule()
        first = model.first_order.to_schedule() if model.first_order else recurring
        zones[str(name)] = ZoneSchedules(recurring=recurring, first_order=first)
    return zones


@dataclass
class MerchantConfig:
    """Per-tenant billing and delivery configuration.

    Supports tenant-specific overrides via environment variables
    with pattern: BILLING_<TENANT_ID>_<SETTING>
    """

    tenant_id: str

    # Items due within this many days of the batch anchor merge into one delivery
    joinable_window_days: int = 5

    # Dunning
    max_retry_attempts: int = 20
    failed_payment_cancel_days: int = 20
    retry_lookback_days: int = 30
    retry_lookahead_days: int = 14
    # Attempts made before this local hour belong to the previous day's run
    retry_cutoff_hour: int = 4
    reschedule_days: int = 1

    # How many open future orders each subscription keeps materialized
    orders_ahead: int = 1

    currency: str = "EUR"
    timezone: str = "Europe/Berlin"

    zones: Dict[str, ZoneSchedules] = field(default_factory=_default_zones)

    @classmethod
    def from_tenant(cls, tenant_id: str) -> "MerchantConfig":
        """Create configuration for specific tenant.

        Args:
            tenant_id: UUID of the tenant

        Returns:
            Configured instance with tenant-specific overrides
        """
        config = cls(tenant_id=tenant_id, timezone=settings.BILLING_TIMEZONE)

        prefix = f"BILLING_{tenant_id.upper().replace('-', '_')}"

        for name in (
            "joinable_window_days",
            "max_retry_attempts",
            "failed_payment_cancel_days",
            "retry_lookback_days",
            "retry_lookahead_days",
            "retry_cutoff_hour",
            "reschedule_days",
            "orders_ahead",
        ):
            raw = os.getenv(f"{prefix}_{name.upper()}")
            if raw is not None:
                setattr(config, name, int(raw))

        config.currency = os.getenv(f"{prefix}_CURRENCY", config.currency)
        config.timezone = os.getenv(f"{prefix}_TIMEZONE", config.timezone)

        zones_file = os.getenv(f"{prefix}_ZONES_FILE", settings.BILLING_ZONES_FILE)
        if zones_file:
            config.zones = load_zones(Path(zones_file))

        return config.validate()

    def validate(self) -> "MerchantConfig":
        """Fail fast on configuration that the batch could not honor."""
        if self.joinable_window_days < 1:
            raise ConfigurationError("joinable_window_days must be >= 1")
        if self.max_retry_attempts < 1:
            raise ConfigurationError("max_retry_attempts must be >= 1")
        if self.failed_payment_cancel_days < 1:
            raise ConfigurationError("failed_payment_cancel_days must be >= 1")
        if not 0 <= self.retry_cutoff_hour <= 23:
            raise ConfigurationError("retry_cutoff_hour must be between 0 and 23")
        if self.orders_ahead < 1:
            raise ConfigurationError("orders_ahead must be >= 1")
        if not self.zones:
            raise ConfigurationError(f"Tenant {self.tenant_id} has no delivery zones")
        for schedules in self.zones.values():
            schedules.recurring.validate()
            schedules.first_order.validate()
        try:
            ZoneInfo(self.timezone)
        except (KeyError, ValueError) as err:
            raise ConfigurationError(f"Unknown timezone {self.timezone!r}") from err
        return self

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def schedules_for_zone(self, zone: str) -> ZoneSchedules:
        """Get weekday schedules for a delivery zone.

        Raises:
            ConfigurationError: If the zone is unknown
        """
        try:
            return self.zones[zone]
        except KeyError as err:
            raise ConfigurationError(
                f"Unknown delivery zone '{zone}' for tenant {self.tenant_id}"
            ) from err

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "tenant_id": self.tenant_id,
            "joinable_window_days": self.joinable_window_days,
            "max_retry_attempts": self.max_retry_attempts,
            "failed_payment_cancel_days": self.failed_payment_cancel_days,
            "retry_lookback_days": self.retry_lookback_days,
            "retry_lookahead_days": self.retry_lookahead_days,
            "retry_cutoff_hour": self.retry_cutoff_hour,
            "reschedule_days": self.reschedule_days,
            "orders_ahead": self.orders_ahead,
            "currency": self.currency,
            "timezone": self.timezone,
            "zones": {
                name: {
                    "recurring": {
                        "weekdays": list(z.recurring.weekdays),
                        "lead_days": z.recurring.lead_days,
                    },
                    "first_order": {
                        "weekdays": list(z.first_order.weekdays),
                        "lead_days": z.first_order.lead_days,
                    },
                }
                for name, z in self.zones.items()
            },
        }
