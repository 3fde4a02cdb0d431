"""Frequency calculator: next due date of a recipe item.

Month arithmetic uses ``dateutil.relativedelta`` so the day of month is kept
where possible and clamped to the end of shorter months (Jan 31 + 1 month is
Feb 28, or Feb 29 in leap years).
"""

import re
from datetime import date
from typing import Optional

from dateutil.relativedelta import relativedelta

from .dto import Frequency, FrequencyUnit
from .errors import ConfigurationError

_SHORT_UNITS = {
    "d": FrequencyUnit.DAYS,
    "w": FrequencyUnit.WEEKS,
    "m": FrequencyUnit.MONTHS,
}

_FREQUENCY_RE = re.compile(r"^\s*(\d+)\s*([a-z]+)\s*$", re.IGNORECASE)


def frequency_delta(frequency: Frequency) -> relativedelta:
    """Return the calendar offset of one frequency period."""
    if frequency.unit is FrequencyUnit.DAYS:
        return relativedelta(days=frequency.count)
    if frequency.unit is FrequencyUnit.WEEKS:
        return relativedelta(weeks=frequency.count)
    return relativedelta(months=frequency.count)


def next_due(last: Optional[date], frequency: Frequency, today: date) -> date:
    """Next due date of an item last fulfilled through `last`.

    Args:
        last: Last fulfilled-through date, or None if never fulfilled
        frequency: Item frequency
        today: Reference date used when the item was never fulfilled

    Returns:
        Due date; `today` for items that were never fulfilled
    """
    if last is None:
        return today
    return last + frequency_delta(frequency)


def parse_frequency(text: str) -> Frequency:
    """Parse '2w', '1 month', '10 days' into a Frequency.

    Raises:
        ConfigurationError: On unparseable input or non-positive counts
    """
    match = _FREQUENCY_RE.match(text or "")
    if not match:
        raise ConfigurationError(f"Cannot parse frequency {text!r}")

    count, unit_text = int(match.group(1)), match.group(2).lower()
    unit = _SHORT_UNITS.get(unit_text)
    stem = unit_text.rstrip("s")
    if unit is None and stem:
        for candidate in FrequencyUnit:
            if candidate.value.startswith(stem):
                unit = candidate
                break
    if unit is None:
        raise ConfigurationError(f"Unknown frequency unit in {text!r}")

    return Frequency(count=count, unit=unit)
