from datetime import date

import pytest

from agents.subscriptions.dto import Frequency, FrequencyUnit
from agents.subscriptions.errors import ConfigurationError
from agents.subscriptions.frequency import frequency_delta, next_due, parse_frequency


class TestNextDue:
    """Calendar-correct next due dates."""

    def test_never_fulfilled_is_due_today(self):
        today = date(2025, 10, 1)
        assert next_due(None, Frequency(2, FrequencyUnit.WEEKS), today) == today

    @pytest.mark.parametrize(
        "last,frequency,expected",
        [
            (date(2025, 10, 1), Frequency(10, FrequencyUnit.DAYS), date(2025, 10, 11)),
            (date(2025, 10, 1), Frequency(2, FrequencyUnit.WEEKS), date(2025, 10, 15)),
            (date(2025, 10, 1), Frequency(1, FrequencyUnit.MONTHS), date(2025, 11, 1)),
            (date(2025, 12, 20), Frequency(3, FrequencyUnit.WEEKS), date(2026, 1, 10)),
        ],
    )
    def test_adds_exactly_one_period(self, last, frequency, expected):
        assert next_due(last, frequency, date(2000, 1, 1)) == expected

    def test_month_end_clamps_in_common_year(self):
        assert next_due(date(2025, 1, 31), Frequency(1, FrequencyUnit.MONTHS), date(2025, 1, 31)) == date(2025, 2, 28)

    def test_month_end_clamps_in_leap_year(self):
        assert next_due(date(2024, 1, 31), Frequency(1, FrequencyUnit.MONTHS), date(2024, 1, 31)) == date(2024, 2, 29)

    def test_month_arithmetic_is_not_thirty_days(self):
        assert next_due(date(2025, 3, 31), Frequency(1, FrequencyUnit.MONTHS), date(2025, 3, 31)) == date(2025, 4, 30)
        assert next_due(date(2025, 1, 15), Frequency(2, FrequencyUnit.MONTHS), date(2025, 1, 15)) == date(2025, 3, 15)

    def test_round_trip_matches_delta(self):
        last = date(2025, 8, 31)
        for frequency in (
            Frequency(1, FrequencyUnit.DAYS),
            Frequency(1, FrequencyUnit.WEEKS),
            Frequency(1, FrequencyUnit.MONTHS),
        ):
            assert next_due(last, frequency, last) == last + frequency_delta(frequency)


class TestFrequency:
    def test_rejects_non_positive_count(self):
        with pytest.raises(ConfigurationError):
            Frequency(0, FrequencyUnit.DAYS)
        with pytest.raises(ConfigurationError):
            Frequency(-1, FrequencyUnit.WEEKS)

    def test_rejects_unknown_unit(self):
        with pytest.raises(ConfigurationError):
            Frequency(1, "fortnights")

    def test_coerces_unit_string(self):
        assert Frequency(1, "weeks").unit is FrequencyUnit.WEEKS

    def test_describe(self):
        assert Frequency(1, FrequencyUnit.MONTHS).describe() == "every 1 month"
        assert Frequency(2, FrequencyUnit.WEEKS).describe() == "every 2 weeks"


class TestParseFrequency:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("2w", Frequency(2, FrequencyUnit.WEEKS)),
            ("1 month", Frequency(1, FrequencyUnit.MONTHS)),
            ("10 days", Frequency(10, FrequencyUnit.DAYS)),
            ("3M", Frequency(3, FrequencyUnit.MONTHS)),
        ],
    )
    def test_parses(self, text, expected):
        assert parse_frequency(text) == expected

    @pytest.mark.parametrize("text", ["", "weekly", "2 fortnights", "0 days", "s"])
    def test_rejects_garbage(self, text):
        with pytest.raises(ConfigurationError):
            parse_frequency(text)
