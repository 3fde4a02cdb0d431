from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

from agents.subscriptions import policies
from agents.subscriptions.dto import ChargeOutcome, ChargeResponse, SubscriptionEvent

BERLIN = ZoneInfo("Europe/Berlin")
DAY = date(2025, 10, 2)


def at(hour, minute=0, day=DAY):
    return datetime.combine(day, time(hour, minute), tzinfo=BERLIN)


class TestClassifyCharge:
    def test_success_settles(self):
        assert policies.classify_charge(ChargeResponse(success=True)) is ChargeOutcome.SETTLED

    @pytest.mark.parametrize("code", ["insufficient_funds", "card_declined", "timeout", "connection_error", "Do_Not_Honor"])
    def test_retryable_codes(self, code):
        response = ChargeResponse(success=False, error_code=code)
        assert policies.classify_charge(response) is ChargeOutcome.RETRYABLE_FAILURE

    @pytest.mark.parametrize("code", ["expired_card", "stolen_card", "gateway_error", "missing_payment_method"])
    def test_terminal_codes(self, code):
        response = ChargeResponse(success=False, error_code=code)
        assert policies.classify_charge(response) is ChargeOutcome.TERMINAL_FAILURE

    @pytest.mark.parametrize("code", ["something_new", None, ""])
    def test_unknown_codes_fail_closed(self, code):
        response = ChargeResponse(success=False, error_code=code)
        assert policies.classify_charge(response) is ChargeOutcome.TERMINAL_FAILURE

    def test_outcome_events(self):
        assert policies.outcome_event(ChargeOutcome.SETTLED) is SubscriptionEvent.PAYMENT_SETTLED
        assert policies.outcome_event(ChargeOutcome.RETRYABLE_FAILURE) is SubscriptionEvent.PAYMENT_FAILED_RETRYABLE
        assert policies.outcome_event(ChargeOutcome.TERMINAL_FAILURE) is SubscriptionEvent.PAYMENT_FAILED_TERMINAL


class TestAlreadyAttemptedToday:
    """Once-per-day gate with the near-midnight allowance."""

    def test_never_attempted(self):
        assert not policies.already_attempted_today(None, at(10), BERLIN, 4)

    def test_attempt_yesterday_allows_today(self):
        yesterday = at(23, 30, DAY - timedelta(days=1))
        assert not policies.already_attempted_today(yesterday, at(0, 30), BERLIN, 4)

    def test_attempt_this_morning_blocks(self):
        assert policies.already_attempted_today(at(8), at(10), BERLIN, 4)

    def test_near_midnight_attempt_allows_one_more_after_cutoff(self):
        assert not policies.already_attempted_today(at(0, 15), at(9), BERLIN, 4)

    def test_near_midnight_attempt_blocks_before_cutoff(self):
        assert policies.already_attempted_today(at(0, 15), at(2), BERLIN, 4)

    def test_attempt_exactly_at_cutoff_blocks(self):
        assert policies.already_attempted_today(at(4), at(9), BERLIN, 4)

    def test_compares_in_tenant_timezone(self):
        # 23:30 UTC on Oct 1 is 01:30 on Oct 2 in Berlin
        last = datetime(2025, 10, 1, 23, 30, tzinfo=UTC)
        assert policies.already_attempted_today(last, at(3), BERLIN, 4)
        assert not policies.already_attempted_today(last, at(5), BERLIN, 4)

    def test_naive_timestamp_rejected(self):
        with pytest.raises(ValueError):
            policies.already_attempted_today(datetime(2025, 10, 2, 8), at(10), BERLIN, 4)


class TestStaleness:
    def test_retry_window(self):
        assert policies.retry_window(DAY, 30, 14) == (date(2025, 9, 2), date(2025, 10, 16))

    def test_age_uses_local_creation_date(self):
        created = datetime(2025, 9, 30, 22, 30, tzinfo=UTC)  # Oct 1 in Berlin
        assert policies.payment_age_days(created, DAY, BERLIN) == 1

    def test_stale_only_after_threshold(self):
        created = at(10, day=date(2025, 10, 1))
        assert not policies.is_stale(created, date(2025, 10, 21), BERLIN, 20)
        assert policies.is_stale(created, date(2025, 10, 22), BERLIN, 20)

    def test_retries_exhausted(self):
        assert not policies.retries_exhausted(19, 20)
        assert policies.retries_exhausted(20, 20)
