import pytest

from agents.subscriptions.dto import SubscriptionEvent as E
from agents.subscriptions.dto import SubscriptionStatus as S
from agents.subscriptions.errors import InvalidTransitionError
from agents.subscriptions.state_machine import CUSTOMER_EVENTS, reachable_from, require_transition, transition


class TestTransition:
    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (S.INCOMPLETE, E.PAYMENT_SETTLED, S.ACTIVE),
            (S.INCOMPLETE, E.PAYMENT_FAILED_RETRYABLE, S.PAST_DUE),
            (S.ACTIVE, E.PAUSE, S.ON_HOLD),
            (S.ON_HOLD, E.RESUME, S.ACTIVE),
            (S.ACTIVE, E.PAYMENT_FAILED_RETRYABLE, S.PAST_DUE),
            (S.ACTIVE, E.PAYMENT_FAILED_TERMINAL, S.ERROR),
            (S.PAST_DUE, E.PAYMENT_SETTLED, S.ACTIVE),
            (S.PAST_DUE, E.PAYMENT_FAILED_TERMINAL, S.ERROR),
            (S.PAST_DUE, E.RETRIES_EXHAUSTED, S.ERROR),
            (S.PAST_DUE, E.PAYMENT_EXPIRED, S.EXPIRED),
            (S.ERROR, E.PAYMENT_EXPIRED, S.EXPIRED),
            (S.ERROR, E.PAYMENT_METHOD_UPDATED, S.PAST_DUE),
            (S.ON_HOLD, E.CANCEL, S.CANCELLED),
        ],
    )
    def test_listed_transitions(self, current, event, expected):
        assert transition(current, event) == (expected, True)

    def test_unlisted_pair_is_noop(self):
        assert transition(S.ACTIVE, E.RESUME) == (S.ACTIVE, False)
        assert transition(S.PAST_DUE, E.PAYMENT_FAILED_RETRYABLE) == (S.PAST_DUE, False)

    @pytest.mark.parametrize("terminal", [S.CANCELLED, S.EXPIRED])
    def test_terminal_states_ignore_every_event(self, terminal):
        for event in E:
            assert transition(terminal, event) == (terminal, False)

    def test_accepts_raw_values(self):
        assert transition("active", "pause") == (S.ON_HOLD, True)


class TestReachability:
    def test_every_status_reachable_from_incomplete(self):
        assert reachable_from(S.INCOMPLETE) == set(S)

    @pytest.mark.parametrize("terminal", [S.CANCELLED, S.EXPIRED])
    def test_no_way_back_from_terminal(self, terminal):
        assert reachable_from(terminal) == {terminal}

    def test_customer_events_alone_cannot_activate_error(self):
        assert S.ACTIVE not in reachable_from(S.ERROR, CUSTOMER_EVENTS)


class TestRequireTransition:
    def test_returns_new_status(self):
        assert require_transition(S.ACTIVE, E.PAUSE) is S.ON_HOLD

    def test_invalid_customer_action_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            require_transition(S.CANCELLED, E.RESUME)
        assert exc_info.value.status == "cancelled"
        assert exc_info.value.event == "resume"

    @pytest.mark.parametrize("event", [E.PAYMENT_SETTLED, E.RETRIES_EXHAUSTED, E.PAYMENT_EXPIRED])
    def test_billing_events_are_not_customer_actions(self, event):
        # each of these applies to past_due, but only the orchestrator may send it
        with pytest.raises(InvalidTransitionError):
            require_transition(S.PAST_DUE, event)

    def test_customer_events(self):
        assert CUSTOMER_EVENTS == {E.PAUSE, E.RESUME, E.CANCEL, E.PAYMENT_METHOD_UPDATED}
