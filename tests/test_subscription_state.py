"""
Tests for the subscription status transition table
"""

from itertools import product

import pytest

from app.core.exceptions import StateTransitionError
from app.models.subscription import SubscriptionStatus as S
from app.services.subscription_state import (SUBSCRIPTION_TRANSITIONS,
                                             allowed_transitions,
                                             assert_transition,
                                             build_transition_table,
                                             can_transition)

LEGAL_EDGES = {
    (S.PENDING, S.ACTIVE),
    (S.PENDING, S.EXPIRED),
    (S.PENDING, S.CANCELLED),
    (S.ACTIVE, S.CANCELLED),
    (S.ACTIVE, S.PAST_DUE),
    (S.ACTIVE, S.EXPIRED),
    (S.PAST_DUE, S.ACTIVE),
    (S.PAST_DUE, S.EXPIRED),
    (S.CANCELLED, S.ACTIVE),
    (S.CANCELLED, S.EXPIRED),
    (S.EXPIRED, S.ACTIVE),
}


class TestCanTransition:
    """Every ordered pair of statuses against the edge list"""

    @pytest.mark.parametrize("from_status,to_status", list(product(S, S)))
    def test_all_pairs(self, from_status, to_status):
        expected = from_status == to_status or (from_status, to_status) in LEGAL_EDGES
        assert can_transition(from_status, to_status) is expected

    def test_covers_twenty_five_pairs(self):
        assert len(list(product(S, S))) == 25

    def test_accepts_plain_strings(self):
        assert can_transition("pending", "active") is True
        assert can_transition("pending", "past_due") is False

    def test_unknown_status_raises(self):
        with pytest.raises(ValueError):
            can_transition("pending", "refunded")


class TestAssertTransition:

    def test_illegal_transition_message(self):
        with pytest.raises(StateTransitionError) as exc_info:
            assert_transition("pending", "past_due")

        assert str(exc_info.value) == "INVALID_STATE_TRANSITION: pending -> past_due"
        assert exc_info.value.from_status == "pending"
        assert exc_info.value.to_status == "past_due"
        assert exc_info.value.status_code == 409

    def test_noop_is_legal(self):
        assert_transition("active", "active")

    def test_legal_edge_passes(self):
        assert_transition(S.ACTIVE, S.CANCELLED)


class TestAllowedTransitions:

    def test_pending_exact_set(self):
        assert allowed_transitions("pending") == {S.PENDING, S.ACTIVE, S.EXPIRED, S.CANCELLED}

    @pytest.mark.parametrize("from_status", list(S))
    def test_matches_can_transition(self, from_status):
        expected = {to for to in S if can_transition(from_status, to)}
        assert allowed_transitions(from_status) == expected

    def test_always_includes_self(self):
        for status in S:
            assert status in allowed_transitions(status)


class TestConfigurableTable:

    def test_default_allows_expired_reactivation(self):
        assert S.ACTIVE in SUBSCRIPTION_TRANSITIONS[S.EXPIRED]

    def test_expired_reactivation_disabled(self):
        table = build_transition_table(allow_expired_reactivation=False)

        assert can_transition(S.EXPIRED, S.ACTIVE, table) is False
        assert can_transition(S.EXPIRED, S.EXPIRED, table) is True
        assert allowed_transitions(S.EXPIRED, table) == {S.EXPIRED}
        with pytest.raises(StateTransitionError):
            assert_transition(S.EXPIRED, S.ACTIVE, table)

    def test_other_edges_unchanged_when_disabled(self):
        table = build_transition_table(allow_expired_reactivation=False)
        for from_status, to_status in LEGAL_EDGES - {(S.EXPIRED, S.ACTIVE)}:
            assert can_transition(from_status, to_status, table)
