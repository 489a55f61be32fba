"""
Subscription status state machine.

Pure decision functions over the legal transition graph. Every status is
allowed to transition to itself so duplicate deliveries of the same status
change are harmless no-ops.
"""

from typing import Mapping, Optional, Union

from app.core.exceptions import StateTransitionError
from app.models.subscription import SubscriptionStatus

StatusLike = Union[SubscriptionStatus, str]
TransitionTable = Mapping[SubscriptionStatus, frozenset]


def build_transition_table(allow_expired_reactivation: bool = True) -> TransitionTable:
    """
    Build the one-hop transition table (self-loops excluded).

    Args:
        allow_expired_reactivation: Whether a resubscription may move an
            expired row straight back to active instead of starting a new
            pending checkout.
    """
    S = SubscriptionStatus
    table = {
        S.PENDING: frozenset({S.ACTIVE, S.EXPIRED, S.CANCELLED}),
        S.ACTIVE: frozenset({S.CANCELLED, S.PAST_DUE, S.EXPIRED}),
        S.PAST_DUE: frozenset({S.ACTIVE, S.EXPIRED}),
        S.CANCELLED: frozenset({S.ACTIVE, S.EXPIRED}),
        S.EXPIRED: frozenset({S.ACTIVE}) if allow_expired_reactivation else frozenset(),
    }
    return table


SUBSCRIPTION_TRANSITIONS: TransitionTable = build_transition_table()


def _coerce(status: StatusLike) -> SubscriptionStatus:
    if isinstance(status, SubscriptionStatus):
        return status
    return SubscriptionStatus(status)


def _table(table: Optional[TransitionTable]) -> TransitionTable:
    return SUBSCRIPTION_TRANSITIONS if table is None else table


def can_transition(
    from_status: StatusLike,
    to_status: StatusLike,
    table: Optional[TransitionTable] = None,
) -> bool:
    """True iff the statuses are equal or the edge exists in the table"""
    source = _coerce(from_status)
    target = _coerce(to_status)
    if source == target:
        return True
    return target in _table(table)[source]


def assert_transition(
    from_status: StatusLike,
    to_status: StatusLike,
    table: Optional[TransitionTable] = None,
) -> None:
    """Raise StateTransitionError when the transition is illegal"""
    if not can_transition(from_status, to_status, table):
        raise StateTransitionError(_coerce(from_status).value, _coerce(to_status).value)


def allowed_transitions(
    from_status: StatusLike,
    table: Optional[TransitionTable] = None,
) -> frozenset:
    """Every status reachable in one hop, including the no-op"""
    source = _coerce(from_status)
    return frozenset({source}) | _table(table)[source]
