"""Lifecycle transition tables shared by orders and return requests.

Each table maps a current state to the set of states an operator may move it
to. Requesting the current state again is always accepted as a no-op.
"""

from __future__ import annotations

import enum
from typing import FrozenSet, Mapping, TypeVar

from app.core.errors import InvalidTransitionError
from app.models.order import OrderStatus, PaymentStatus
from app.models.returns import ReturnStatus

S = TypeVar("S", bound=enum.Enum)

TransitionTable = Mapping[S, FrozenSet[S]]


ORDER_STATUS_TRANSITIONS: TransitionTable[OrderStatus] = {
    OrderStatus.processing: frozenset({OrderStatus.shipped, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered, OrderStatus.cancelled}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

PAYMENT_STATUS_TRANSITIONS: TransitionTable[PaymentStatus] = {
    PaymentStatus.pending: frozenset({PaymentStatus.paid, PaymentStatus.failed}),
    PaymentStatus.failed: frozenset({PaymentStatus.pending, PaymentStatus.paid}),
    PaymentStatus.paid: frozenset(),
}

RETURN_STATUS_TRANSITIONS: TransitionTable[ReturnStatus] = {
    ReturnStatus.pending: frozenset({ReturnStatus.approved, ReturnStatus.declined}),
    ReturnStatus.approved: frozenset({ReturnStatus.received}),
    ReturnStatus.received: frozenset({ReturnStatus.refunded}),
    ReturnStatus.declined: frozenset(),
    ReturnStatus.refunded: frozenset(),
}


def is_allowed(table: TransitionTable[S], current: S, requested: S) -> bool:
    if current == requested:
        return True
    return requested in table.get(current, frozenset())


def ensure_transition(table: TransitionTable[S], current: S, requested: S, *, entity: str) -> bool:
    """Validate ``current -> requested``.

    Returns ``True`` when the state actually changes and ``False`` for a
    same-state request. Raises ``InvalidTransitionError`` otherwise.
    """
    if current == requested:
        return False
    if requested not in table.get(current, frozenset()):
        raise InvalidTransitionError(entity, current.value, requested.value)
    return True


def reachable_from(table: TransitionTable[S], start: S) -> set[S]:
    seen: set[S] = {start}
    frontier = [start]
    while frontier:
        state = frontier.pop()
        for nxt in table.get(state, frozenset()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return seen
