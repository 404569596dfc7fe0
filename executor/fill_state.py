"""
Position and leg state machines.

Defines the position lifecycle and per-leg order states, and the valid
transitions between them. Used by executor/coordinator.py to drive
execution, rollback, and resolution.
"""

from __future__ import annotations

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class PositionStatus(str, Enum):
    """
    Position lifecycle.

    State flow:
    - PENDING: Capital reserved, legs being submitted
    - PARTIALLY_FILLED: At least one leg confirmed, others outstanding
    - FILLED: All legs confirmed
    - RESOLVING: Waiting for settlement or an exit trigger
    - CLOSED: Realized P&L committed (terminal)
    - FAILED: Rolled back with compensating orders (terminal)
    """
    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    RESOLVING = "RESOLVING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


class LegState(str, Enum):
    """
    Order state for a single leg.

    - NEW: Not yet acknowledged by the venue
    - OPEN: Resting, nothing filled
    - PARTIAL: Some quantity filled, rest working
    - FILLED: Fully filled
    - CANCELLED: Cancelled with nothing filled
    - REJECTED: Refused by the venue (or retries exhausted)
    - UNWOUND: Filled quantity flattened by a compensating order
    - STUCK: Compensation failed (manual intervention needed)
    """
    NEW = "NEW"
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    UNWOUND = "UNWOUND"
    STUCK = "STUCK"


# Valid state transitions: {from_state: set[valid_to_states]}
_POSITION_TRANSITIONS: dict[PositionStatus, set[PositionStatus]] = {
    PositionStatus.PENDING: {PositionStatus.PARTIALLY_FILLED, PositionStatus.FILLED, PositionStatus.FAILED},
    PositionStatus.PARTIALLY_FILLED: {PositionStatus.FILLED, PositionStatus.FAILED},
    PositionStatus.FILLED: {PositionStatus.RESOLVING, PositionStatus.FAILED},
    PositionStatus.RESOLVING: {PositionStatus.CLOSED, PositionStatus.FAILED},
    PositionStatus.CLOSED: set(),  # Terminal state
    PositionStatus.FAILED: set(),  # Terminal state
}

_LEG_TRANSITIONS: dict[LegState, set[LegState]] = {
    LegState.NEW: {LegState.OPEN, LegState.PARTIAL, LegState.FILLED, LegState.REJECTED, LegState.CANCELLED, LegState.STUCK},
    LegState.OPEN: {LegState.PARTIAL, LegState.FILLED, LegState.CANCELLED, LegState.REJECTED, LegState.STUCK},
    LegState.PARTIAL: {LegState.PARTIAL, LegState.FILLED, LegState.UNWOUND, LegState.STUCK},
    LegState.FILLED: {LegState.UNWOUND, LegState.STUCK},  # After fill, only a rollback moves it
    LegState.CANCELLED: set(),
    LegState.REJECTED: set(),
    LegState.UNWOUND: set(),
    LegState.STUCK: set(),
}


def can_transition_to(from_state: PositionStatus, to_state: PositionStatus) -> bool:
    """
    Check if a position transition is valid.

    Raises:
        ValueError: If either state is not a PositionStatus
    """
    if not isinstance(from_state, PositionStatus):
        raise ValueError(f"Invalid from_state: {from_state}")
    if not isinstance(to_state, PositionStatus):
        raise ValueError(f"Invalid to_state: {to_state}")
    return to_state in _POSITION_TRANSITIONS.get(from_state, set())


def transition_to(from_state: PositionStatus, to_state: PositionStatus) -> PositionStatus:
    """
    Perform a position transition, returning the new state.

    Raises:
        ValueError: If transition is invalid
    """
    if not can_transition_to(from_state, to_state):
        raise ValueError(f"Invalid state transition: {from_state.value} -> {to_state.value}")
    logger.debug("State transition: %s -> %s", from_state.value, to_state.value)
    return to_state


def leg_transition(from_state: LegState, to_state: LegState) -> LegState:
    """Leg transition; re-reporting the current state is a no-op."""
    if from_state is to_state:
        return to_state
    if to_state not in _LEG_TRANSITIONS.get(from_state, set()):
        raise ValueError(f"Invalid leg transition: {from_state.value} -> {to_state.value}")
    return to_state


def is_terminal_state(state: PositionStatus) -> bool:
    return state in {PositionStatus.CLOSED, PositionStatus.FAILED}


def is_live_state(state: PositionStatus) -> bool:
    """States that still hold reserved capital."""
    return not is_terminal_state(state)


def get_execution_states() -> set[PositionStatus]:
    """States in which orders may still be working at the venue."""
    return {PositionStatus.PENDING, PositionStatus.PARTIALLY_FILLED}
