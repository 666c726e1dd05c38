"""
Claim State Machine
Transition table and history bookkeeping for claim processing
"""

from typing import Dict, FrozenSet

from ...shared.exceptions import InvalidTransitionException
from ...shared.schemas import ClaimState, ClaimStatus, StateTransition
from ...shared.utils import DateTimeUtils

TERMINAL_STATUSES: FrozenSet[ClaimStatus] = frozenset({
    ClaimStatus.COMPLETED,
    ClaimStatus.FAILED,
})

STABLE_STATUSES: FrozenSet[ClaimStatus] = TERMINAL_STATUSES | {ClaimStatus.PENDING_REVIEW}

# Any non-terminal status may also move to FAILED on infrastructure failure.
TRANSITIONS: Dict[ClaimStatus, FrozenSet[ClaimStatus]] = {
    ClaimStatus.RECEIVED: frozenset({ClaimStatus.PARSING}),
    ClaimStatus.PARSING: frozenset({ClaimStatus.EXTRACTING}),
    ClaimStatus.EXTRACTING: frozenset({ClaimStatus.VALIDATING, ClaimStatus.CORRECTING}),
    ClaimStatus.CORRECTING: frozenset({ClaimStatus.EXTRACTING, ClaimStatus.PENDING_REVIEW}),
    ClaimStatus.VALIDATING: frozenset({
        ClaimStatus.ADJUDICATING,
        ClaimStatus.CORRECTING,
        ClaimStatus.PENDING_REVIEW,
    }),
    ClaimStatus.PENDING_REVIEW: frozenset({ClaimStatus.ADJUDICATING, ClaimStatus.VALIDATING}),
    ClaimStatus.ADJUDICATING: frozenset({ClaimStatus.COMPLETED}),
    ClaimStatus.COMPLETED: frozenset(),
    ClaimStatus.FAILED: frozenset(),
}


def is_valid_transition(from_status: ClaimStatus, to_status: ClaimStatus) -> bool:
    if from_status in TERMINAL_STATUSES:
        return False
    if to_status == ClaimStatus.FAILED:
        return True
    return to_status in TRANSITIONS[from_status]


def record_transition(state: ClaimState, to_status: ClaimStatus, reason: str) -> ClaimState:
    """Move state to to_status and append the matching history entry"""
    from_status = ClaimStatus(state.status)
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransitionException(from_status.value, to_status.value)

    now = DateTimeUtils.utcnow()
    state.history.append(StateTransition(
        timestamp=now,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
    ))
    state.status = to_status
    state.updated_at = now
    return state


def initial_history_entry(reason: str = "Claim received") -> StateTransition:
    return StateTransition(
        timestamp=DateTimeUtils.utcnow(),
        from_status=None,
        to_status=ClaimStatus.RECEIVED,
        reason=reason,
    )
