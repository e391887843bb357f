"""Trust workflow state machine — static adjacency table."""

from src.tl_common.enums import WorkflowState as WS
from src.tl_common.errors import InvalidWorkflowTransitionError

WORKFLOW_TRANSITIONS: dict[WS, tuple[WS, ...]] = {
    WS.VALUED: (WS.LISTED,),
    WS.LISTED: (WS.DEPOSIT_RECEIVED, WS.TRUST_OPEN),
    WS.DEPOSIT_RECEIVED: (WS.TRUST_OPEN, WS.TAX_PENDING),
    WS.TRUST_OPEN: (WS.TAX_PENDING, WS.SETTLED),
    WS.TAX_PENDING: (WS.SETTLED,),
    WS.SETTLED: (WS.TRANSFER_COMPLETE, WS.TRUST_CLOSED),
    WS.TRANSFER_COMPLETE: (WS.TRUST_CLOSED,),
    WS.TRUST_CLOSED: (),
}


def allowed_transitions(from_state: str) -> tuple[WS, ...]:
    try:
        return WORKFLOW_TRANSITIONS[WS(from_state)]
    except ValueError:
        return ()


def can_transition(from_state: str, to_state: str) -> bool:
    return any(s.value == to_state for s in allowed_transitions(from_state))


def validate_transition(from_state: str, to_state: str) -> WS:
    """Return the target state, or raise InvalidWorkflowTransitionError."""
    if not can_transition(from_state, to_state):
        raise InvalidWorkflowTransitionError(from_state, to_state)
    return WS(to_state)
