from __future__ import annotations

from enum import Enum

from caseflow.core.errors import InvalidTransitionError


class ConversationState(str, Enum):
    COLLECTING_INFO = "collecting_info"
    EVALUATING = "evaluating"
    APPROVED = "approved"
    DENIED = "denied"
    ESCALATED = "escalated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: frozenset[ConversationState] = frozenset(
    {ConversationState.APPROVED, ConversationState.DENIED, ConversationState.ESCALATED}
)

# Every state must appear as a key; terminal states map to an empty set.
TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    ConversationState.COLLECTING_INFO: frozenset(
        {ConversationState.EVALUATING, ConversationState.ESCALATED}
    ),
    ConversationState.EVALUATING: frozenset(
        {ConversationState.APPROVED, ConversationState.DENIED, ConversationState.ESCALATED}
    ),
    ConversationState.APPROVED: frozenset(),
    ConversationState.DENIED: frozenset(),
    ConversationState.ESCALATED: frozenset(),
}

if set(TRANSITIONS) != set(ConversationState):
    raise RuntimeError("conversation transition table is not exhaustive")


def ensure_transition(current: ConversationState, target: ConversationState) -> None:
    # Reject anything not in the table, including every move out of a terminal state.
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(f"transition {current.value} -> {target.value} is not allowed")
