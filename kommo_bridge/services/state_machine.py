"""Turn-taking states of one conversation.

A conversation either waits for the user or is producing exactly one reply; every
accepted message moves it to ``processing`` and every finished turn moves it back.
"""

from enum import Enum


class TurnState(str, Enum):
    AWAITING_USER = "awaiting_user"
    PROCESSING = "processing"

    @property
    def accepts_messages(self) -> bool:
        return self is TurnState.AWAITING_USER


_ALLOWED = frozenset(
    {
        (TurnState.AWAITING_USER, TurnState.PROCESSING),
        (TurnState.PROCESSING, TurnState.AWAITING_USER),
    }
)


class InvalidTransitionError(ValueError):
    def __init__(self, from_state: TurnState, to_state: TurnState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Turn cannot move from {from_state.value} to {to_state.value}")


def can_transition(from_state: TurnState, to_state: TurnState) -> bool:
    return (from_state, to_state) in _ALLOWED


def transition(from_state: TurnState, to_state: TurnState) -> TurnState:
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def begin_processing(current_state: TurnState) -> TurnState:
    """An inbound message was accepted; the assistant is about to be asked."""
    return transition(current_state, TurnState.PROCESSING)


def finish_turn(current_state: TurnState) -> TurnState:
    return transition(current_state, TurnState.AWAITING_USER)
