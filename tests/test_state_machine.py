import pytest

from kommo_bridge.services.state_machine import (
    InvalidTransitionError,
    TurnState,
    begin_processing,
    can_transition,
    finish_turn,
    transition,
)


class TestValidTransitions:
    def test_awaiting_user_to_processing(self):
        assert transition(TurnState.AWAITING_USER, TurnState.PROCESSING) == TurnState.PROCESSING

    def test_processing_to_awaiting_user(self):
        assert transition(TurnState.PROCESSING, TurnState.AWAITING_USER) == TurnState.AWAITING_USER


class TestInvalidTransitions:
    def test_processing_twice(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(TurnState.PROCESSING, TurnState.PROCESSING)
        assert str(exc_info.value) == "Turn cannot move from processing to processing"

    def test_awaiting_user_twice(self):
        assert can_transition(TurnState.AWAITING_USER, TurnState.AWAITING_USER) is False


class TestHelperFunctions:
    def test_begin_processing(self):
        assert begin_processing(TurnState.AWAITING_USER) == TurnState.PROCESSING

    def test_begin_processing_while_processing_fails(self):
        with pytest.raises(InvalidTransitionError):
            begin_processing(TurnState.PROCESSING)

    def test_finish_turn(self):
        assert finish_turn(TurnState.PROCESSING) == TurnState.AWAITING_USER

    def test_state_values_serialize_as_strings(self):
        assert TurnState("awaiting_user") is TurnState.AWAITING_USER
        assert TurnState.PROCESSING.value == "processing"

    def test_only_awaiting_user_accepts_messages(self):
        assert TurnState.AWAITING_USER.accepts_messages is True
        assert TurnState.PROCESSING.accepts_messages is False
