import pytest

from intake.phases import TRANSITIONS, InvalidTransition, Phase, can_transition, transition


class TestTransitions:
    """The closed phase graph."""

    def test_every_phase_has_an_entry(self):
        assert set(TRANSITIONS) == set(Phase)

    def test_forward_moves(self):
        assert transition(Phase.INITIAL, Phase.IDENTIFICATION) == Phase.IDENTIFICATION
        assert transition(Phase.COLLECTING_ID_NUMBER, Phase.COLLECTING_COUNTERPART_DATA) == (
            Phase.COLLECTING_COUNTERPART_DATA
        )
        assert transition(Phase.CONFIRMING_DATA, Phase.OFFERING_SOLUTION) == Phase.OFFERING_SOLUTION
        assert transition(Phase.OFFERING_SOLUTION, Phase.CLOSING) == Phase.CLOSING

    def test_staying_put_is_allowed(self):
        assert can_transition(Phase.CLOSING, Phase.CLOSING)

    def test_side_branches_from_anywhere(self):
        for phase in Phase:
            assert can_transition(phase, Phase.AWAITING_DOCUMENT_CONFIRMATION)
            assert can_transition(phase, Phase.DOCUMENTS_RECEIVED)

    def test_backwards_move_raises(self):
        with pytest.raises(InvalidTransition):
            transition(Phase.CLOSING, Phase.INITIAL)

    def test_invalid_transition_is_an_assertion(self):
        with pytest.raises(AssertionError):
            transition(Phase.OFFERING_SOLUTION, Phase.COLLECTING_NAME)
