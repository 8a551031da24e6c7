from hypothesis import given, strategies as st

from vrfdice.application.services.bet_lifecycle import BetLifecycleMachine
from vrfdice.domain.errors import InvalidTransition
from vrfdice.domain.models import GamePhase


def make_machine() -> BetLifecycleMachine:
    # rules only: no collaborators are touched by can/check_transition
    return BetLifecycleMachine(store=None, approvals=None, executor=None, registry=None, spender="0x0")


@given(
    current=st.sampled_from(list(GamePhase)),
    target=st.sampled_from(list(GamePhase)),
)
def test_lifecycle_transitions(current, target):
    fsm = make_machine()
    if fsm.can_transition(current, target):
        fsm.check_transition(current, target)
    else:
        try:
            fsm.check_transition(current, target)
        except InvalidTransition:
            assert True
        else:
            assert False, f"Transition {current}->{target} should be invalid"


@given(current=st.sampled_from(list(GamePhase)), target=st.sampled_from(list(GamePhase)))
def test_terminal_phases_only_reset(current, target):
    fsm = make_machine()
    if current.is_terminal and fsm.can_transition(current, target):
        assert target is GamePhase.IDLE


@given(current=st.sampled_from(list(GamePhase)), target=st.sampled_from(list(GamePhase)))
def test_forward_moves_outside_retry_and_reset(current, target):
    fsm = make_machine()
    reverts = {
        (GamePhase.APPROVING, GamePhase.IDLE),
        (GamePhase.PLACING_BET, GamePhase.IDLE),
        (GamePhase.RESOLVING, GamePhase.READY_TO_RESOLVE),
    }
    if fsm.can_transition(current, target) and not current.is_terminal and (current, target) not in reverts:
        assert target.rank > current.rank
