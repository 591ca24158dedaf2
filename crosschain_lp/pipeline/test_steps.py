from __future__ import annotations

import pytest

from crosschain_lp.core.errors import InvalidTransitionError
from crosschain_lp.pipeline.steps import (
    PENDING_STEPS,
    STEP_ORDER,
    Outcome,
    Step,
    is_terminal,
    stage_of,
    transition,
)


def test_happy_path_walks_every_step_in_order():
    step = Step.IDLE
    visited = [step]
    while step != Step.COLLECT_DONE:
        step = transition(step, Outcome.START)
        visited.append(step)
        step = transition(step, Outcome.SUCCESS)
        visited.append(step)

    assert tuple(visited) == STEP_ORDER


def test_transition_is_total():
    for step in Step:
        for outcome in Outcome:
            try:
                nxt = transition(step, outcome, failed_step=Step.BRIDGE_PENDING)
            except InvalidTransitionError:
                continue
            assert isinstance(nxt, Step)


@pytest.mark.parametrize("step", [Step.IDLE, Step.FUND_DONE, Step.SWAP_PENDING])
def test_failure_moves_to_error(step):
    assert transition(step, Outcome.FAILURE) == Step.ERROR


def test_terminal_states_reject_further_progress():
    for outcome in (Outcome.START, Outcome.SUCCESS, Outcome.FAILURE):
        with pytest.raises(InvalidTransitionError):
            transition(Step.COLLECT_DONE, outcome)
    with pytest.raises(InvalidTransitionError):
        transition(Step.ERROR, Outcome.START)


def test_pending_cannot_start_and_done_cannot_succeed():
    with pytest.raises(InvalidTransitionError):
        transition(Step.BRIDGE_PENDING, Outcome.START)
    with pytest.raises(InvalidTransitionError):
        transition(Step.BRIDGE_DONE, Outcome.SUCCESS)


def test_retry_only_from_error_back_to_a_pending_step():
    assert (
        transition(Step.ERROR, Outcome.RETRY, failed_step=Step.BRIDGE_PENDING)
        == Step.BRIDGE_PENDING
    )
    with pytest.raises(InvalidTransitionError):
        transition(Step.ERROR, Outcome.RETRY)
    with pytest.raises(InvalidTransitionError):
        transition(Step.ERROR, Outcome.RETRY, failed_step=Step.BRIDGE_DONE)
    with pytest.raises(InvalidTransitionError):
        transition(Step.SWAP_PENDING, Outcome.RETRY, failed_step=Step.SWAP_PENDING)


def test_helpers():
    assert is_terminal(Step.ERROR) and is_terminal(Step.COLLECT_DONE)
    assert not is_terminal(Step.SWAP_DONE)
    assert stage_of(Step.POSITION_PENDING) == "position"
    assert stage_of(Step.FUND_DONE) == "fund"
    assert {stage_of(s) for s in PENDING_STEPS} == {
        "fund",
        "bridge",
        "swap",
        "position",
        "collect",
    }
