from __future__ import annotations

from enum import StrEnum

from crosschain_lp.core.errors import InvalidTransitionError


class Step(StrEnum):
    IDLE = "idle"
    FUND_PENDING = "fund_pending"
    FUND_DONE = "fund_done"
    BRIDGE_PENDING = "bridge_pending"
    BRIDGE_DONE = "bridge_done"
    SWAP_PENDING = "swap_pending"
    SWAP_DONE = "swap_done"
    POSITION_PENDING = "position_pending"
    POSITION_DONE = "position_done"
    COLLECT_PENDING = "collect_pending"
    COLLECT_DONE = "collect_done"
    ERROR = "error"


class Outcome(StrEnum):
    START = "start"
    SUCCESS = "success"
    FAILURE = "failure"
    RETRY = "retry"


# Resting state -> the pending state that starts the next stage.
_STARTS: dict[Step, Step] = {
    Step.IDLE: Step.FUND_PENDING,
    Step.FUND_DONE: Step.BRIDGE_PENDING,
    Step.BRIDGE_DONE: Step.SWAP_PENDING,
    Step.SWAP_DONE: Step.POSITION_PENDING,
    Step.POSITION_DONE: Step.COLLECT_PENDING,
}

_COMPLETES: dict[Step, Step] = {
    Step.FUND_PENDING: Step.FUND_DONE,
    Step.BRIDGE_PENDING: Step.BRIDGE_DONE,
    Step.SWAP_PENDING: Step.SWAP_DONE,
    Step.POSITION_PENDING: Step.POSITION_DONE,
    Step.COLLECT_PENDING: Step.COLLECT_DONE,
}

PENDING_STEPS: frozenset[Step] = frozenset(_COMPLETES)
TERMINAL_STEPS: frozenset[Step] = frozenset({Step.COLLECT_DONE, Step.ERROR})

STEP_ORDER: tuple[Step, ...] = tuple(Step)[:-1]


def transition(
    step: Step, outcome: Outcome, *, failed_step: Step | None = None
) -> Step:
    """Total transition function of the wallet pipeline.

    Every ``(step, outcome)`` pair either maps to the next state or raises
    ``InvalidTransitionError``; no caller compares step strings directly.
    """
    step = Step(step)
    outcome = Outcome(outcome)

    if outcome == Outcome.START:
        nxt = _STARTS.get(step)
    elif outcome == Outcome.SUCCESS:
        nxt = _COMPLETES.get(step)
    elif outcome == Outcome.FAILURE:
        nxt = Step.ERROR if step not in TERMINAL_STEPS else None
    else:
        nxt = None
        if step == Step.ERROR and failed_step in PENDING_STEPS:
            nxt = failed_step

    if nxt is None:
        raise InvalidTransitionError(f"Cannot apply {outcome} to step {step}")
    return nxt


def is_terminal(step: Step) -> bool:
    return Step(step) in TERMINAL_STEPS


def stage_of(step: Step) -> str:
    """Stage name for a step (``fund``, ``bridge``...), used for result slots."""
    step = Step(step)
    if step in (Step.IDLE, Step.ERROR):
        return step.value
    return step.value.rsplit("_", 1)[0]
