from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from runengine.core.errors import InvalidTransitionError
from runengine.utils.ids import now_ms


class RunState(StrEnum):
    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    TESTING = "testing"
    FIXING = "fixing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class RunMode(StrEnum):
    CHAT = "CHAT"
    BUILD = "BUILD"
    TEST = "TEST"
    TEST_FIX = "TEST_FIX"


class StepId(StrEnum):
    PLAN = "plan"
    EXECUTE = "execute"
    TESTS = "tests"
    FIX = "fix"


class StepStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


_ACTIVE: frozenset[RunState] = frozenset(
    {RunState.PLANNING, RunState.EXECUTING, RunState.TESTING, RunState.FIXING}
)
_TERMINAL: frozenset[RunState] = frozenset({RunState.DONE, RunState.ERROR, RunState.CANCELLED})

_ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: _ACTIVE,
    RunState.PLANNING: frozenset({RunState.EXECUTING, RunState.ERROR, RunState.CANCELLED}),
    RunState.EXECUTING: frozenset({RunState.TESTING, RunState.ERROR, RunState.CANCELLED}),
    RunState.TESTING: frozenset({RunState.FIXING, RunState.DONE, RunState.ERROR, RunState.CANCELLED}),
    # fixing loops back to testing until nothing is failing
    RunState.FIXING: frozenset({RunState.TESTING, RunState.DONE, RunState.ERROR, RunState.CANCELLED}),
    RunState.DONE: frozenset({RunState.IDLE}),
    RunState.ERROR: frozenset({RunState.IDLE}),
    RunState.CANCELLED: frozenset({RunState.IDLE}),
}

_STATE_STEP: dict[RunState, StepId] = {
    RunState.PLANNING: StepId.PLAN,
    RunState.EXECUTING: StepId.EXECUTE,
    RunState.TESTING: StepId.TESTS,
    RunState.FIXING: StepId.FIX,
}

_MODE_STEPS: dict[RunMode, tuple[StepId, ...]] = {
    RunMode.CHAT: (),
    RunMode.BUILD: (StepId.PLAN, StepId.EXECUTE, StepId.TESTS, StepId.FIX),
    RunMode.TEST: (StepId.TESTS, StepId.FIX),
    RunMode.TEST_FIX: (StepId.FIX, StepId.TESTS),
}

_STEP_LABELS: dict[StepId, str] = {
    StepId.PLAN: "Plan",
    StepId.EXECUTE: "Execute",
    StepId.TESTS: "Tests",
    StepId.FIX: "Auto-Fix",
}


class Run(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    mode: RunMode
    state: RunState = RunState.IDLE
    started_at: int = Field(default_factory=now_ms)
    finished_at: int | None = None
    failed_step: StepId | None = None
    interrupted_step: StepId | None = None


class RunStep(BaseModel):
    id: StepId
    label: str
    status: StepStatus


def is_active(state: RunState) -> bool:
    return state in _ACTIVE


def is_terminal(state: RunState) -> bool:
    return state in _TERMINAL


def can_transition(from_state: RunState, to_state: RunState) -> bool:
    return to_state in _ALLOWED_TRANSITIONS.get(from_state, frozenset())


def step_for_state(state: RunState) -> StepId | None:
    return _STATE_STEP.get(state)


def mode_steps(mode: RunMode) -> tuple[StepId, ...]:
    return _MODE_STEPS[mode]


def create_initial_run(run_id: str, mode: RunMode) -> Run:
    return Run(run_id=run_id, mode=mode, state=RunState.IDLE)


def update_run_state(run: Run, new_state: RunState, *, failed_step: StepId | None = None) -> Run:
    """
    Return a new Run in `new_state`. Off-table transitions raise
    InvalidTransitionError instead of being coerced.
    """
    new_state = RunState(new_state)
    if not can_transition(run.state, new_state):
        raise InvalidTransitionError(run.state.value, new_state.value)

    changes: dict = {"state": new_state}
    left_step = step_for_state(run.state)

    if new_state == RunState.ERROR:
        changes["failed_step"] = failed_step or left_step
    elif new_state == RunState.CANCELLED:
        changes["interrupted_step"] = failed_step or left_step
    elif new_state == RunState.IDLE:
        changes.update(finished_at=None, failed_step=None, interrupted_step=None)

    if is_terminal(new_state) and run.finished_at is None:
        changes["finished_at"] = now_ms()

    return run.model_copy(update=changes)


def get_run_steps(run: Run) -> list[RunStep]:
    order = mode_steps(run.mode)
    state = run.state

    def build(status_for) -> list[RunStep]:
        return [RunStep(id=s, label=_STEP_LABELS[s], status=status_for(i, s)) for i, s in enumerate(order)]

    if state == RunState.IDLE:
        return build(lambda i, s: StepStatus.PENDING)

    if state == RunState.DONE:
        return build(lambda i, s: StepStatus.COMPLETED)

    if state in _ACTIVE:
        current = step_for_state(state)
        pos = order.index(current) if current in order else -1

        def active_status(i: int, s: StepId) -> StepStatus:
            if i < pos:
                return StepStatus.COMPLETED
            if i == pos:
                return StepStatus.ACTIVE
            return StepStatus.PENDING

        return build(active_status)

    marker = run.failed_step if state == RunState.ERROR else run.interrupted_step
    pos = order.index(marker) if marker in order else 0

    def stopped_status(i: int, s: StepId) -> StepStatus:
        if i < pos:
            return StepStatus.COMPLETED
        if i == pos and state == RunState.ERROR:
            return StepStatus.FAILED
        return StepStatus.PENDING

    return build(stopped_status)
