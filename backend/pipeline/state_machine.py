"""Pipeline state transitions."""

from __future__ import annotations

from errors import InvalidTransitionError

from .models import ROLLBACK_SOURCES, STAGE_ORDER, TERMINAL_STATES, PipelineState

_ABORT_STATES = (PipelineState.FAILED, PipelineState.CANCELLED)


def _build_transitions() -> dict[PipelineState, frozenset[PipelineState]]:
    transitions: dict[PipelineState, set[PipelineState]] = {s: set() for s in PipelineState}
    for current, following in zip(STAGE_ORDER, STAGE_ORDER[1:]):
        transitions[current].add(following)
    for state in PipelineState:
        if state not in TERMINAL_STATES:
            transitions[state].update(_ABORT_STATES)
    for state in ROLLBACK_SOURCES:
        transitions[state].add(PipelineState.ROLLED_BACK)
    return {state: frozenset(targets) for state, targets in transitions.items()}


ALLOWED_TRANSITIONS = _build_transitions()


def can_transition(current: PipelineState, target: PipelineState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(
    current: PipelineState,
    target: PipelineState,
    pipeline_id: str | None = None,
    has_snapshot: bool = False,
) -> None:
    """Validate a state change.

    Rollback additionally requires a snapshot to roll back to.

    Raises:
        InvalidTransitionError: If the change is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move pipeline from {current.value} to {target.value}",
            pipeline_id=pipeline_id,
        )
    if target == PipelineState.ROLLED_BACK and not has_snapshot:
        raise InvalidTransitionError(
            f"Pipeline has no snapshot to roll back to (state {current.value})",
            pipeline_id=pipeline_id,
        )
