"""perpdesk.pipeline.state

Pipeline state machine.

IDLE -> FETCHING -> DECIDING -> SELECTING_CANDIDATES -> INVOKING_PICKER
     -> VALIDATING -> SUCCESS | SUCCESS_NO_PICKS

Any non-terminal state may fail into ERROR. Terminal states only leave via
RESET. ``transition`` is pure: it never performs the stage, it only says
whether the move is legal.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

from perpdesk.core.exceptions import InvalidTransitionError


class PipelineState(StrEnum):
    IDLE = "idle"
    FETCHING = "fetching"
    DECIDING = "deciding"
    SELECTING_CANDIDATES = "selecting_candidates"
    INVOKING_PICKER = "invoking_picker"
    VALIDATING = "validating"
    SUCCESS = "success"
    SUCCESS_NO_PICKS = "success_no_picks"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


class PipelineEvent(StrEnum):
    START = "start"
    SNAPSHOT_READY = "snapshot_ready"
    DECIDED = "decided"
    CANDIDATES_READY = "candidates_ready"
    PICKER_SKIPPED = "picker_skipped"
    PICKS_RECEIVED = "picks_received"
    VALIDATED = "validated"
    VALIDATED_EMPTY = "validated_empty"
    FAIL = "fail"
    RESET = "reset"


TERMINAL_STATES: Final[frozenset[PipelineState]] = frozenset(
    {PipelineState.SUCCESS, PipelineState.SUCCESS_NO_PICKS, PipelineState.ERROR}
)


ALLOWED_TRANSITIONS: Final[dict[PipelineState, dict[PipelineEvent, PipelineState]]] = {
    PipelineState.IDLE: {PipelineEvent.START: PipelineState.FETCHING},
    PipelineState.FETCHING: {PipelineEvent.SNAPSHOT_READY: PipelineState.DECIDING},
    PipelineState.DECIDING: {PipelineEvent.DECIDED: PipelineState.SELECTING_CANDIDATES},
    PipelineState.SELECTING_CANDIDATES: {
        PipelineEvent.CANDIDATES_READY: PipelineState.INVOKING_PICKER,
        PipelineEvent.PICKER_SKIPPED: PipelineState.SUCCESS_NO_PICKS,
    },
    PipelineState.INVOKING_PICKER: {PipelineEvent.PICKS_RECEIVED: PipelineState.VALIDATING},
    PipelineState.VALIDATING: {
        PipelineEvent.VALIDATED: PipelineState.SUCCESS,
        PipelineEvent.VALIDATED_EMPTY: PipelineState.SUCCESS_NO_PICKS,
    },
    PipelineState.SUCCESS: {PipelineEvent.RESET: PipelineState.IDLE},
    PipelineState.SUCCESS_NO_PICKS: {PipelineEvent.RESET: PipelineState.IDLE},
    PipelineState.ERROR: {PipelineEvent.RESET: PipelineState.IDLE},
}


def transition(state: PipelineState, event: PipelineEvent) -> PipelineState:
    if event == PipelineEvent.FAIL and not state.terminal:
        return PipelineState.ERROR
    new = ALLOWED_TRANSITIONS.get(state, {}).get(event)
    if new is None:
        raise InvalidTransitionError(f"Invalid transition {state} --{event}-->")
    return new


def allowed_events(state: PipelineState) -> set[PipelineEvent]:
    events = set(ALLOWED_TRANSITIONS.get(state, {}))
    if not state.terminal:
        events.add(PipelineEvent.FAIL)
    return events
