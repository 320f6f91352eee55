from __future__ import annotations

import pytest

from perpdesk.core.exceptions import InvalidTransitionError
from perpdesk.pipeline.state import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    PipelineEvent,
    PipelineState,
    allowed_events,
    transition,
)


def test_happy_path() -> None:
    s = PipelineState.IDLE
    for ev in (
        PipelineEvent.START,
        PipelineEvent.SNAPSHOT_READY,
        PipelineEvent.DECIDED,
        PipelineEvent.CANDIDATES_READY,
        PipelineEvent.PICKS_RECEIVED,
        PipelineEvent.VALIDATED,
    ):
        s = transition(s, ev)
    assert s == PipelineState.SUCCESS
    assert transition(s, PipelineEvent.RESET) == PipelineState.IDLE


def test_skip_and_empty_land_in_no_picks() -> None:
    assert transition(PipelineState.SELECTING_CANDIDATES, PipelineEvent.PICKER_SKIPPED) == PipelineState.SUCCESS_NO_PICKS
    assert transition(PipelineState.VALIDATING, PipelineEvent.VALIDATED_EMPTY) == PipelineState.SUCCESS_NO_PICKS


@pytest.mark.parametrize("state", [s for s in PipelineState if s not in TERMINAL_STATES])
def test_any_running_state_can_fail(state: PipelineState) -> None:
    assert transition(state, PipelineEvent.FAIL) == PipelineState.ERROR
    assert PipelineEvent.FAIL in allowed_events(state)


@pytest.mark.parametrize("state", sorted(TERMINAL_STATES))
def test_terminal_states_only_reset(state: PipelineState) -> None:
    assert state.terminal
    assert allowed_events(state) == {PipelineEvent.RESET}
    with pytest.raises(InvalidTransitionError):
        transition(state, PipelineEvent.FAIL)
    with pytest.raises(InvalidTransitionError):
        transition(state, PipelineEvent.START)


def test_stages_cannot_be_skipped() -> None:
    with pytest.raises(InvalidTransitionError):
        transition(PipelineState.IDLE, PipelineEvent.DECIDED)
    with pytest.raises(InvalidTransitionError):
        transition(PipelineState.FETCHING, PipelineEvent.PICKS_RECEIVED)
    with pytest.raises(InvalidTransitionError):
        transition(PipelineState.INVOKING_PICKER, PipelineEvent.PICKER_SKIPPED)


def test_every_state_has_a_row() -> None:
    assert set(ALLOWED_TRANSITIONS) == set(PipelineState)
