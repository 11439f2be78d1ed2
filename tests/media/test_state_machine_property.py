"""Property-based tests for the processing state machine and progress."""

import pytest
from hypothesis import given, settings, strategies as st

from reelpipe.modules.media.exceptions import ConcurrentRunError, InvalidStateTransitionError
from reelpipe.modules.media.models import AssetStatus
from reelpipe.modules.media.state import (
    TERMINAL_STATUSES,
    can_transition,
    clamp_progress,
    next_progress,
    validate_transition,
)

status_strategy = st.sampled_from(list(AssetStatus))


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (AssetStatus.UPLOADED, AssetStatus.PROCESSING),
            (AssetStatus.PROCESSING, AssetStatus.READY),
            (AssetStatus.PROCESSING, AssetStatus.FAILED),
        ],
    )
    def test_forward_transitions_allowed(self, current, target) -> None:
        assert validate_transition(current, target) == target

    @pytest.mark.parametrize("current", [AssetStatus.READY, AssetStatus.FAILED])
    def test_terminal_states_need_explicit_reprocess(self, current) -> None:
        with pytest.raises(InvalidStateTransitionError):
            validate_transition(current, AssetStatus.PROCESSING)
        assert validate_transition(current, AssetStatus.PROCESSING, reprocess=True) == AssetStatus.PROCESSING

    def test_second_run_while_processing_is_concurrent(self) -> None:
        with pytest.raises(ConcurrentRunError):
            validate_transition(AssetStatus.PROCESSING, AssetStatus.PROCESSING, reprocess=True)

    def test_uploaded_cannot_skip_processing(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            validate_transition("uploaded", "ready")

    def test_accepts_plain_strings(self) -> None:
        assert validate_transition("processing", "failed") == AssetStatus.FAILED

    @given(current=status_strategy, target=status_strategy)
    @settings(max_examples=50)
    def test_nothing_reaches_uploaded(self, current, target) -> None:
        if target == AssetStatus.UPLOADED:
            assert not can_transition(current, target, reprocess=True)

    @given(current=st.sampled_from(sorted(TERMINAL_STATUSES)), target=status_strategy)
    @settings(max_examples=50)
    def test_terminal_states_only_leave_through_reprocess(self, current, target) -> None:
        assert not can_transition(current, target)


class TestProgress:
    @given(st.lists(st.floats(min_value=-50, max_value=150, allow_nan=False), min_size=1, max_size=30))
    @settings(max_examples=100)
    def test_progress_never_decreases(self, proposals) -> None:
        current = 0
        for proposed in proposals:
            updated = next_progress(current, proposed)
            assert updated >= current
            assert 0 <= updated <= 100
            current = updated

    @pytest.mark.parametrize("value,expected", [(-5, 0), (0, 0), (42.4, 42), (99.6, 100), (250, 100)])
    def test_clamp(self, value, expected) -> None:
        assert clamp_progress(value) == expected
