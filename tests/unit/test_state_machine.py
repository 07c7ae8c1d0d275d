"""
Unit tests for task state transitions and derived stage status.
"""

import pytest

from caseflow.core.errors import InvalidTransitionError
from caseflow.core.state_machine import (
    StageStatus,
    TaskStateMachine,
    TaskStatus,
    compute_progress,
    compute_stage_status,
)


class TestTaskStateMachine:
    """Tests for the task state machine."""

    def test_initial_state(self):
        """Test default initial state is Pending."""
        sm = TaskStateMachine()
        assert sm.state == TaskStatus.PENDING

    def test_forward_path(self):
        """Test Pending -> InProgress -> Review -> Done."""
        sm = TaskStateMachine()

        sm.transition(TaskStatus.IN_PROGRESS)
        sm.transition(TaskStatus.REVIEW)
        previous = sm.transition(TaskStatus.DONE)

        assert sm.state == TaskStatus.DONE
        assert sm.is_terminal
        assert previous == TaskStatus.REVIEW

    def test_correction_back_to_pending(self):
        """Test InProgress -> Pending is allowed."""
        sm = TaskStateMachine(TaskStatus.IN_PROGRESS)

        sm.transition(TaskStatus.PENDING)

        assert sm.state == TaskStatus.PENDING

    def test_cannot_skip_review(self):
        """Test InProgress -> Done is rejected."""
        sm = TaskStateMachine(TaskStatus.IN_PROGRESS)

        with pytest.raises(InvalidTransitionError):
            sm.transition(TaskStatus.DONE)

        assert sm.state == TaskStatus.IN_PROGRESS

    def test_done_is_terminal(self):
        """Test that nothing leaves Done through the state machine."""
        sm = TaskStateMachine(TaskStatus.DONE)

        for target in TaskStatus:
            assert not sm.can_transition_to(target)
            with pytest.raises(InvalidTransitionError):
                sm.transition(target)

    def test_repeating_target_fails(self):
        """Test that re-applying the current state is illegal."""
        sm = TaskStateMachine(TaskStatus.IN_PROGRESS)

        with pytest.raises(InvalidTransitionError):
            sm.transition(TaskStatus.IN_PROGRESS)

    def test_gated_states(self):
        """Test that every forward state is gated, Pending is not."""
        assert TaskStateMachine.GATED_STATES == {
            TaskStatus.IN_PROGRESS,
            TaskStatus.REVIEW,
            TaskStatus.DONE,
        }


class TestStageStatus:
    """Tests for derived stage status."""

    def test_all_done_is_completed(self):
        status = compute_stage_status([TaskStatus.DONE, TaskStatus.DONE])
        assert status == StageStatus.COMPLETED

    def test_started_work_is_active(self):
        assert compute_stage_status([TaskStatus.PENDING, TaskStatus.IN_PROGRESS]) == StageStatus.ACTIVE
        assert compute_stage_status([TaskStatus.PENDING, TaskStatus.REVIEW]) == StageStatus.ACTIVE
        assert compute_stage_status([TaskStatus.PENDING, TaskStatus.DONE]) == StageStatus.ACTIVE

    def test_untouched_is_pending(self):
        assert compute_stage_status([TaskStatus.PENDING]) == StageStatus.PENDING

    def test_activated_stage_stays_active(self):
        assert compute_stage_status([TaskStatus.PENDING], activated=True) == StageStatus.ACTIVE

    def test_empty_stage_never_completes(self):
        """Test that a stage without tasks is never Completed."""
        assert compute_stage_status([]) == StageStatus.PENDING
        assert compute_stage_status([], activated=True) == StageStatus.ACTIVE


class TestProgress:
    """Tests for progress computation."""

    @pytest.mark.parametrize(
        "done,total,expected",
        [(0, 0, 0), (0, 4, 0), (1, 3, 33), (2, 3, 67), (4, 4, 100)],
    )
    def test_rounding(self, done, total, expected):
        assert compute_progress(done, total) == expected
