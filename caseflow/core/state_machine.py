"""
State machine definitions for task, stage and instance states.

Task states follow an explicit transition table. Stage and instance
states are derived from the tasks they contain.
"""

from enum import Enum
from typing import Iterable

from caseflow.core.errors import InvalidTransitionError


class TaskStatus(str, Enum):
    """
    Possible states for a task.

    State transitions:
    - Pending -> InProgress -> Review -> Done
    - InProgress -> Pending (correction)
    - Done is terminal (reopening is a separate, explicit correction)
    """

    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    REVIEW = "Review"
    DONE = "Done"


class StageStatus(str, Enum):
    """Derived states for a stage."""

    PENDING = "Pending"
    ACTIVE = "Active"
    COMPLETED = "Completed"


class InstanceStatus(str, Enum):
    """
    Possible states for a workflow instance.

    State transitions:
    - Active -> Completed (all stages completed)
    - Active <-> Paused
    - Active/Paused -> Cancelled
    """

    ACTIVE = "Active"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class TaskStateMachine:
    """
    State machine for task states.

    Holds the legal transition table. Dependency gating is applied by
    the caller before ``transition``.
    """

    # Valid state transitions: from_state -> [valid_to_states]
    VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
        TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
        TaskStatus.IN_PROGRESS: {TaskStatus.REVIEW, TaskStatus.PENDING},
        TaskStatus.REVIEW: {TaskStatus.DONE},
        TaskStatus.DONE: set(),  # Terminal state
    }

    TERMINAL_STATES: set[TaskStatus] = {TaskStatus.DONE}

    # Entering these states requires every task dependency to be Done
    GATED_STATES: set[TaskStatus] = {
        TaskStatus.IN_PROGRESS,
        TaskStatus.REVIEW,
        TaskStatus.DONE,
    }

    def __init__(self, initial_state: TaskStatus = TaskStatus.PENDING):
        self._state = initial_state

    @property
    def state(self) -> TaskStatus:
        """Get current state."""
        return self._state

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in self.TERMINAL_STATES

    def can_transition_to(self, to_state: TaskStatus) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set[TaskStatus]:
        """Get all valid transitions from current state."""
        return self.VALID_TRANSITIONS.get(self._state, set()).copy()

    def transition(self, to_state: TaskStatus) -> TaskStatus:
        """
        Transition to a new state.

        Returns:
            The state left behind

        Raises:
            InvalidTransitionError: If transition is not valid
        """
        if self.is_terminal:
            raise InvalidTransitionError(
                self._state.value,
                to_state.value,
                f"{self._state.value} is terminal",
            )

        if not self.can_transition_to(to_state):
            valid = sorted(s.value for s in self.get_valid_transitions())
            raise InvalidTransitionError(
                self._state.value,
                to_state.value,
                f"Valid transitions: {valid}",
            )

        previous = self._state
        self._state = to_state
        return previous


def compute_stage_status(
    task_states: Iterable[TaskStatus],
    activated: bool = False,
) -> StageStatus:
    """
    Compute a stage's status from the states of its tasks.

    Completed iff every task is Done; Active iff work has started on at
    least one task (or the stage was opened) and not all are Done;
    otherwise Pending. A stage without tasks is never Completed.

    Args:
        task_states: States of all tasks in the stage
        activated: Whether the stage has been opened for work

    Returns:
        Computed StageStatus
    """
    states = list(task_states)

    if states and all(state == TaskStatus.DONE for state in states):
        return StageStatus.COMPLETED

    started = {TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.DONE}
    if activated or any(state in started for state in states):
        return StageStatus.ACTIVE

    return StageStatus.PENDING


def compute_progress(done_count: int, total_count: int) -> int:
    """Percentage of Done tasks, rounded to the nearest integer."""
    if total_count <= 0:
        return 0
    return round(100 * done_count / total_count)
