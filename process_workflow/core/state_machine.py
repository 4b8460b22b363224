"""
State machine definitions for workflow lifecycle, join and validation states.

Implements explicit state transitions with guards and validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ClassVar, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from process_workflow.core.models import WorkflowStatus


class JoinState(str, Enum):
    """
    States of a join barrier.

    State transitions:
    - WAITING -> FIRED (fire condition met, or timeout with 'continue')
    - WAITING -> FAILED (timeout with 'fail')
    """

    WAITING = "WAITING"
    FIRED = "FIRED"
    FAILED = "FAILED"


class ValidationState(str, Enum):
    """
    States of an approval gate.

    State transitions:
    - INERT -> PENDING (entered in auto mode, or manually triggered)
    - PENDING -> APPROVED | REJECTED | EXPIRED | ESCALATED
    - ESCALATED -> APPROVED | REJECTED | EXPIRED
    """

    INERT = "INERT"            # Waiting for a manual trigger
    PENDING = "PENDING"        # Approvers can decide
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"        # SLA breached without a fallback action
    ESCALATED = "ESCALATED"    # SLA breached, still decidable


class StateTransition(BaseModel):
    """Represents a state transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None
    triggered_by: Optional[str] = None  # User, system, timeout, etc.
    metadata: dict = Field(default_factory=dict)


class InvalidStateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


# Type alias for transition guards
TransitionGuard = Callable[[], bool]

S = TypeVar("S", bound=Enum)


class StateMachine(Generic[S]):
    """
    Table-driven state machine.

    Subclasses define VALID_TRANSITIONS and TERMINAL_STATES.
    """

    VALID_TRANSITIONS: ClassVar[dict] = {}
    TERMINAL_STATES: ClassVar[set] = set()

    def __init__(self, initial_state: S):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self) -> S:
        """Get current state."""
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Get state transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in self.TERMINAL_STATES

    def can_transition_to(self, to_state: S) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set[S]:
        """Get all valid transitions from current state."""
        return set(self.VALID_TRANSITIONS.get(self._state, set()))

    def transition(
        self,
        to_state: S,
        reason: Optional[str] = None,
        triggered_by: Optional[str] = None,
        guard: Optional[TransitionGuard] = None,
        metadata: Optional[dict] = None,
    ) -> StateTransition:
        """
        Transition to a new state.

        Args:
            to_state: Target state
            reason: Reason for transition
            triggered_by: Who/what triggered the transition
            guard: Optional guard function that must return True
            metadata: Additional metadata for the transition

        Returns:
            StateTransition record

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not self.can_transition_to(to_state):
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                f"Valid transitions: {sorted(s.value for s in self.get_valid_transitions())}"
            )

        if guard is not None and not guard():
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                "Guard condition failed"
            )

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
            triggered_by=triggered_by,
            metadata=metadata or {},
        )

        self._history.append(transition)
        self._state = to_state

        return transition


class JoinStateMachine(StateMachine[JoinState]):
    """State machine for a join barrier."""

    VALID_TRANSITIONS: ClassVar[dict[JoinState, set[JoinState]]] = {
        JoinState.WAITING: {JoinState.FIRED, JoinState.FAILED},
        JoinState.FIRED: set(),   # Terminal state
        JoinState.FAILED: set(),  # Terminal state
    }

    TERMINAL_STATES: ClassVar[set[JoinState]] = {JoinState.FIRED, JoinState.FAILED}

    def __init__(self, initial_state: JoinState = JoinState.WAITING):
        super().__init__(initial_state)


class ValidationStateMachine(StateMachine[ValidationState]):
    """State machine for an approval gate."""

    VALID_TRANSITIONS: ClassVar[dict[ValidationState, set[ValidationState]]] = {
        ValidationState.INERT: {ValidationState.PENDING},
        ValidationState.PENDING: {
            ValidationState.APPROVED,
            ValidationState.REJECTED,
            ValidationState.EXPIRED,
            ValidationState.ESCALATED,
        },
        ValidationState.ESCALATED: {
            ValidationState.APPROVED,
            ValidationState.REJECTED,
            ValidationState.EXPIRED,
        },
        ValidationState.APPROVED: set(),  # Terminal state
        ValidationState.REJECTED: set(),  # Terminal state
        ValidationState.EXPIRED: set(),   # Terminal state
    }

    TERMINAL_STATES: ClassVar[set[ValidationState]] = {
        ValidationState.APPROVED,
        ValidationState.REJECTED,
        ValidationState.EXPIRED,
    }

    # States in which approvers may still decide
    DECIDABLE_STATES: ClassVar[set[ValidationState]] = {
        ValidationState.PENDING,
        ValidationState.ESCALATED,
    }

    def __init__(self, initial_state: ValidationState = ValidationState.INERT):
        super().__init__(initial_state)

    @property
    def is_decidable(self) -> bool:
        return self._state in self.DECIDABLE_STATES


class WorkflowStatusMachine(StateMachine[WorkflowStatus]):
    """
    Lifecycle of a workflow graph version.

    A draft is published once. Published versions are demoted to inactive
    when another graph of the same template pair is published, and archived
    when a newer version of the same workflow is published.
    """

    VALID_TRANSITIONS: ClassVar[dict[WorkflowStatus, set[WorkflowStatus]]] = {
        WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE},
        WorkflowStatus.ACTIVE: {WorkflowStatus.INACTIVE, WorkflowStatus.ARCHIVED},
        WorkflowStatus.INACTIVE: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
        WorkflowStatus.ARCHIVED: set(),  # Terminal state
    }

    TERMINAL_STATES: ClassVar[set[WorkflowStatus]] = {WorkflowStatus.ARCHIVED}

    def __init__(self, initial_state: WorkflowStatus = WorkflowStatus.DRAFT):
        super().__init__(initial_state)
