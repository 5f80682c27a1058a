"""
Workflow States
===============

The control-flow graph every workflow instance follows::

    START -> CLASSIFYING -> BRANCH -> DISPATCHING -> SUSPENDED -> COMPLETED
                                  +-> SKIPPED                 +-> ABORTED

Any non-terminal state may also move to ABORTED (stage failures after the
engine's retries, or the suspension timeout). ``DISPATCHING`` may move
straight to ``COMPLETED`` because a job can finish before the engine has
recorded the suspension.
"""

from __future__ import annotations

import enum

from classifier.stage import DocumentType
from common.errors import InvalidTransition
from extraction.service import FeatureSet


class WorkflowState(str, enum.Enum):
    START = "START"
    CLASSIFYING = "CLASSIFYING"
    BRANCH = "BRANCH"
    DISPATCHING = "DISPATCHING"
    SUSPENDED = "SUSPENDED"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_waiting(self) -> bool:
        """True while a resumption handle is live for the instance."""
        return self in (WorkflowState.DISPATCHING, WorkflowState.SUSPENDED)


TERMINAL_STATES = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.SKIPPED, WorkflowState.ABORTED}
)

TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.START: frozenset({WorkflowState.CLASSIFYING, WorkflowState.ABORTED}),
    WorkflowState.CLASSIFYING: frozenset({WorkflowState.BRANCH, WorkflowState.ABORTED}),
    WorkflowState.BRANCH: frozenset(
        {WorkflowState.DISPATCHING, WorkflowState.SKIPPED, WorkflowState.ABORTED}
    ),
    WorkflowState.DISPATCHING: frozenset(
        {WorkflowState.SUSPENDED, WorkflowState.COMPLETED, WorkflowState.ABORTED}
    ),
    WorkflowState.SUSPENDED: frozenset({WorkflowState.COMPLETED, WorkflowState.ABORTED}),
    WorkflowState.COMPLETED: frozenset(),
    WorkflowState.SKIPPED: frozenset(),
    WorkflowState.ABORTED: frozenset(),
}

BRANCHES: dict[str, FeatureSet] = {
    DocumentType.APPLICATION.value: FeatureSet.FORMS,
    DocumentType.PAYSLIP.value: FeatureSet.TABLES,
    DocumentType.BANK.value: FeatureSet.TABLES,
    DocumentType.UNKNOWN.value: FeatureSet.TEXT,
}


def check_transition(current: WorkflowState, target: WorkflowState) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(f"{current.value} -> {target.value} is not allowed")


def branch_for_label(label: str) -> FeatureSet | None:
    """Feature set to extract for ``label``; None means the instance is skipped."""
    return BRANCHES.get(label)
