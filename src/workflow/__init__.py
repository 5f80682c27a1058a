"""
Workflow domain package.

This package contains:

- the workflow states, transition table and label-to-branch table
- the redis-backed workflow substrate (instances, handles, deadlines)
- the engine that drives an instance from trigger to suspension
"""

from .engine import StageLimits, WorkflowEngine
from .states import WorkflowState, branch_for_label, check_transition
from .substrate import RedisWorkflowSubstrate, WorkflowInstance, WorkflowSubstrate

__all__ = [
    "RedisWorkflowSubstrate",
    "StageLimits",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowState",
    "WorkflowSubstrate",
    "branch_for_label",
    "check_transition",
]
