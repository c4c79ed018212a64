"""Workflow nodes for the scenario state machine."""

from branchwarden.workflow.nodes.conclude import ConcludeIntegration
from branchwarden.workflow.nodes.execute_step import ExecuteStep
from branchwarden.workflow.nodes.finalize import Finalize
from branchwarden.workflow.nodes.prepare import Prepare

__all__ = [
    "ConcludeIntegration",
    "ExecuteStep",
    "Finalize",
    "Prepare",
]
