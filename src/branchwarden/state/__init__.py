"""Runtime state models: repository projection, merges, workflow runs."""

from branchwarden.state.merge import (
    ConflictEntry,
    ConflictSet,
    MergeOperation,
    MergeStatus,
    MergeStrategy,
    OperationKind,
    Resolution,
)
from branchwarden.state.repository import (
    Branch,
    Remote,
    RemoteRef,
    RepositoryState,
    UpstreamRef,
)
from branchwarden.state.run import (
    Remediation,
    RunOptions,
    RunStatus,
    UpstreamMismatch,
    WorkflowRun,
)

__all__ = [
    "Branch",
    "ConflictEntry",
    "ConflictSet",
    "MergeOperation",
    "MergeStatus",
    "MergeStrategy",
    "OperationKind",
    "Remediation",
    "Remote",
    "RemoteRef",
    "RepositoryState",
    "Resolution",
    "RunOptions",
    "RunStatus",
    "UpstreamMismatch",
    "UpstreamRef",
    "WorkflowRun",
]
