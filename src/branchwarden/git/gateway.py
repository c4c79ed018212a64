"""Execution Gateway contract.

The gateway is the single choke point to the version-control
backend. Every primitive returns a GatewayResult; reads carry their
payload in ``result.value`` using the records below.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from branchwarden.core.result import GatewayResult
from branchwarden.state.merge import MergeStrategy, OperationKind
from branchwarden.state.repository import Remote, RemoteRef

# Primitives that change refs, the index or the working tree. fetch
# only moves remote-tracking refs and is deliberately not listed.
MUTATING_PRIMITIVES = frozenset({
    "commit",
    "checkout",
    "pull",
    "push",
    "merge",
    "revert",
    "rebase_interactive",
    "rename_branch",
    "set_upstream",
    "delete_branch",
    "delete_remote_branch",
    "abort",
    "continue_operation",
})


class WorkingTreeStatus(BaseModel):
    """Payload of status()."""

    current_branch: str | None = None
    dirty: bool = False
    conflicts: list[str] = Field(default_factory=list)
    operation: OperationKind | None = None


class LocalBranchInfo(BaseModel):
    """Payload item of branches()."""

    name: str
    tip: str = ""
    upstream_remote: str | None = None
    upstream_branch: str | None = None
    ahead: int = 0
    behind: int = 0
    upstream_gone: bool = False


class CommitRecord(BaseModel):
    """Payload item of merge_commits()."""

    sha: str
    timestamp: datetime


class SquashPlan(BaseModel):
    """Argument of rebase_interactive(): fold ``count`` commits into one."""

    branch: str
    count: int
    message: str


@runtime_checkable
class ExecutionGateway(Protocol):
    """Capability interface over a version-control backend."""

    # Reads
    def status(self) -> GatewayResult: ...                # WorkingTreeStatus
    def branches(self) -> GatewayResult: ...              # list[LocalBranchInfo]
    def remotes(self) -> GatewayResult: ...               # list[Remote]
    def remote_branches(self) -> GatewayResult: ...       # list[RemoteRef]
    def ahead_behind(self, left: str, right: str) -> GatewayResult: ...
    def rev_parse(self, ref: str) -> GatewayResult: ...   # str | None
    def merge_commits(self, branch: str) -> GatewayResult: ...
    def find_revert(self, branch: str, commit: str) -> GatewayResult: ...

    # Network
    def fetch(self, all_remotes: bool = False) -> GatewayResult: ...
    def pull(self) -> GatewayResult: ...
    def push(
        self, branch: str, set_upstream: bool = False, force: bool = False
    ) -> GatewayResult: ...
    def delete_remote_branch(self, name: str) -> GatewayResult: ...

    # Local mutations
    def commit(self, message: str) -> GatewayResult: ...
    def checkout(
        self, branch: str, create: bool = False, start_point: str | None = None
    ) -> GatewayResult: ...
    def merge(self, branch: str, strategy: MergeStrategy) -> GatewayResult: ...
    def revert(self, commit: str, mainline_parent: int = 1) -> GatewayResult: ...
    def rebase_interactive(self, plan: SquashPlan) -> GatewayResult: ...
    def rename_branch(
        self, old: str, new: str, force: bool = False
    ) -> GatewayResult: ...
    def set_upstream(self, branch: str, remote_ref: str) -> GatewayResult: ...
    def delete_branch(self, name: str, force: bool = False) -> GatewayResult: ...

    # In-progress operations
    def abort(self, kind: OperationKind) -> GatewayResult: ...
    def continue_operation(
        self, kind: OperationKind, paths: list[str]
    ) -> GatewayResult: ...


__all__ = [
    "MUTATING_PRIMITIVES",
    "CommitRecord",
    "ExecutionGateway",
    "LocalBranchInfo",
    "Remote",
    "RemoteRef",
    "SquashPlan",
    "WorkingTreeStatus",
]
