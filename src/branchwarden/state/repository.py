"""Live projection of repository state: remotes and branches.

These records are rebuilt from gateway reads on every refresh and
never persisted on their own.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from branchwarden.core.base import BaseState
from branchwarden.state.merge import OperationKind


class Remote(BaseState):
    """A configured remote. Owned by the tracker's RepositoryState."""

    name: str
    url: str = ""
    reachable: bool | None = Field(
        default=None,
        description="Last-known reachability; None until a fetch is tried",
    )


class UpstreamRef(BaseState):
    """Remote branch a local branch tracks, by remote name lookup."""

    remote: str
    branch: str

    def __str__(self) -> str:
        return f"{self.remote}/{self.branch}"


class RemoteRef(BaseState):
    """A remote-tracking ref as last fetched."""

    remote: str
    name: str
    tip: str = ""

    def __str__(self) -> str:
        return f"{self.remote}/{self.name}"


class Branch(BaseState):
    """A branch as the tracker last saw it."""

    name: str
    exists_locally: bool = True
    remote: str | None = Field(
        default=None,
        description="Name of the associated remote (a lookup key)",
    )
    upstream: UpstreamRef | None = None
    upstream_gone: bool = Field(
        default=False,
        description="Upstream is configured but its remote ref is missing",
    )
    ahead: int = 0
    behind: int = 0
    dirty: bool = False
    tip: str = ""

    @model_validator(mode="after")
    def _counts_need_upstream(self) -> Branch:
        if self.upstream is None:
            self.ahead = 0
            self.behind = 0
        return self

    @property
    def in_sync(self) -> bool:
        """Tracks an upstream and neither side has unique commits."""
        return (
            self.upstream is not None
            and not self.upstream_gone
            and self.ahead == 0
            and self.behind == 0
        )


class RepositoryState(BaseState):
    """Snapshot produced by RepositoryStateTracker.refresh()."""

    current_branch: str | None = None
    dirty: bool = False
    conflicts: list[str] = Field(default_factory=list)
    operation: OperationKind | None = Field(
        default=None,
        description="Merge/rebase/revert left in progress in the worktree",
    )
    remotes: dict[str, Remote] = Field(default_factory=dict)
    branches: dict[str, Branch] = Field(default_factory=dict)
    remote_refs: list[RemoteRef] = Field(default_factory=list)
    refreshed_at: datetime = Field(default_factory=datetime.now)

    def remote_names(self, remote: str) -> list[str]:
        """Branch names present on one remote."""
        return [ref.name for ref in self.remote_refs if ref.remote == remote]
