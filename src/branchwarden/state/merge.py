"""Merge operations and the conflicts they produce."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import Field

from branchwarden.core.base import BaseState
from branchwarden.core.errors import InvalidTransition


class MergeStrategy(str, Enum):
    FAST_FORWARD = "fast-forward"  # fast-forward if possible
    NO_FAST_FORWARD = "no-fast-forward"
    SQUASH = "squash"
    REBASE = "rebase"


class OperationKind(str, Enum):
    """Which gateway abort/continue primitive applies."""

    MERGE = "merge"
    REBASE = "rebase"
    REVERT = "revert"
    SQUASH = "squash"
    PROPOSAL = "proposal"  # integrated on the hosting platform


class MergeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    CONFLICT_BLOCKED = "conflict-blocked"
    COMMITTED = "committed"
    PUSH_FAILED = "push-failed"
    COMPLETED = "completed"
    ABORTED = "aborted"


TRANSITIONS: dict[MergeStatus, frozenset[MergeStatus]] = {
    MergeStatus.PENDING: frozenset({
        MergeStatus.IN_PROGRESS, MergeStatus.ABORTED,
    }),
    MergeStatus.IN_PROGRESS: frozenset({
        MergeStatus.CONFLICT_BLOCKED, MergeStatus.COMMITTED,
        MergeStatus.ABORTED,
    }),
    MergeStatus.CONFLICT_BLOCKED: frozenset({
        MergeStatus.IN_PROGRESS, MergeStatus.COMMITTED,
        MergeStatus.ABORTED,
    }),
    MergeStatus.COMMITTED: frozenset({
        MergeStatus.PUSH_FAILED, MergeStatus.COMPLETED,
    }),
    MergeStatus.PUSH_FAILED: frozenset({
        MergeStatus.COMMITTED, MergeStatus.COMPLETED,
    }),
    MergeStatus.COMPLETED: frozenset(),
    MergeStatus.ABORTED: frozenset(),
}


class Resolution(str, Enum):
    UNRESOLVED = "unresolved"
    MARKED_RESOLVED = "marked-resolved"


class ConflictEntry(BaseState):
    path: str
    state: Resolution = Resolution.UNRESOLVED


class ConflictSet(BaseState):
    """Ordered conflicting paths for one MergeOperation."""

    entries: list[ConflictEntry] = Field(default_factory=list)

    @classmethod
    def from_paths(cls, paths: list[str]) -> ConflictSet:
        seen = dict.fromkeys(paths)
        return cls(entries=[ConflictEntry(path=p) for p in seen])

    @property
    def paths(self) -> list[str]:
        return [entry.path for entry in self.entries]

    @property
    def unresolved(self) -> list[str]:
        return [
            entry.path for entry in self.entries
            if entry.state is Resolution.UNRESOLVED
        ]

    def entry(self, path: str) -> ConflictEntry:
        for entry in self.entries:
            if entry.path == path:
                return entry
        raise KeyError(path)


class MergeOperation(BaseState):
    """One integration of source into target.

    Created when a scenario step starts integrating; archived on the
    owning run once Completed or Aborted.
    """

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    source: str | None
    target: str
    strategy: MergeStrategy = MergeStrategy.NO_FAST_FORWARD
    kind: OperationKind = OperationKind.MERGE
    status: MergeStatus = MergeStatus.PENDING
    pre_tip: str = Field(
        default="",
        description="Tip of the branch being modified before integration",
    )
    source_tip: str | None = Field(
        default=None,
        description="Source commit being integrated, when known",
    )
    merge_commit: str | None = None
    conflicts: ConflictSet | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.status in (MergeStatus.COMPLETED, MergeStatus.ABORTED)

    def transition(self, status: MergeStatus) -> None:
        """Move to ``status`` or raise InvalidTransition."""
        if status is self.status:
            return
        if status not in TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Operation {self.operation_id}: "
                f"{self.status.value} -> {status.value} not allowed"
            )
        if (
            status is MergeStatus.COMMITTED
            and self.conflicts is not None
            and self.conflicts.unresolved
        ):
            raise InvalidTransition(
                f"Operation {self.operation_id} has unresolved conflicts: "
                f"{', '.join(self.conflicts.unresolved)}"
            )
        self.status = status
        if self.finished:
            self.completed_at = datetime.now()
