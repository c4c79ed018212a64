"""Workflow run records: the only state persisted across restarts."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import Field

from branchwarden.core.base import BaseState
from branchwarden.state.merge import MergeOperation, MergeStrategy


class Remediation(str, Enum):
    RENAME_LOCAL = "rename-local"
    RETARGET_UPSTREAM = "retarget-upstream"
    MANUAL = "manual"


class UpstreamMismatch(BaseState):
    """Configured upstream name differs from what the remote has."""

    branch: str
    remote: str
    configured: str
    actual: str | None = Field(
        default=None,
        description="Remote branch matching case-insensitively, if unique",
    )
    candidates: list[str] = Field(default_factory=list)
    remediation: Remediation = Remediation.RETARGET_UPSTREAM

    def describe(self) -> str:
        if self.actual is None:
            return (
                f"{self.branch} tracks {self.remote}/{self.configured}, "
                f"which has no unique match on {self.remote}"
            )
        return (
            f"{self.branch} tracks {self.remote}/{self.configured} but "
            f"{self.remote} has {self.actual}"
        )


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    CONFLICT_BLOCKED = "conflict-blocked"
    UPSTREAM_MISMATCH = "upstream-mismatch"
    AWAITING_PROPOSAL = "awaiting-proposal"
    FAILED = "failed"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ABORTED)

    @property
    def paused(self) -> bool:
        return self in (
            RunStatus.CONFLICT_BLOCKED,
            RunStatus.UPSTREAM_MISMATCH,
            RunStatus.AWAITING_PROPOSAL,
        )


class RunOptions(BaseState):
    """Per-invocation knobs. None means use the configured default."""

    strategy: MergeStrategy | None = None
    not_shared: bool = Field(
        default=False,
        description="Caller asserts nobody else builds on the branch",
    )
    step_timeout: float | None = None
    auto_commit: bool | None = None
    commit_message: str | None = None
    squash_message: str | None = None
    base: str | None = Field(
        default=None,
        description="Branch to derive from (derive-and-integrate)",
    )
    operation_id: str | None = Field(
        default=None,
        description="Integration to revert (revert-integration)",
    )
    mainline_parent: int = 1
    auto_repair_upstream: bool | None = None
    remediation: Remediation | None = None


class WorkflowRun(BaseState):
    """Durable progress of one scenario invocation."""

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    scenario: str
    source: str | None = None
    target: str | None = None
    options: RunOptions = Field(default_factory=RunOptions)
    step_index: int = 0
    status: RunStatus = RunStatus.PENDING
    operation: MergeOperation | None = None
    history: list[MergeOperation] = Field(
        default_factory=list,
        description="Operations this run finished (Completed or Aborted)",
    )
    mismatch: UpstreamMismatch | None = None
    resume_token: str = Field(default_factory=lambda: uuid.uuid4().hex)
    lock_key: str = ""
    failed_step: int | None = None
    last_error: str | None = None
    revert_commit: str | None = None
    squash_count: int | None = None
    observed_tips: dict[str, str] = Field(default_factory=dict)
    skipped_steps: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def pause(self, status: RunStatus) -> None:
        """Pause with a fresh resumption token."""
        self.status = status
        self.resume_token = uuid.uuid4().hex
        self.touch()

    def archive_operation(self) -> None:
        if self.operation is not None and self.operation.finished:
            self.history.append(self.operation)
            self.operation = None

    def operations(self) -> list[MergeOperation]:
        """Archived operations plus the active one."""
        ops = list(self.history)
        if self.operation is not None:
            ops.append(self.operation)
        return ops
