"""Conflict Handler: turns conflicted gateway results into ConflictSets
and carries a MergeOperation to Committed or Aborted."""

from __future__ import annotations

from branchwarden.core.errors import (
    AbortIncomplete,
    BackendUnavailable,
    GatewayError,
)
from branchwarden.core.log import logger
from branchwarden.core.result import ErrorKind, GatewayResult, Outcome
from branchwarden.git.gateway import ExecutionGateway
from branchwarden.git.tracker import RepositoryStateTracker
from branchwarden.state.merge import (
    ConflictSet,
    MergeOperation,
    MergeStatus,
    Resolution,
)
from branchwarden.state.repository import Branch


def raise_for_failure(result: GatewayResult, step: int | None = None) -> None:
    """Raise the exception matching a failed gateway result."""
    if result.outcome is not Outcome.FAILURE:
        return
    message = result.message or f"{result.primitive} failed"
    if result.error_kind is ErrorKind.BACKEND_UNAVAILABLE:
        raise BackendUnavailable(message, step=step)
    kind = result.error_kind or ErrorKind.COMMAND_FAILED
    raise GatewayError(kind.value, message, step=step)


class ConflictHandler:
    def __init__(
        self, gateway: ExecutionGateway, tracker: RepositoryStateTracker
    ):
        self.gateway = gateway
        self.tracker = tracker

    def detect(
        self, result: GatewayResult, operation: MergeOperation
    ) -> ConflictSet | None:
        """Attach a ConflictSet to ``operation`` if ``result`` conflicted."""
        if result.outcome is not Outcome.CONFLICT:
            return None
        conflicts = ConflictSet.from_paths(result.conflicts)
        operation.conflicts = conflicts
        operation.transition(MergeStatus.CONFLICT_BLOCKED)
        logger.warn(
            "Conflict", source=operation.source, target=operation.target,
            paths=conflicts.paths,
        )
        return conflicts

    def mark_resolved(self, conflicts: ConflictSet, path: str) -> None:
        """Record that ``path`` was resolved. KeyError if not conflicted."""
        conflicts.entry(path).state = Resolution.MARKED_RESOLVED

    def all_resolved(self, conflicts: ConflictSet | None) -> bool:
        return conflicts is None or not conflicts.unresolved

    def conclude(self, operation: MergeOperation) -> ConflictSet | None:
        """Issue the completing commit for a conflict-blocked operation.

        Returns a fresh ConflictSet when continuing surfaces new
        conflicts (a rebase replaying its next commit); the operation
        then stays ConflictBlocked.
        """
        paths = operation.conflicts.paths if operation.conflicts else []
        operation.transition(MergeStatus.IN_PROGRESS)
        result = self.gateway.continue_operation(operation.kind, paths)
        fresh = self.detect(result, operation)
        if fresh is not None:
            return fresh
        if not result.ok:
            # Still blocked: the caller may retry after fixing the cause
            operation.transition(MergeStatus.CONFLICT_BLOCKED)
            raise_for_failure(result)
        operation.transition(MergeStatus.COMMITTED)
        operation.merge_commit = self.tracker.tip("HEAD")
        return None

    def abort(self, operation: MergeOperation) -> Branch:
        """Abort the in-progress operation and verify the tip is restored."""
        raise_for_failure(self.gateway.abort(operation.kind))
        self.tracker.refresh()
        branch = self.tracker.get_branch(operation.target)
        if operation.pre_tip and branch.tip != operation.pre_tip:
            raise AbortIncomplete(
                f"{operation.target} is at {branch.tip[:12]} after abort, "
                f"expected {operation.pre_tip[:12]}"
            )
        operation.transition(MergeStatus.ABORTED)
        logger.info("Operation aborted", operation=operation.operation_id,
                    target=operation.target)
        return branch


__all__ = ["ConflictHandler", "raise_for_failure"]
