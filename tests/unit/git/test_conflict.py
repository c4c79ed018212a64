"""Tests for ConflictHandler detection, conclusion and abort."""

import pytest

from branchwarden.core.errors import (
    AbortIncomplete,
    BackendUnavailable,
    GatewayError,
)
from branchwarden.core.result import ErrorKind, GatewayResult
from branchwarden.git.conflict import ConflictHandler, raise_for_failure
from branchwarden.git.tracker import RepositoryStateTracker
from branchwarden.state.merge import (
    MergeOperation,
    MergeStatus,
    MergeStrategy,
    OperationKind,
)


@pytest.fixture
def tracker(gateway):
    tracker = RepositoryStateTracker(gateway)
    tracker.refresh()
    return tracker


@pytest.fixture
def handler(gateway, tracker):
    return ConflictHandler(gateway, tracker)


@pytest.fixture
def conflicted(gateway, handler):
    """feature merged into main, stopped on two conflicting files."""
    gateway.add_branch("feature", commits=1)
    gateway.local_commit("main")
    pre_tip = gateway.local["main"]
    op = MergeOperation(source="feature", target="main", pre_tip=pre_tip)
    op.transition(MergeStatus.IN_PROGRESS)

    gateway.conflicts["merge"] = ["src/app.py", "README.md"]
    result = gateway.merge("feature", MergeStrategy.NO_FAST_FORWARD)
    handler.detect(result, op)
    return op


def test_detect_ignores_success(handler):
    op = MergeOperation(source="a", target="b", status=MergeStatus.IN_PROGRESS)
    assert handler.detect(GatewayResult.success("merge"), op) is None
    assert op.status is MergeStatus.IN_PROGRESS


def test_detect_blocks_operation(conflicted):
    assert conflicted.status is MergeStatus.CONFLICT_BLOCKED
    assert conflicted.conflicts.paths == ["src/app.py", "README.md"]


def test_mark_resolved(handler, conflicted):
    handler.mark_resolved(conflicted.conflicts, "README.md")

    assert not handler.all_resolved(conflicted.conflicts)
    assert conflicted.conflicts.unresolved == ["src/app.py"]

    handler.mark_resolved(conflicted.conflicts, "src/app.py")
    assert handler.all_resolved(conflicted.conflicts)


def test_mark_resolved_unknown_path(handler, conflicted):
    with pytest.raises(KeyError):
        handler.mark_resolved(conflicted.conflicts, "other.txt")


def test_all_resolved_without_conflicts(handler):
    assert handler.all_resolved(None)


def test_conclude_commits(gateway, handler, conflicted):
    for path in conflicted.conflicts.paths:
        handler.mark_resolved(conflicted.conflicts, path)

    assert handler.conclude(conflicted) is None

    assert conflicted.status is MergeStatus.COMMITTED
    assert conflicted.merge_commit == gateway.local["main"]
    assert len(gateway.commits[gateway.local["main"]].parents) == 2
    assert gateway.in_progress is None


def test_conclude_surfaces_fresh_conflicts(gateway, handler, conflicted):
    conflicted.kind = OperationKind.REBASE
    for path in conflicted.conflicts.paths:
        handler.mark_resolved(conflicted.conflicts, path)
    gateway.conflicts["continue_operation"] = ["lib/util.py"]

    fresh = handler.conclude(conflicted)

    assert fresh.paths == ["lib/util.py"]
    assert conflicted.status is MergeStatus.CONFLICT_BLOCKED
    assert not handler.all_resolved(conflicted.conflicts)


def test_conclude_failure_stays_blocked(gateway, handler, conflicted):
    for path in conflicted.conflicts.paths:
        handler.mark_resolved(conflicted.conflicts, path)
    gateway.failures["continue_operation"] = (
        ErrorKind.COMMAND_FAILED, "hook rejected commit"
    )

    with pytest.raises(GatewayError, match="hook rejected"):
        handler.conclude(conflicted)
    assert conflicted.status is MergeStatus.CONFLICT_BLOCKED


def test_abort_restores_pre_tip(gateway, handler, conflicted):
    branch = handler.abort(conflicted)

    assert conflicted.status is MergeStatus.ABORTED
    assert branch.tip == conflicted.pre_tip
    assert gateway.local["main"] == conflicted.pre_tip
    assert gateway.in_progress is None


def test_abort_detects_moved_tip(gateway, handler, conflicted):
    conflicted.pre_tip = gateway.local["feature"]

    with pytest.raises(AbortIncomplete):
        handler.abort(conflicted)
    assert conflicted.status is MergeStatus.CONFLICT_BLOCKED


@pytest.mark.parametrize("kind,exc", [
    (ErrorKind.BACKEND_UNAVAILABLE, BackendUnavailable),
    (ErrorKind.REJECTED, GatewayError),
    (ErrorKind.NOT_FOUND, GatewayError),
])
def test_raise_for_failure(kind, exc):
    with pytest.raises(exc):
        raise_for_failure(GatewayResult.failure("push", kind, "nope"), step=3)


def test_raise_for_failure_passes_success_and_conflict():
    raise_for_failure(GatewayResult.success("merge"))
    raise_for_failure(GatewayResult.conflict("merge", ["a"]))
