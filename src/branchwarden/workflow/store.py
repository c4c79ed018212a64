"""Durable WorkflowRun storage and per-branch-pair locks.

Layout under the configured state directory::

    runs/<run_id>.json     one WorkflowRun each
    locks/<digest>.lock    one per locked branch pair, holds the run id
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from branchwarden.core.errors import OperationInProgress, RunNotFound
from branchwarden.core.log import logger
from branchwarden.state.merge import MergeOperation, MergeStatus, OperationKind
from branchwarden.state.run import RunStatus, WorkflowRun


def lock_key(*names: str | None) -> str:
    """Order-independent key for a set of branch names."""
    return "..".join(sorted({name for name in names if name}))


class RunStore:
    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.runs_dir = self.state_dir / "runs"
        self.locks_dir = self.state_dir / "locks"

    def _path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def save(self, run: WorkflowRun) -> None:
        """Write atomically: temp file in the same directory, then rename."""
        run.touch()
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.runs_dir, prefix=f".{run.run_id}_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(run.model_dump_json(indent=2))
            os.replace(temp_path, self._path(run.run_id))
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(temp_path)
            raise

    def load(self, run_id: str) -> WorkflowRun:
        path = self._path(run_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise RunNotFound(f"No workflow run {run_id!r}") from None
        return WorkflowRun.model_validate_json(content)

    def exists(self, run_id: str) -> bool:
        return self._path(run_id).exists()

    def delete(self, run_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path(run_id).unlink()

    def list(self) -> list[WorkflowRun]:
        """All stored runs, oldest first. Unreadable files are skipped."""
        if not self.runs_dir.exists():
            return []
        runs = []
        for path in self.runs_dir.glob("*.json"):
            try:
                runs.append(
                    WorkflowRun.model_validate_json(
                        path.read_text(encoding="utf-8")
                    )
                )
            except (OSError, ValidationError) as e:
                logger.warn("Skipping unreadable run file",
                            path=str(path), error=str(e))
        return sorted(runs, key=lambda r: r.created_at)

    def conflict_blocked(self) -> list[WorkflowRun]:
        """Runs whose operation left conflicts in the working tree."""
        return [
            run for run in self.list()
            if not run.status.terminal
            and run.operation is not None
            and run.operation.status is MergeStatus.CONFLICT_BLOCKED
        ]

    def find_awaiting(self, source: str, target: str) -> WorkflowRun | None:
        """Oldest run waiting on a proposal for source -> target."""
        for run in self.list():
            if (
                run.status is RunStatus.AWAITING_PROPOSAL
                and run.operation is not None
                and run.operation.source == source
                and run.operation.target == target
            ):
                return run
        return None

    def find_operation(
        self,
        operation_id: str | None = None,
        target: str | None = None,
    ) -> MergeOperation | None:
        """Completed integration by id, or the latest one into ``target``.

        Revert operations are never returned for a target lookup.
        """
        matches = []
        for run in self.list():
            for op in run.operations():
                if operation_id is not None:
                    if op.operation_id == operation_id:
                        return op
                    continue
                if (
                    op.target == target
                    and op.status is MergeStatus.COMPLETED
                    and op.kind is not OperationKind.REVERT
                ):
                    matches.append(op)
        if not matches:
            return None
        return max(matches, key=lambda op: op.completed_at or op.created_at)

    def find_integration(
        self, source: str, target: str, source_tip: str
    ) -> MergeOperation | None:
        """Completed integration of exactly ``source_tip`` into ``target``."""
        for run in self.list():
            for op in run.operations():
                if (
                    op.status is MergeStatus.COMPLETED
                    and op.kind is not OperationKind.REVERT
                    and op.source == source
                    and op.target == target
                    and op.source_tip == source_tip
                    and op.merge_commit
                ):
                    return op
        return None

    # Pair locks

    def _lock_path(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
        return self.locks_dir / f"{digest}.lock"

    def lock_holder(self, key: str) -> str | None:
        try:
            return self._lock_path(key).read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

    def _is_stale(self, holder: str | None) -> bool:
        if not holder:
            # created but not yet written
            return False
        try:
            return self.load(holder).status.terminal
        except RunNotFound:
            return True

    def acquire(self, key: str, run_id: str) -> None:
        """Take the pair lock or raise OperationInProgress. Never waits."""
        path = self._lock_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.lock_holder(key)
                if holder == run_id:
                    return
                if not self._is_stale(holder):
                    raise OperationInProgress(
                        f"Branches {key} are in use by run {holder}"
                    ) from None
                logger.info("Breaking stale lock", key=key, holder=holder)
                with contextlib.suppress(FileNotFoundError):
                    path.unlink()
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(run_id)
            return
        raise OperationInProgress(f"Branches {key} are in use")

    def release(self, key: str, run_id: str) -> None:
        """Drop the lock if ``run_id`` still holds it."""
        if self.lock_holder(key) == run_id:
            with contextlib.suppress(FileNotFoundError):
                self._lock_path(key).unlink()


__all__ = ["RunStore", "lock_key"]
