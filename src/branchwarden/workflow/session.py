"""RunSession: everything one WorkflowRun needs while the graph drives it.

The session is the pydantic-graph state object. It is rebuilt for
every resume; only ``run`` is persisted.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from branchwarden.core.config import OrchestratorConfig, RepoConfig
from branchwarden.core.errors import BackendUnavailable, PreconditionFailed
from branchwarden.core.log import logger
from branchwarden.core.result import Outcome
from branchwarden.git.conflict import ConflictHandler, raise_for_failure
from branchwarden.git.gateway import ExecutionGateway
from branchwarden.git.tracker import RepositoryStateTracker
from branchwarden.git.upstream import UpstreamResolver
from branchwarden.state.merge import (
    MergeOperation,
    MergeStatus,
    MergeStrategy,
    OperationKind,
)
from branchwarden.state.repository import Branch
from branchwarden.state.run import RunOptions, WorkflowRun
from branchwarden.workflow.events import Listener, ProposalRequested
from branchwarden.workflow.scenarios import Step, WorkflowScenario
from branchwarden.workflow.store import RunStore


class StepOutcome(str, Enum):
    DONE = "done"
    SKIPPED = "skipped"
    CONFLICT = "conflict"
    HANDOFF = "handoff"


@dataclass
class RunSession:
    run: WorkflowRun
    scenario: WorkflowScenario
    gateway: ExecutionGateway
    tracker: RepositoryStateTracker
    resolver: UpstreamResolver
    conflicts: ConflictHandler
    store: RunStore
    settings: OrchestratorConfig
    repo: RepoConfig
    listeners: list[Listener] = field(default_factory=list)
    # Workers still running after their step timed out, by run id
    pending: dict[str, asyncio.Future] = field(default_factory=dict)
    cancel_requested: bool = False

    # Names and policy

    @property
    def source(self) -> str | None:
        return self.run.source

    @property
    def target(self) -> str | None:
        return self.run.target

    @property
    def options(self) -> RunOptions:
        return self.run.options

    @property
    def remote(self) -> str:
        return self.repo.remote

    @property
    def base(self) -> str:
        return self.options.base or self.repo.main_branch

    @property
    def strategy(self) -> MergeStrategy:
        return self.options.strategy or self.scenario.default_strategy

    @property
    def step_timeout(self) -> float:
        if self.options.step_timeout is not None:
            return self.options.step_timeout
        return self.settings.step_timeout

    @property
    def auto_commit(self) -> bool:
        if self.options.auto_commit is not None:
            return self.options.auto_commit
        return self.settings.auto_commit

    @property
    def auto_repair_upstream(self) -> bool:
        if self.options.auto_repair_upstream is not None:
            return self.options.auto_repair_upstream
        return self.settings.auto_repair_upstream

    def name(self, role: str) -> str | None:
        return {"source": self.source, "target": self.target,
                "base": self.base}[role]

    def commit_message(self) -> str:
        if self.options.commit_message:
            return self.options.commit_message
        return self.settings.auto_commit_message.format(
            scenario=self.scenario.name,
            branch=self.tracker.state.current_branch or "HEAD",
        )

    def involved(self) -> list[str]:
        names = [self.source, self.target]
        if self.scenario.name == "derive-and-integrate" or (
            self.scenario.name == "squash-before-merge" and not self.target
        ):
            names.append(self.base)
        return list(dict.fromkeys(n for n in names if n))

    # Branch lookups against the tracker's last refresh

    def local(self, name: str | None) -> Branch | None:
        if not name:
            return None
        return self.tracker.state.branches.get(name)

    def _remote_ref(self, name: str) -> str | None:
        refs = [r for r in self.tracker.state.remote_refs if r.name == name]
        for ref in refs:
            if ref.remote == self.remote:
                return str(ref)
        return str(refs[0]) if refs else None

    def exists(self, name: str | None) -> bool:
        return self.local(name) is not None or (
            name is not None and self._remote_ref(name) is not None
        )

    def ref(self, name: str) -> str:
        """Local branch if present, else its remote-tracking ref."""
        if self.local(name) is not None:
            return name
        return self._remote_ref(name) or name

    def published_ref(self, name: str) -> str:
        """Where ``name`` lives on the remote: upstream, else remote ref."""
        branch = self.local(name)
        if branch is not None and branch.upstream and not branch.upstream_gone:
            return str(branch.upstream)
        return self._remote_ref(name) or name

    # Operations

    def start_operation(
        self,
        kind: OperationKind,
        source: str | None,
        target: str,
        pre_tip: str = "",
    ) -> MergeOperation:
        """Begin a MergeOperation, closing out whatever preceded it."""
        previous = self.run.operation
        if previous is not None and not previous.finished:
            if previous.status in (MergeStatus.COMMITTED,
                                   MergeStatus.PUSH_FAILED):
                previous.transition(MergeStatus.COMPLETED)
            else:
                previous.transition(MergeStatus.ABORTED)
        self.run.archive_operation()

        operation = MergeOperation(
            source=source, target=target, strategy=self.strategy,
            kind=kind, pre_tip=pre_tip,
        )
        operation.transition(MergeStatus.IN_PROGRESS)
        self.run.operation = operation
        logger.debug("Operation started", operation=operation.operation_id,
                     kind=kind.value, source=source, target=target)
        return operation

    def _step_operation(self, step: Step) -> MergeOperation:
        kind = step.operation
        target = self.source if kind is OperationKind.SQUASH else self.target
        if kind is OperationKind.MERGE:
            # Each strategy leaves a different in-progress state to abort
            kind = {
                MergeStrategy.REBASE: OperationKind.REBASE,
                MergeStrategy.SQUASH: OperationKind.SQUASH,
            }.get(self.strategy, kind)
        branch = self.local(target)
        operation = self.start_operation(
            kind, source=self.source, target=target,
            pre_tip=branch.tip if branch else "",
        )
        if self.source and target != self.source:
            operation.source_tip = self.tracker.tip(self.ref(self.source))
        return operation

    def awaiting_proposal(self) -> MergeOperation | None:
        operation = self.run.operation
        if (
            operation is not None
            and operation.kind is OperationKind.PROPOSAL
            and operation.status is MergeStatus.IN_PROGRESS
        ):
            return operation
        return None

    def settle_proposal(self, merge_commit: str | None) -> None:
        """Record the platform-side integration as committed."""
        operation = self.awaiting_proposal()
        if operation is None:
            return
        operation.merge_commit = merge_commit or self.tracker.tip(
            self.published_ref(operation.target)
        )
        operation.transition(MergeStatus.COMMITTED)

    def finish_operation(self) -> None:
        """Complete a committed operation and archive it."""
        operation = self.run.operation
        if operation is not None and operation.status in (
            MergeStatus.COMMITTED, MergeStatus.PUSH_FAILED
        ):
            operation.transition(MergeStatus.COMPLETED)
        self.run.archive_operation()

    def repair(self, mismatch, action=None) -> str:
        """Repair an upstream mismatch and follow a local rename. Blocking."""
        repaired = self.resolver.repair(mismatch, action)
        if repaired != mismatch.branch:
            run = self.run
            if run.source == mismatch.branch:
                run.source = repaired
            if run.target == mismatch.branch:
                run.target = repaired
            if run.options.base == mismatch.branch:
                run.options.base = repaired
            logger.info("Run follows renamed branch", old=mismatch.branch,
                        new=repaired)
        self.run.mismatch = None
        return repaired

    # Drift

    def record_tips(self) -> None:
        self.run.observed_tips = {
            name: branch.tip
            for name in self.involved()
            if (branch := self.local(name)) is not None
        }

    def check_drift(self) -> None:
        """Warn when a branch moved since this run last looked at it."""
        for name, tip in self.run.observed_tips.items():
            branch = self.local(name)
            current = branch.tip if branch else None
            if current != tip:
                logger.warn(
                    "Branch changed outside this run", branch=name,
                    expected=tip[:12], actual=(current or "<deleted>")[:12],
                )

    # Execution

    async def offload(self, fn, *args) -> Any:
        """Run blocking repository work under the step timeout.

        A thread cannot be interrupted, so a worker that outlives its
        timeout is parked in ``pending`` until it returns. The run is
        saved again then, with whatever state the step reached.
        """
        worker = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.wait_for(
                asyncio.shield(worker), timeout=self.step_timeout
            )
        except asyncio.TimeoutError:
            self._park(worker)
            raise BackendUnavailable(
                f"Step {self.run.step_index} of {self.run.scenario} timed "
                f"out after {self.step_timeout}s",
                step=self.run.step_index,
            ) from None

    def _park(self, worker: asyncio.Future) -> None:
        run_id = self.run.run_id
        self.pending[run_id] = worker

        def finished(done: asyncio.Future) -> None:
            error = None if done.cancelled() else done.exception()
            if error is not None:
                logger.warn("Timed-out step failed", run=run_id,
                            error=str(error))
            else:
                logger.info("Timed-out step finished", run=run_id)
            try:
                self.save()
            finally:
                if self.pending.get(run_id) is done:
                    del self.pending[run_id]

        worker.add_done_callback(finished)

    def perform(self, step: Step) -> StepOutcome:
        """Check, execute and interpret one step. Blocking."""
        logger.debug("Step", step=step.name, primitive=step.primitive,
                     mutating=step.mutating)
        with self.tracker.lock:
            self.tracker.refresh()
            self.check_drift()

            if step.satisfied is not None and step.satisfied(self):
                logger.info(f"Skipping {step.name}: already satisfied")
                self.run.skipped_steps.append(step.name)
                if step.handoff:
                    self.settle_proposal(None)
                self.record_tips()
                return StepOutcome.SKIPPED

            required = step.precondition
            if required is not None and not required(self):
                reason = (required.__doc__ or "precondition not met").strip()
                raise PreconditionFailed(
                    f"Cannot run {step.name}: {reason}",
                    step=self.run.step_index,
                )

            current = self.tracker.state.current_branch
            current_branch = self.local(current)
            pre_tip = current_branch.tip if current_branch else ""

        if step.operation is not None:
            self._step_operation(step)

        result = step.action(self)
        operation = self.run.operation

        if result is not None and result.outcome is Outcome.CONFLICT:
            if (
                operation is None
                or operation.status is not MergeStatus.IN_PROGRESS
            ):
                # A pull merging its upstream can conflict too
                upstream = current_branch.upstream if current_branch \
                    else None
                operation = self.start_operation(
                    OperationKind.MERGE,
                    source=str(upstream) if upstream else None,
                    target=current or "HEAD",
                    pre_tip=pre_tip,
                )
            self.conflicts.detect(result, operation)
            return StepOutcome.CONFLICT

        if result is not None and result.outcome is Outcome.FAILURE:
            if (
                step.completes_operation
                and operation is not None
                and operation.status is MergeStatus.COMMITTED
            ):
                operation.transition(MergeStatus.PUSH_FAILED)
            if step.operation is not None and operation is not None:
                operation.transition(MergeStatus.ABORTED)
                self.run.archive_operation()
            raise_for_failure(result, step=self.run.step_index)

        if step.handoff:
            return StepOutcome.HANDOFF

        if step.operation is not None and operation is not None:
            operation.transition(MergeStatus.COMMITTED)
            operation.merge_commit = self.tracker.tip("HEAD")
        if step.completes_operation:
            self.finish_operation()

        with self.tracker.lock:
            self.tracker.refresh()
            self.record_tips()
        return StepOutcome.DONE

    def conclude(self) -> StepOutcome:
        """Finish a conflict-blocked operation once every path is resolved."""
        self.tracker.refresh()
        fresh = self.conflicts.conclude(self.run.operation)
        if fresh is not None:
            return StepOutcome.CONFLICT
        with self.tracker.lock:
            self.tracker.refresh()
            self.record_tips()
        return StepOutcome.DONE

    def emit(self, event: ProposalRequested) -> None:
        for listener in list(self.listeners):
            listener(event)

    def save(self) -> None:
        self.store.save(self.run)


__all__ = ["RunSession", "StepOutcome"]
