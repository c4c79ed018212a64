"""Workflow Orchestrator: the public API for running scenarios.

A run moves through the graph until it completes, pauses or fails::

    orchestrator = build_orchestrator(state.config)
    run = await orchestrator.run_scenario("sync-with-main", None, "feature")
    if run.status is RunStatus.CONFLICT_BLOCKED:
        ...  # resolve files, then
        await orchestrator.mark_resolved(run.run_id, "src/app.py")
        run = await orchestrator.resume(run.run_id)

Pauses (conflicts, upstream mismatches, proposal hand-offs) return
the run. Hard failures mark the run Failed at its current step,
persist it and re-raise, so a later resume() continues from there.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from branchwarden.core.config import Config, OrchestratorConfig, RepoConfig
from branchwarden.core.errors import OperationInProgress, RunNotFound
from branchwarden.core.log import logger
from branchwarden.git.backend import GitGateway
from branchwarden.git.conflict import ConflictHandler, raise_for_failure
from branchwarden.git.gateway import ExecutionGateway
from branchwarden.git.tracker import RepositoryStateTracker
from branchwarden.git.upstream import UpstreamResolver
from branchwarden.state.merge import MergeStatus, OperationKind
from branchwarden.state.run import (
    Remediation,
    RunOptions,
    RunStatus,
    WorkflowRun,
)
from branchwarden.workflow.events import (
    Listener,
    ProposalCompleted,
    ProposalRequested,
)
from branchwarden.workflow.graph import create_workflow
from branchwarden.workflow.nodes import Prepare
from branchwarden.workflow.nodes.execute_step import cancel_run
from branchwarden.workflow.scenarios import get_scenario
from branchwarden.workflow.session import RunSession
from branchwarden.workflow.store import RunStore, lock_key


class Orchestrator:
    def __init__(
        self,
        gateway: ExecutionGateway,
        store: RunStore | None = None,
        settings: OrchestratorConfig | None = None,
        repo: RepoConfig | None = None,
    ):
        self.gateway = gateway
        self.settings = settings or OrchestratorConfig()
        self.repo = repo or RepoConfig()
        self.store = store or RunStore(self.settings.state_dir)
        self.tracker = RepositoryStateTracker(gateway)
        self.conflicts = ConflictHandler(gateway, self.tracker)
        self.listeners: list[Listener] = [self._log_proposal]
        self._active: dict[str, RunSession] = {}
        # Step workers that outlived their timeout, by run id
        self._pending: dict[str, asyncio.Future] = {}
        self._workflow = create_workflow()

    @staticmethod
    def _log_proposal(event: ProposalRequested) -> None:
        logger.info(
            "Proposal requested: integrate {source} into {target}",
            source=event.source, target=event.target, run=event.run_id,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a ProposalRequested listener; returns an unsubscriber."""
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def _session(self, run: WorkflowRun) -> RunSession:
        policy = run.options.remediation or self.settings.remediation
        return RunSession(
            run=run,
            scenario=get_scenario(run.scenario),
            gateway=self.gateway,
            tracker=self.tracker,
            resolver=UpstreamResolver(self.tracker, self.gateway, policy),
            conflicts=self.conflicts,
            store=self.store,
            settings=self.settings,
            repo=self.repo,
            listeners=self.listeners,
            pending=self._pending,
        )

    async def _drive(self, session: RunSession) -> WorkflowRun:
        run = session.run
        self._active[run.run_id] = session
        try:
            async with self._workflow.iter(Prepare(), state=session) as graph:
                async for _node in graph:
                    pass
        except Exception as e:
            run.status = RunStatus.FAILED
            run.failed_step = run.step_index
            run.last_error = f"{type(e).__name__}: {e}"
            session.save()
            logger.error(
                "Run failed", run=run.run_id, scenario=run.scenario,
                step=run.step_index, error=run.last_error,
            )
            raise
        finally:
            self._active.pop(run.run_id, None)
        return run

    def _ensure_idle(self, run_id: str) -> None:
        if run_id in self._active:
            raise OperationInProgress(f"Run {run_id} is executing")
        if run_id in self._pending:
            raise OperationInProgress(
                f"Run {run_id} still has a timed-out step running"
            )

    async def wait_idle(self, run_id: str) -> None:
        """Wait for a timed-out step of ``run_id`` to finish, if any."""
        worker = self._pending.get(run_id)
        if worker is not None:
            await asyncio.wait([worker])
            # let the completion callback persist the run
            await asyncio.sleep(0)

    async def _continue(self, session: RunSession) -> WorkflowRun:
        run = session.run
        self._ensure_idle(run.run_id)
        self.store.acquire(run.lock_key, run.run_id)
        return await self._drive(session)

    # ------------------------------------------------------------

    async def run_scenario(
        self,
        name: str,
        source: str | None = None,
        target: str | None = None,
        options: RunOptions | None = None,
    ) -> WorkflowRun:
        """Start a scenario; returns the run once completed or paused.

        Raises:
            UnknownScenario: name not registered
            ForcePushRejected: squash without the not-shared assertion
            OperationInProgress: pair locked, or conflicts outstanding
        """
        scenario = get_scenario(name)
        options = options or RunOptions()
        if name == "sync-with-main" and not source:
            source = self.repo.main_branch
        scenario.validate(source, target, options)

        # Everything up to the first await runs without yielding, so
        # concurrent callers contend for the lock in order.
        if self._pending:
            raise OperationInProgress(
                f"Run {next(iter(self._pending))} still has a timed-out "
                f"step running in the working tree"
            )
        blocked = self.store.conflict_blocked()
        if blocked:
            raise OperationInProgress(
                f"Run {blocked[0].run_id} has unresolved conflicts in the "
                f"working tree; resolve or abort it first"
            )
        run = WorkflowRun(
            scenario=name, source=source, target=target, options=options,
            lock_key=lock_key(source, target),
        )
        self.store.save(run)
        try:
            self.store.acquire(run.lock_key, run.run_id)
        except OperationInProgress:
            self.store.delete(run.run_id)
            raise

        logger.info("Starting run", run=run.run_id, scenario=name,
                    source=source, target=target)
        return await self._drive(self._session(run))

    async def resume(self, run_id: str) -> WorkflowRun:
        """Continue a paused or failed run from its persisted step."""
        run = self.store.load(run_id)
        if run.status.terminal:
            return run
        logger.info("Resuming run", run=run_id, status=run.status.value,
                    step=run.step_index)
        return await self._continue(self._session(run))

    async def complete_proposal(self, event: ProposalCompleted) -> WorkflowRun:
        """Resume the run waiting on ``event.source`` -> ``event.target``."""
        run = self.store.find_awaiting(event.source, event.target)
        if run is None:
            raise RunNotFound(
                f"No run awaits a proposal of {event.source} into "
                f"{event.target}"
            )
        self._ensure_idle(run.run_id)
        session = self._session(run)
        if event.merge_commit is None:
            # The platform's merge commit is only visible after a fetch
            raise_for_failure(await session.offload(self.gateway.fetch))
        await session.offload(self.tracker.refresh)
        await session.offload(session.settle_proposal, event.merge_commit)
        run.step_index += 1
        session.save()
        logger.info("Proposal completed", run=run.run_id,
                    commit=run.operation.merge_commit)
        return await self._continue(session)

    async def mark_resolved(self, run_id: str, path: str) -> WorkflowRun:
        """Mark one conflicted path resolved. KeyError for unknown paths."""
        run = self.store.load(run_id)
        operation = run.operation
        if operation is None or operation.conflicts is None:
            raise KeyError(path)
        self.conflicts.mark_resolved(operation.conflicts, path)
        self.store.save(run)
        remaining = operation.conflicts.unresolved
        logger.info("Conflict marked resolved", run=run_id, path=path,
                    remaining=len(remaining))
        return run

    async def abort(self, run_id: str) -> WorkflowRun:
        """Abandon a run, restoring the pre-integration tip if needed."""
        run = self.store.load(run_id)
        if run.status.terminal:
            return run
        self._ensure_idle(run_id)
        session = self._session(run)
        operation = run.operation
        if operation is not None:
            in_tree = operation.status is MergeStatus.CONFLICT_BLOCKED or (
                operation.status is MergeStatus.IN_PROGRESS
                and operation.kind is not OperationKind.PROPOSAL
            )
            if in_tree:
                await session.offload(self.conflicts.abort, operation)
            elif operation.status in (MergeStatus.PENDING,
                                      MergeStatus.IN_PROGRESS):
                operation.transition(MergeStatus.ABORTED)
            run.archive_operation()
        run.status = RunStatus.ABORTED
        session.save()
        self.store.release(run.lock_key, run.run_id)
        logger.info("Run aborted", run=run_id)
        return run

    async def cancel(self, run_id: str) -> WorkflowRun:
        """Stop a run between steps.

        An executing run stops before its next step. A paused run is
        aborted at once unless conflicts are outstanding, in which
        case OperationInProgress is raised.
        """
        session = self._active.get(run_id)
        if session is not None:
            session.cancel_requested = True
            return session.run
        self._ensure_idle(run_id)
        run = self.store.load(run_id)
        if run.status.terminal:
            return run
        operation = run.operation
        blocked = (
            operation is not None
            and operation.status is MergeStatus.CONFLICT_BLOCKED
        )
        if blocked:
            raise OperationInProgress(
                f"Run {run_id} has outstanding conflicts; resolve them "
                f"or abort the run"
            )
        return cancel_run(self._session(run))

    async def repair_upstream(
        self, run_id: str, action: Remediation | None = None
    ) -> WorkflowRun:
        """Repair the mismatch a run paused on, then resume it."""
        run = self.store.load(run_id)
        if run.status is not RunStatus.UPSTREAM_MISMATCH or not run.mismatch:
            raise ValueError(
                f"Run {run_id} is not paused on an upstream mismatch"
            )
        self._ensure_idle(run_id)
        session = self._session(run)
        await session.offload(self.tracker.refresh)
        await session.offload(session.repair, run.mismatch, action)
        session.save()
        return await self._continue(session)

    def get_run(self, run_id: str) -> WorkflowRun:
        session = self._active.get(run_id)
        if session is not None:
            return session.run
        return self.store.load(run_id)

    def list_runs(self, status: RunStatus | None = None) -> list[WorkflowRun]:
        runs = self.store.list()
        if status is not None:
            runs = [run for run in runs if run.status is status]
        return runs


def build_orchestrator(config: Config) -> Orchestrator:
    """Orchestrator over the git CLI, configured from ``config``."""
    return Orchestrator(
        gateway=GitGateway.from_config(config),
        store=RunStore(config.orchestrator.state_dir),
        settings=config.orchestrator,
        repo=config.repo,
    )


__all__ = ["Orchestrator", "build_orchestrator"]
