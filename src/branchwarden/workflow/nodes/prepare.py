"""Prepare node - establish a known starting state before any step runs."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from branchwarden.core.errors import OperationInProgress
from branchwarden.core.log import logger
from branchwarden.state.merge import MergeStatus
from branchwarden.state.run import (
    Remediation,
    RunStatus,
    UpstreamMismatch,
    WorkflowRun,
)
from branchwarden.workflow.session import RunSession


def _diagnose(session: RunSession) -> UpstreamMismatch | None:
    for name in session.involved():
        if session.local(name) is None:
            continue
        mismatch = session.resolver.diagnose(name)
        if mismatch is not None:
            return mismatch
    return None


@dataclass
class Prepare(BaseNode[RunSession, None, WorkflowRun]):
    """Refresh repository state and check upstream tracking.

    Also the entry point on resume: a conflict-blocked run either
    stays blocked or moves on to ConcludeIntegration.
    """

    async def run(
        self, ctx: GraphRunContext[RunSession]
    ) -> "ExecuteStep | ConcludeIntegration | End[WorkflowRun]":
        from branchwarden.workflow.nodes.conclude import ConcludeIntegration
        from branchwarden.workflow.nodes.execute_step import ExecuteStep

        session = ctx.state
        run = session.run
        await session.offload(session.tracker.refresh)

        operation = run.operation
        if (
            operation is not None
            and operation.status is MergeStatus.CONFLICT_BLOCKED
        ):
            conflicts = operation.conflicts
            if not session.conflicts.all_resolved(conflicts):
                if run.status is not RunStatus.CONFLICT_BLOCKED:
                    # a timed-out step hit the conflict after the run failed
                    run.pause(RunStatus.CONFLICT_BLOCKED)
                    session.save()
                logger.info(
                    "Conflicts still unresolved", run=run.run_id,
                    paths=conflicts.unresolved,
                )
                return End(run)
            return ConcludeIntegration()

        fresh = run.status is RunStatus.PENDING and run.step_index == 0
        in_tree = session.tracker.state.operation
        if fresh and in_tree is not None:
            raise OperationInProgress(
                f"A {in_tree.value} is in progress in the working tree; "
                f"resolve or abort it first"
            )

        run.status = RunStatus.RUNNING
        run.mismatch = None
        session.save()

        mismatch = await session.offload(_diagnose, session)
        if mismatch is None:
            return ExecuteStep()

        if (
            session.auto_repair_upstream
            and mismatch.remediation is not Remediation.MANUAL
        ):
            await session.offload(session.repair, mismatch)
            session.save()
            return ExecuteStep()

        run.mismatch = mismatch
        run.pause(RunStatus.UPSTREAM_MISMATCH)
        session.save()
        logger.warn(
            "Run paused on upstream mismatch", run=run.run_id,
            detail=mismatch.describe(),
        )
        return End(run)
