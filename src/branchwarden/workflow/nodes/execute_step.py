"""ExecuteStep node - run the scenario step at the run's step index."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from branchwarden.core.log import logger
from branchwarden.state.merge import MergeStatus
from branchwarden.state.run import RunStatus, WorkflowRun
from branchwarden.workflow.events import ProposalRequested
from branchwarden.workflow.session import RunSession, StepOutcome


def cancel_run(session: RunSession) -> WorkflowRun:
    """Abort a run that has no outstanding conflict."""
    run = session.run
    operation = run.operation
    if operation is not None and operation.status in (
        MergeStatus.PENDING, MergeStatus.IN_PROGRESS
    ):
        operation.transition(MergeStatus.ABORTED)
        run.archive_operation()
    run.status = RunStatus.ABORTED
    session.save()
    session.store.release(run.lock_key, run.run_id)
    logger.info("Run cancelled", run=run.run_id, step=run.step_index)
    return run


@dataclass
class ExecuteStep(BaseNode[RunSession, None, WorkflowRun]):
    """Execute one step, then loop, pause or finalize."""

    async def run(
        self, ctx: GraphRunContext[RunSession]
    ) -> "ExecuteStep | Finalize | End[WorkflowRun]":
        from branchwarden.workflow.nodes.finalize import Finalize

        session = ctx.state
        run = session.run
        steps = session.scenario.steps

        if session.cancel_requested:
            return End(cancel_run(session))
        if run.step_index >= len(steps):
            return Finalize()

        step = steps[run.step_index]
        with logger.span(
            "{scenario} step {index}: {step}",
            scenario=run.scenario, index=run.step_index, step=step.name,
        ):
            outcome = await session.offload(session.perform, step)

        if outcome is StepOutcome.CONFLICT:
            run.pause(RunStatus.CONFLICT_BLOCKED)
            session.save()
            logger.warn(
                "Run blocked on conflicts", run=run.run_id,
                paths=run.operation.conflicts.paths,
            )
            return End(run)

        if outcome is StepOutcome.HANDOFF:
            run.pause(RunStatus.AWAITING_PROPOSAL)
            session.save()
            session.emit(ProposalRequested(
                run_id=run.run_id, source=run.source, target=run.target,
            ))
            return End(run)

        run.step_index += 1
        session.save()
        return ExecuteStep()
