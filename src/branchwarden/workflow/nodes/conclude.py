"""ConcludeIntegration node - commit a resolved conflict and move on."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from branchwarden.core.log import logger
from branchwarden.state.run import RunStatus, WorkflowRun
from branchwarden.workflow.session import RunSession, StepOutcome


@dataclass
class ConcludeIntegration(BaseNode[RunSession, None, WorkflowRun]):
    async def run(
        self, ctx: GraphRunContext[RunSession]
    ) -> "ExecuteStep | End[WorkflowRun]":
        from branchwarden.workflow.nodes.execute_step import ExecuteStep

        session = ctx.state
        run = session.run
        run.status = RunStatus.RUNNING
        outcome = await session.offload(session.conclude)

        if outcome is StepOutcome.CONFLICT:
            # A rebase stopped again on its next commit
            run.pause(RunStatus.CONFLICT_BLOCKED)
            session.save()
            logger.warn("Further conflicts", run=run.run_id,
                        paths=run.operation.conflicts.paths)
            return End(run)

        logger.info("Conflicts resolved and committed", run=run.run_id,
                    commit=run.operation.merge_commit)
        run.step_index += 1
        session.save()
        return ExecuteStep()
