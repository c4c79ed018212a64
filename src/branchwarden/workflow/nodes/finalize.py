"""Finalize node - complete the operation and release the branch pair."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from branchwarden.core.log import logger
from branchwarden.state.run import RunStatus, WorkflowRun
from branchwarden.workflow.session import RunSession


@dataclass
class Finalize(BaseNode[RunSession, None, WorkflowRun]):
    async def run(
        self, ctx: GraphRunContext[RunSession]
    ) -> End[WorkflowRun]:
        session = ctx.state
        run = session.run

        session.finish_operation()
        run.status = RunStatus.COMPLETED
        run.failed_step = None
        run.last_error = None
        session.save()
        session.store.release(run.lock_key, run.run_id)

        logger.info(
            "Run completed", run=run.run_id, scenario=run.scenario,
            skipped=len(run.skipped_steps),
        )
        return End(run)
