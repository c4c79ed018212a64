"""Abort command - abandon a run and restore the pre-merge tip."""

from pydantic import BaseModel, Field
from pydantic_settings import CliPositionalArg

from branchwarden.command.report import EXIT_FAILED, report
from branchwarden.core.errors import BranchwardenError
from branchwarden.core.log import logger


class AbortCommand(BaseModel):
    """Abort a run.

    An in-progress merge, rebase or revert is aborted through git and
    the branch tip is checked against the tip recorded before the
    integration started. The branch pair is released.
    """

    run_id: CliPositionalArg[str] = Field(description="Run to abort")

    async def run_workflow(self, state: "State") -> int:
        from branchwarden.workflow.orchestrator import build_orchestrator

        orchestrator = build_orchestrator(state.config)
        try:
            run = await orchestrator.abort(self.run_id)
        except BranchwardenError as e:
            logger.error(f"Abort of {self.run_id} failed: {e}")
            return EXIT_FAILED
        return report(run)
