"""Resolve command - mark conflicted paths resolved."""

from pydantic import BaseModel, Field
from pydantic_settings import CliPositionalArg

from branchwarden.command.report import EXIT_FAILED, report
from branchwarden.core.errors import BranchwardenError
from branchwarden.core.log import logger


class ResolveCommand(BaseModel):
    """Mark conflicted paths as resolved.

    Once every path of the blocked operation is resolved the run
    resumes, unless --no-resume is given.
    """

    run_id: CliPositionalArg[str] = Field(description="Conflict-blocked run")
    paths: CliPositionalArg[list[str]] = Field(
        description="Paths whose conflicts were resolved",
    )
    resume: bool = Field(
        default=True,
        description="Resume the run once nothing is left unresolved",
    )

    async def run_workflow(self, state: "State") -> int:
        from branchwarden.workflow.orchestrator import build_orchestrator

        orchestrator = build_orchestrator(state.config)
        try:
            for path in self.paths:
                run = await orchestrator.mark_resolved(self.run_id, path)
        except KeyError as e:
            logger.error(f"Not a conflicted path of {self.run_id}: {e}")
            return EXIT_FAILED
        except BranchwardenError as e:
            logger.error(str(e))
            return EXIT_FAILED

        unresolved = run.operation.conflicts.unresolved
        if unresolved or not self.resume:
            return report(run)
        try:
            run = await orchestrator.resume(self.run_id)
        except BranchwardenError as e:
            logger.error(f"Resume of {self.run_id} failed: {e}")
            return EXIT_FAILED
        return report(run)
