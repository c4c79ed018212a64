"""Resume command - continue a paused or failed run."""

from pydantic import BaseModel, Field
from pydantic_settings import CliPositionalArg

from branchwarden.command.report import EXIT_FAILED, report
from branchwarden.core.errors import BranchwardenError
from branchwarden.core.log import logger
from branchwarden.state.run import Remediation, RunStatus
from branchwarden.workflow.events import ProposalCompleted


class ResumeCommand(BaseModel):
    """Continue a run from its persisted step.

    A run waiting on a proposal resumes once --proposal-merged says
    the hosting platform integrated it. A run paused on an upstream
    mismatch resumes after --repair applies a remediation.
    """

    run_id: CliPositionalArg[str] = Field(description="Run to resume")
    proposal_merged: bool = Field(
        default=False,
        alias="proposal-merged",
        description="The proposal this run waits on has been merged",
    )
    merge_commit: str | None = Field(
        default=None,
        alias="merge-commit",
        description="Commit the platform created for the proposal",
    )
    repair: Remediation | None = Field(
        default=None,
        description="Remediation for an upstream mismatch",
    )

    model_config = {"populate_by_name": True}

    async def run_workflow(self, state: "State") -> int:
        from branchwarden.workflow.orchestrator import build_orchestrator

        orchestrator = build_orchestrator(state.config)
        try:
            run = orchestrator.get_run(self.run_id)
            if (
                run.status is RunStatus.AWAITING_PROPOSAL
                and (self.proposal_merged or self.merge_commit)
                and run.operation is not None
            ):
                run = await orchestrator.complete_proposal(ProposalCompleted(
                    source=run.operation.source,
                    target=run.operation.target,
                    merge_commit=self.merge_commit,
                ))
            elif run.status is RunStatus.UPSTREAM_MISMATCH:
                run = await orchestrator.repair_upstream(
                    self.run_id, self.repair
                )
            else:
                run = await orchestrator.resume(self.run_id)
        except BranchwardenError as e:
            logger.error(f"Resume of {self.run_id} failed: {e}")
            return EXIT_FAILED
        return report(run)
