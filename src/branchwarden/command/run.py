"""Run command - start a workflow scenario."""

from pydantic import BaseModel, Field
from pydantic_settings import CliPositionalArg

from branchwarden.command.report import EXIT_FAILED, report
from branchwarden.core.errors import BranchwardenError
from branchwarden.core.log import logger
from branchwarden.state.merge import MergeStrategy
from branchwarden.state.run import Remediation, RunOptions


class RunCommand(BaseModel):
    """Start a scenario: sync-with-main, branch-to-branch,
    derive-and-integrate, revert-integration or squash-before-merge.

    Exit code 0 when the run completes, 2 when it pauses (conflicts,
    upstream mismatch, waiting for a proposal), 1 on failure.
    """

    scenario: CliPositionalArg[str] = Field(
        description="Scenario name",
    )
    source: str | None = Field(
        default=None,
        description="Source branch (sync-with-main: defaults to the main "
                    "branch)",
    )
    target: str | None = Field(default=None, description="Target branch")
    strategy: MergeStrategy | None = Field(
        default=None,
        description="Merge strategy override",
    )
    not_shared: bool = Field(
        default=False,
        alias="not-shared",
        description="Assert nobody else builds on the branch (required "
                    "to force-push after a squash)",
    )
    step_timeout: float | None = Field(
        default=None,
        alias="step-timeout",
        description="Seconds per step before it counts as unavailable",
    )
    auto_commit: bool | None = Field(
        default=None,
        alias="auto-commit",
        description="Commit a dirty working tree instead of rejecting it",
    )
    message: str | None = Field(
        default=None,
        description="Consolidated commit message (squash-before-merge)",
    )
    base: str | None = Field(
        default=None,
        description="Branch to derive the target from "
                    "(derive-and-integrate)",
    )
    operation_id: str | None = Field(
        default=None,
        alias="operation-id",
        description="Integration to revert (revert-integration)",
    )
    mainline_parent: int = Field(
        default=1,
        alias="mainline-parent",
        description="Parent to keep when reverting a merge commit",
    )
    repair: Remediation | None = Field(
        default=None,
        description="Repair upstream mismatches with this remediation "
                    "instead of pausing",
    )

    model_config = {"populate_by_name": True}

    def options(self) -> RunOptions:
        return RunOptions(
            strategy=self.strategy,
            not_shared=self.not_shared,
            step_timeout=self.step_timeout,
            auto_commit=self.auto_commit,
            squash_message=self.message,
            base=self.base,
            operation_id=self.operation_id,
            mainline_parent=self.mainline_parent,
            auto_repair_upstream=True if self.repair else None,
            remediation=self.repair,
        )

    async def run_workflow(self, state: "State") -> int:
        """Run the scenario.

        Args:
            state: State instance with config loaded

        Returns:
            Exit code (0=completed, 2=paused, 1=failed)
        """
        from branchwarden.workflow.orchestrator import build_orchestrator

        orchestrator = build_orchestrator(state.config)
        try:
            run = await orchestrator.run_scenario(
                self.scenario, self.source, self.target, self.options()
            )
        except BranchwardenError as e:
            logger.error(f"{self.scenario} failed: {e}")
            return EXIT_FAILED
        return report(run)
