"""Status command - show runs and tracked branches."""

from pydantic import BaseModel, Field

from branchwarden.command.report import EXIT_FAILED, EXIT_OK, report
from branchwarden.core.errors import BranchwardenError
from branchwarden.core.log import logger


class StatusCommand(BaseModel):
    """Show one run, all unfinished runs, or the tracked branches."""

    run_id: str | None = Field(
        default=None,
        alias="run-id",
        description="Show only this run",
    )
    all: bool = Field(
        default=False,
        description="Include completed and aborted runs",
    )
    branches: bool = Field(
        default=False,
        description="Show branches, upstreams and ahead/behind counts",
    )

    model_config = {"populate_by_name": True}

    async def run_workflow(self, state: "State") -> int:
        from branchwarden.workflow.orchestrator import build_orchestrator

        orchestrator = build_orchestrator(state.config)
        try:
            if self.run_id:
                return report(orchestrator.get_run(self.run_id))

            if self.branches:
                orchestrator.tracker.refresh()
                for branch in orchestrator.tracker.list_branches(
                    include_remote=True
                ):
                    self._show_branch(branch)

            runs = [
                run for run in orchestrator.list_runs()
                if self.all or not run.status.terminal
            ]
            if not runs:
                logger.info("No runs")
            for run in runs:
                logger.info(
                    "{run_id} {scenario} {source} -> {target}: {status}",
                    run_id=run.run_id, scenario=run.scenario,
                    source=run.source or "-", target=run.target or "-",
                    status=run.status.value,
                )
        except BranchwardenError as e:
            logger.error(str(e))
            return EXIT_FAILED
        return EXIT_OK

    @staticmethod
    def _show_branch(branch) -> None:
        if not branch.exists_locally:
            logger.info(f"  {branch.remote}/{branch.name}")
            return
        tracking = ""
        if branch.upstream:
            tracking = f" [{branch.upstream}"
            if branch.upstream_gone:
                tracking += ": gone"
            elif branch.ahead or branch.behind:
                tracking += f": ahead {branch.ahead}, behind {branch.behind}"
            tracking += "]"
        dirty = " (dirty)" if branch.dirty else ""
        logger.info(f"  {branch.name}{tracking}{dirty}")
