"""Shared reporting for CLI commands."""

from branchwarden.core.log import logger
from branchwarden.state.run import RunStatus, WorkflowRun

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PAUSED = 2


def exit_code(run: WorkflowRun) -> int:
    if run.status.terminal:
        return EXIT_OK
    if run.status.paused:
        return EXIT_PAUSED
    return EXIT_FAILED


def report(run: WorkflowRun) -> int:
    """Log what the caller needs to know about ``run``; return exit code."""
    logger.info(
        "Run {run_id}: {scenario} is {status} at step {step}",
        run_id=run.run_id, scenario=run.scenario,
        status=run.status.value, step=run.step_index,
    )
    if run.status is RunStatus.CONFLICT_BLOCKED and run.operation:
        for path in run.operation.conflicts.unresolved:
            logger.warn(f"Unresolved: {path}")
        logger.info(
            f"Resolve the files, then: branchwarden resolve {run.run_id} "
            f"<path>..."
        )
    elif run.status is RunStatus.UPSTREAM_MISMATCH and run.mismatch:
        logger.warn(run.mismatch.describe())
        logger.info(
            f"Repair with: branchwarden resume {run.run_id} "
            f"--repair {run.mismatch.remediation.value}"
        )
    elif run.status is RunStatus.AWAITING_PROPOSAL:
        logger.info(
            f"Integrate {run.source} into {run.target} on the hosting "
            f"platform, then: branchwarden resume {run.run_id} "
            f"--proposal-merged"
        )
    elif run.status is RunStatus.FAILED:
        logger.error(f"Failed at step {run.failed_step}: {run.last_error}")
    return exit_code(run)
