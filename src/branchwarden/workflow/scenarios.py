"""Workflow scenarios as immutable step templates.

Every scenario is a tuple of Steps interpreted by the same graph.
A Step names the gateway primitive it drives, an action performing
it and, usually, a ``satisfied`` predicate. When the predicate holds
against freshly refreshed repository state, the step is skipped;
that is what makes re-running or resuming a scenario safe.

Actions and predicates run in a worker thread and may only touch
the repository through the session's gateway and tracker.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from branchwarden.core.errors import (
    DirtyStateRejected,
    ForcePushRejected,
    IntegrationNotFound,
    UnknownScenario,
)
from branchwarden.core.log import logger
from branchwarden.core.result import ErrorKind, GatewayResult
from branchwarden.git.gateway import MUTATING_PRIMITIVES, SquashPlan
from branchwarden.state.merge import MergeStrategy, OperationKind
from branchwarden.state.run import RunOptions

if TYPE_CHECKING:
    from branchwarden.workflow.session import RunSession

Action = Callable[["RunSession"], GatewayResult | None]
Predicate = Callable[["RunSession"], bool]


@dataclass(frozen=True)
class Step:
    name: str
    primitive: str
    action: Action
    satisfied: Predicate | None = None
    # Must hold before the action runs; its docstring is the error text
    precondition: Predicate | None = None
    # Starts a MergeOperation of this kind before the action runs
    operation: OperationKind | None = None
    # Success moves the active operation from Committed to Completed
    completes_operation: bool = False
    # Pauses the run until ProposalCompleted arrives
    handoff: bool = False

    @property
    def mutating(self) -> bool:
        return self.primitive in MUTATING_PRIMITIVES


@dataclass(frozen=True)
class WorkflowScenario:
    name: str
    description: str
    steps: tuple[Step, ...]
    default_strategy: MergeStrategy = MergeStrategy.NO_FAST_FORWARD
    needs_source: bool = True
    needs_target: bool = True

    def validate(
        self, source: str | None, target: str | None, options: RunOptions
    ) -> None:
        """Reject bad invocations before any repository access."""
        if self.needs_source and not source:
            raise ValueError(f"{self.name} needs a source branch")
        if self.needs_target and not target:
            raise ValueError(f"{self.name} needs a target branch")


class SquashScenario(WorkflowScenario):
    def validate(self, source, target, options):
        super().validate(source, target, options)
        if not options.not_shared:
            raise ForcePushRejected(
                f"Squashing {source} rewrites published history; "
                f"assert the branch is not shared to force-push it"
            )
        if not (options.squash_message or "").strip():
            raise ValueError("squash-before-merge needs a squash message")


# ------------------------------------------------------------------
# Shared steps


def on_branch(role: str) -> Predicate:
    def check(session: RunSession) -> bool:
        return session.tracker.state.current_branch == session.name(role)

    check.__doc__ = f"the {role} branch must be checked out"
    return check


def local_branch(role: str) -> Predicate:
    def check(session: RunSession) -> bool:
        return session.local(session.name(role)) is not None

    check.__doc__ = f"the {role} branch must exist locally"
    return check


def _clean(session: RunSession) -> bool:
    return not session.tracker.state.dirty


def _snapshot(session: RunSession) -> GatewayResult:
    state = session.tracker.state
    if not session.auto_commit:
        raise DirtyStateRejected(
            f"Working tree on {state.current_branch} has uncommitted "
            f"changes and auto-commit is disabled"
        )
    message = session.commit_message()
    logger.info("Committing local changes", branch=state.current_branch)
    return session.gateway.commit(message)


def snapshot() -> Step:
    return Step("snapshot local changes", "commit", _snapshot,
                satisfied=_clean)


def _fetch(session: RunSession) -> GatewayResult:
    result = session.gateway.fetch(all_remotes=False)
    remote = session.tracker.state.remotes.get(session.remote)
    if remote is not None:
        remote.reachable = (
            result.error_kind is not ErrorKind.BACKEND_UNAVAILABLE
        )
    return result


def fetch() -> Step:
    return Step("fetch", "fetch", _fetch)


def checkout(role: str) -> Step:
    def action(session: RunSession) -> GatewayResult:
        return session.gateway.checkout(session.name(role))

    return Step(f"checkout {role}", "checkout", action,
                satisfied=on_branch(role))


def _pull(session: RunSession) -> GatewayResult:
    return session.gateway.pull()


def pull(role: str) -> Step:
    """Pull ``role``; runs only after checkout of the same role."""

    def up_to_date(session: RunSession) -> bool:
        branch = session.local(session.name(role))
        return branch is None or branch.behind == 0

    return Step(f"pull {role}", "pull", _pull, satisfied=up_to_date,
                precondition=on_branch(role))


def push(role: str, force: bool = False) -> Step:
    def action(session: RunSession) -> GatewayResult:
        name = session.name(role)
        branch = session.local(name)
        needs_upstream = (
            branch is None or branch.upstream is None or branch.upstream_gone
        )
        return session.gateway.push(
            name, set_upstream=needs_upstream, force=force
        )

    def published(session: RunSession) -> bool:
        branch = session.local(session.name(role))
        if branch is None or branch.upstream is None or branch.upstream_gone:
            return False
        if force:
            return branch.in_sync
        return branch.ahead == 0

    return Step(
        f"{'force-push' if force else 'push'} {role}", "push", action,
        satisfied=published, precondition=local_branch(role),
        completes_operation=True,
    )


def _propose(session: RunSession) -> None:
    source, target = session.source, session.target
    if session.awaiting_proposal() is None:
        session.start_operation(
            OperationKind.PROPOSAL, source=source, target=target,
            pre_tip=session.tracker.tip(session.published_ref(target)) or "",
        )
    logger.info("Waiting for proposal", source=source, target=target)


def _proposal_integrated(session: RunSession) -> bool:
    target_ref = session.published_ref(session.target)
    if not session.exists(session.target):
        return False
    return session.tracker.contains(target_ref, session.ref(session.source))


def propose() -> Step:
    return Step("propose source into target", "proposal", _propose,
                satisfied=_proposal_integrated, handoff=True)


# ------------------------------------------------------------------
# sync-with-main


def _skip_source_checkout(session: RunSession) -> bool:
    if session.tracker.state.current_branch == session.source:
        return True
    # Nothing to pull into source: no reason to switch to it
    source = session.local(session.source)
    return source is None or source.behind == 0


def _merge_source(session: RunSession) -> GatewayResult:
    return session.gateway.merge(
        session.ref(session.source), session.strategy
    )


def _target_contains_source(session: RunSession) -> bool:
    return session.tracker.contains(
        session.ref(session.target), session.ref(session.source)
    )


def _source_integrated(session: RunSession) -> bool:
    """Target holds source by ancestry or, since a squash merge leaves
    no ancestry behind, by a recorded integration of the same source
    commit that target still contains."""
    if _target_contains_source(session):
        return True
    source_tip = session.tracker.tip(session.ref(session.source))
    if source_tip is None:
        return False
    recorded = session.store.find_integration(
        session.source, session.target, source_tip
    )
    return recorded is not None and session.tracker.contains(
        session.ref(session.target), recorded.merge_commit
    )


SYNC_WITH_MAIN = WorkflowScenario(
    name="sync-with-main",
    description="Bring a working branch up to date with the main branch",
    steps=(
        snapshot(),
        fetch(),
        Step("checkout source", "checkout",
             lambda s: s.gateway.checkout(s.source),
             satisfied=_skip_source_checkout),
        pull("source"),
        checkout("target"),
        Step("merge source into target", "merge", _merge_source,
             satisfied=_source_integrated,
             precondition=on_branch("target"),
             operation=OperationKind.MERGE),
        push("target"),
    ),
)


# ------------------------------------------------------------------
# branch-to-branch


BRANCH_TO_BRANCH = WorkflowScenario(
    name="branch-to-branch",
    description="Publish source and integrate it into target by proposal",
    steps=(
        snapshot(),
        push("source"),
        propose(),
        fetch(),
        checkout("target"),
        pull("target"),
    ),
)


# ------------------------------------------------------------------
# derive-and-integrate


def _target_exists(session: RunSession) -> bool:
    return session.exists(session.target)


def _create_target(session: RunSession) -> GatewayResult:
    target = session.target
    if session.exists(target):
        # Only on the remote: check out a tracking branch
        return session.gateway.checkout(target)
    return session.gateway.checkout(
        target, create=True, start_point=session.ref(session.base)
    )


def _base_checked_out(session: RunSession) -> bool:
    return (
        _target_exists(session)
        or session.tracker.state.current_branch == session.base
    )


def _base_pulled(session: RunSession) -> bool:
    if _target_exists(session):
        return True
    base = session.local(session.base)
    return base is None or base.behind == 0


DERIVE_AND_INTEGRATE = WorkflowScenario(
    name="derive-and-integrate",
    description="Create target from a base branch, then integrate source",
    steps=(
        Step("checkout base", "checkout",
             lambda s: s.gateway.checkout(s.base),
             satisfied=_base_checked_out),
        Step("pull base", "pull", _pull, satisfied=_base_pulled,
             precondition=on_branch("base")),
        Step("create target from base", "checkout", _create_target,
             satisfied=lambda s: s.local(s.target) is not None),
        push("target"),
        propose(),
        fetch(),
        checkout("target"),
        pull("target"),
    ),
)


# ------------------------------------------------------------------
# revert-integration


def _locate_integration(session: RunSession) -> None:
    run = session.run
    target = session.target
    operation = session.store.find_operation(
        operation_id=run.options.operation_id,
        target=None if run.options.operation_id else target,
    )
    if operation is None:
        raise IntegrationNotFound(
            f"No completed integration into {target}"
            + (f" with id {run.options.operation_id}"
               if run.options.operation_id else "")
        )
    commit = operation.merge_commit
    if not commit:
        merges = session.tracker.merge_commits(
            session.ref(target), since=operation.created_at
        )
        if not merges:
            raise IntegrationNotFound(
                f"No merge commit on {target} since "
                f"{operation.created_at:%Y-%m-%d %H:%M:%S}"
            )
        commit = merges[0].sha
    run.revert_commit = commit
    if run.source is None:
        run.source = operation.source
    logger.info("Located integration", operation=operation.operation_id,
                commit=commit, target=target)


def _already_reverted(session: RunSession) -> bool:
    return session.tracker.find_revert(
        session.ref(session.target), session.run.revert_commit
    ) is not None


def _revert(session: RunSession) -> GatewayResult:
    return session.gateway.revert(
        session.run.revert_commit, session.options.mainline_parent
    )


REVERT_INTEGRATION = WorkflowScenario(
    name="revert-integration",
    description="Revert a previously completed integration into target",
    needs_source=False,
    steps=(
        Step("locate integration commit", "merge_commits",
             _locate_integration),
        checkout("target"),
        Step("revert integration", "revert", _revert,
             satisfied=_already_reverted,
             precondition=on_branch("target"),
             operation=OperationKind.REVERT),
        push("target"),
    ),
)


# ------------------------------------------------------------------
# squash-before-merge


def _unique_commits(session: RunSession) -> int:
    """Commits on source that the branch it will merge into lacks."""
    against = session.ref(session.target or session.base)
    ahead, _ = session.tracker.compare(session.ref(session.source), against)
    session.run.squash_count = ahead
    return ahead


def _squash(session: RunSession) -> GatewayResult:
    plan = SquashPlan(
        branch=session.source,
        count=session.run.squash_count,
        message=session.options.squash_message,
    )
    logger.info("Squashing", branch=plan.branch, commits=plan.count)
    return session.gateway.rebase_interactive(plan)


SQUASH_BEFORE_MERGE = SquashScenario(
    name="squash-before-merge",
    description="Fold a private branch's commits into one and force-push",
    needs_target=False,
    steps=(
        snapshot(),
        checkout("source"),
        Step("squash source commits", "rebase_interactive", _squash,
             satisfied=lambda s: _unique_commits(s) <= 1,
             precondition=on_branch("source"),
             operation=OperationKind.SQUASH),
        push("source", force=True),
    ),
)


SCENARIOS: dict[str, WorkflowScenario] = {
    scenario.name: scenario
    for scenario in (
        SYNC_WITH_MAIN,
        BRANCH_TO_BRANCH,
        DERIVE_AND_INTEGRATE,
        REVERT_INTEGRATION,
        SQUASH_BEFORE_MERGE,
    )
}


def get_scenario(name: str) -> WorkflowScenario:
    try:
        return SCENARIOS[name]
    except KeyError:
        raise UnknownScenario(
            f"Unknown scenario {name!r}; known: {', '.join(SCENARIOS)}"
        ) from None


__all__ = [
    "SCENARIOS",
    "Step",
    "local_branch",
    "on_branch",
    "WorkflowScenario",
    "get_scenario",
]
