"""Pytest configuration and fixtures for branchwarden tests."""

import itertools
import sys
import tempfile
import time
from datetime import datetime
from pathlib import Path

import pytest

from branchwarden.core.config import OrchestratorConfig, RepoConfig
from branchwarden.core.log import ConsoleSink, setup_logger
from branchwarden.core.result import ErrorKind, GatewayResult
from branchwarden.git.gateway import (
    MUTATING_PRIMITIVES,
    CommitRecord,
    LocalBranchInfo,
    WorkingTreeStatus,
)
from branchwarden.state.merge import MergeStrategy, OperationKind
from branchwarden.state.repository import Remote, RemoteRef
from branchwarden.workflow.orchestrator import Orchestrator
from branchwarden.workflow.store import RunStore


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    """Console-only logging at debug level for test runs."""
    test_log_root = Path(tempfile.gettempdir()) / "branchwarden-tests"
    setup_logger(
        log_root=test_log_root,
        run_name="test",
        console=ConsoleSink(level="debug"),
    )


@pytest.fixture(scope="session")
def test_config():
    """Configuration loaded from package defaults.

    sys.argv is replaced so pytest's own arguments do not reach the
    settings parser.
    """
    from branchwarden.core.config import State

    old_argv = sys.argv
    sys.argv = ['branchwarden']
    try:
        state = State()
        return state.config
    finally:
        sys.argv = old_argv


class Commit:
    def __init__(self, sha, parents, message):
        self.sha = sha
        self.parents = tuple(parents)
        self.message = message
        self.timestamp = datetime.now().replace(microsecond=0)


class FakeGateway:
    """In-memory repository implementing the ExecutionGateway protocol.

    Models a commit graph, local branches with upstreams, one remote
    ("origin") with its server-side branches and the remote-tracking
    refs last fetched from it. Every call is recorded in ``calls``.

    Injection knobs:
        conflicts[primitive] = [paths]       next call conflicts
        failures[primitive] = (kind, msg)    next call fails
        delays[primitive] = seconds          every call sleeps first
    """

    REMOTE = "origin"

    def __init__(self):
        self._ids = itertools.count(1)
        self.commits: dict[str, Commit] = {}
        self.local: dict[str, str] = {}
        self.upstreams: dict[str, tuple[str, str]] = {}
        self.server: dict[str, str] = {}
        self.tracking: dict[str, str] = {}
        self.current: str | None = None
        self.dirty = False
        self.in_progress: dict | None = None
        self.calls: list[str] = []
        self.conflicts: dict[str, list[str]] = {}
        self.failures: dict[str, tuple[ErrorKind, str]] = {}
        self.delays: dict[str, float] = {}

        root = self.make_commit([], "initial")
        self.local["main"] = root
        self.server["main"] = root
        self.tracking["main"] = root
        self.upstreams["main"] = (self.REMOTE, "main")
        self.current = "main"

    # ------------------------------------------------------------
    # Test helpers

    def make_commit(self, parents, message="change"):
        sha = f"{next(self._ids):040x}"
        self.commits[sha] = Commit(sha, parents, message)
        return sha

    def add_branch(self, name, start="main", upstream=True, commits=0):
        """Local branch from ``start`` with ``commits`` new commits,
        published to origin when ``upstream``."""
        tip = self.resolve(start)
        for i in range(commits):
            tip = self.make_commit([tip], f"{name} commit {i + 1}")
        self.local[name] = tip
        if upstream:
            self.server[name] = tip
            self.tracking[name] = tip
            self.upstreams[name] = (self.REMOTE, name)
        return tip

    def local_commit(self, branch, message="local work"):
        self.local[branch] = self.make_commit([self.local[branch]], message)
        return self.local[branch]

    def remote_commit(self, branch, message="remote work", fetched=False):
        """Someone else pushes to origin/branch."""
        base = self.server.get(branch) or self.local[branch]
        self.server[branch] = self.make_commit([base], message)
        if fetched:
            self.tracking[branch] = self.server[branch]
        return self.server[branch]

    def remote_merge(self, source, target):
        """The hosting platform merges a proposal server-side."""
        sha = self.make_commit(
            [self.server[target], self.server[source]],
            f"Merge {source} into {target}",
        )
        self.server[target] = sha
        return sha

    @property
    def mutations(self):
        return [c for c in self.calls if c in MUTATING_PRIMITIVES]

    def ancestors(self, sha):
        seen = set()
        stack = [sha]
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self.commits[node].parents)
        return seen

    def resolve(self, ref):
        if ref == "HEAD":
            return self.local[self.current]
        if ref in self.local:
            return self.local[ref]
        if ref.startswith(self.REMOTE + "/"):
            return self.tracking.get(ref[len(self.REMOTE) + 1:])
        if ref in self.commits:
            return ref
        return None

    def contains(self, container, sha):
        return sha in self.ancestors(container)

    # ------------------------------------------------------------
    # Plumbing

    def _enter(self, primitive):
        self.calls.append(primitive)
        delay = self.delays.get(primitive)
        if delay:
            time.sleep(delay)
        failure = self.failures.pop(primitive, None)
        if failure is not None:
            return GatewayResult.failure(primitive, *failure)
        return None

    def _integrate(self, primitive, kind, other, make_commit):
        """Conflict if one is injected, else run ``make_commit``."""
        paths = self.conflicts.pop(primitive, None)
        if paths:
            self.in_progress = {
                "kind": kind,
                "pre_tip": self.local[self.current],
                "other": other,
                "paths": list(paths),
                "finish": make_commit,
            }
            return GatewayResult.conflict(primitive, paths)
        self.local[self.current] = make_commit()
        return GatewayResult.success(primitive)

    def _merge_commit(self, other, message):
        current = self.local[self.current]
        return lambda: self.make_commit([current, other], message)

    # ------------------------------------------------------------
    # Reads

    def status(self):
        failed = self._enter("status")
        if failed:
            return failed
        return GatewayResult.success("status", WorkingTreeStatus(
            current_branch=self.current,
            dirty=self.dirty or self.in_progress is not None,
            conflicts=list(self.in_progress["paths"])
            if self.in_progress else [],
            operation=self.in_progress["kind"] if self.in_progress else None,
        ))

    def branches(self):
        failed = self._enter("branches")
        if failed:
            return failed
        infos = []
        for name, tip in sorted(self.local.items()):
            remote, remote_branch = self.upstreams.get(name, (None, None))
            ahead = behind = 0
            gone = False
            if remote:
                tracked = self.tracking.get(remote_branch)
                if tracked is None:
                    gone = True
                else:
                    mine, theirs = self.ancestors(tip), self.ancestors(tracked)
                    ahead, behind = len(mine - theirs), len(theirs - mine)
            infos.append(LocalBranchInfo(
                name=name, tip=tip, upstream_remote=remote,
                upstream_branch=remote_branch, ahead=ahead, behind=behind,
                upstream_gone=gone,
            ))
        return GatewayResult.success("branches", infos)

    def remotes(self):
        failed = self._enter("remotes")
        if failed:
            return failed
        return GatewayResult.success("remotes", [
            Remote(name=self.REMOTE, url="https://example.com/repo.git")
        ])

    def remote_branches(self):
        failed = self._enter("remote_branches")
        if failed:
            return failed
        return GatewayResult.success("remote_branches", [
            RemoteRef(remote=self.REMOTE, name=name, tip=tip)
            for name, tip in sorted(self.tracking.items())
        ])

    def ahead_behind(self, left, right):
        failed = self._enter("ahead_behind")
        if failed:
            return failed
        a, b = self.resolve(left), self.resolve(right)
        if a is None or b is None:
            return GatewayResult.failure(
                "ahead_behind", ErrorKind.NOT_FOUND,
                f"unknown revision {left if a is None else right}",
            )
        mine, theirs = self.ancestors(a), self.ancestors(b)
        return GatewayResult.success(
            "ahead_behind", (len(mine - theirs), len(theirs - mine))
        )

    def rev_parse(self, ref):
        failed = self._enter("rev_parse")
        if failed:
            return failed
        return GatewayResult.success("rev_parse", self.resolve(ref))

    def merge_commits(self, branch):
        failed = self._enter("merge_commits")
        if failed:
            return failed
        records = []
        sha = self.resolve(branch)
        while sha:
            commit = self.commits[sha]
            if len(commit.parents) > 1:
                records.append(
                    CommitRecord(sha=sha, timestamp=commit.timestamp)
                )
            sha = commit.parents[0] if commit.parents else None
        return GatewayResult.success("merge_commits", records)

    def find_revert(self, branch, commit):
        failed = self._enter("find_revert")
        if failed:
            return failed
        marker = f"This reverts commit {commit}"
        for sha in self.ancestors(self.resolve(branch)):
            if marker in self.commits[sha].message:
                return GatewayResult.success("find_revert", sha)
        return GatewayResult.success("find_revert", None)

    # ------------------------------------------------------------
    # Network

    def fetch(self, all_remotes=False):
        failed = self._enter("fetch")
        if failed:
            return failed
        self.tracking = dict(self.server)
        return GatewayResult.success("fetch")

    def pull(self):
        failed = self._enter("pull")
        if failed:
            return failed
        self.tracking = dict(self.server)
        remote, remote_branch = self.upstreams.get(self.current, (None, None))
        theirs = self.tracking.get(remote_branch) if remote else None
        if theirs is None:
            return GatewayResult.failure(
                "pull", ErrorKind.COMMAND_FAILED, "no tracking information"
            )
        mine = self.local[self.current]
        if self.contains(mine, theirs):
            return GatewayResult.success("pull")
        if self.contains(theirs, mine):
            self.local[self.current] = theirs
            return GatewayResult.success("pull")
        return self._integrate(
            "pull", OperationKind.MERGE, theirs,
            self._merge_commit(theirs, f"Merge {remote}/{remote_branch}"),
        )

    def push(self, branch, set_upstream=False, force=False):
        failed = self._enter("push")
        if failed:
            return failed
        tip = self.local[branch]
        remote_branch = self.upstreams.get(branch, (None, branch))[1]
        existing = self.server.get(remote_branch)
        if existing and not force and not self.contains(tip, existing):
            return GatewayResult.failure(
                "push", ErrorKind.REJECTED,
                f"! [rejected] {branch} -> {remote_branch} (non-fast-forward)",
            )
        self.server[remote_branch] = tip
        self.tracking[remote_branch] = tip
        if set_upstream:
            self.upstreams[branch] = (self.REMOTE, remote_branch)
        return GatewayResult.success("push")

    def delete_remote_branch(self, name):
        failed = self._enter("delete_remote_branch")
        if failed:
            return failed
        self.server.pop(name, None)
        self.tracking.pop(name, None)
        return GatewayResult.success("delete_remote_branch")

    # ------------------------------------------------------------
    # Local mutations

    def commit(self, message):
        failed = self._enter("commit")
        if failed:
            return failed
        if not self.dirty:
            return GatewayResult.failure(
                "commit", ErrorKind.COMMAND_FAILED, "nothing to commit"
            )
        self.local[self.current] = self.make_commit(
            [self.local[self.current]], message
        )
        self.dirty = False
        return GatewayResult.success("commit")

    def checkout(self, branch, create=False, start_point=None):
        failed = self._enter("checkout")
        if failed:
            return failed
        if create:
            start = self.resolve(start_point or "HEAD")
            if start is None or branch in self.local:
                return GatewayResult.failure(
                    "checkout", ErrorKind.COMMAND_FAILED,
                    f"cannot create {branch}",
                )
            self.local[branch] = start
        elif branch not in self.local:
            if branch not in self.tracking:
                return GatewayResult.failure(
                    "checkout", ErrorKind.NOT_FOUND,
                    f"pathspec '{branch}' did not match any file(s)",
                )
            self.local[branch] = self.tracking[branch]
            self.upstreams[branch] = (self.REMOTE, branch)
        self.current = branch
        return GatewayResult.success("checkout")

    def merge(self, branch, strategy):
        failed = self._enter("merge")
        if failed:
            return failed
        other = self.resolve(branch)
        if other is None:
            return GatewayResult.failure(
                "merge", ErrorKind.NOT_FOUND, f"{branch} - not something "
                "we can merge",
            )
        mine = self.local[self.current]
        if self.contains(mine, other):
            return GatewayResult.success("merge")
        if strategy is MergeStrategy.FAST_FORWARD and self.contains(
            other, mine
        ):
            self.local[self.current] = other
            return GatewayResult.success("merge")
        if strategy is MergeStrategy.SQUASH:
            make = lambda: self.make_commit([mine], f"Squashed {branch}")  # noqa: E731
        elif strategy is MergeStrategy.REBASE:
            make = lambda: self.make_commit([other], f"Rebased onto {branch}")  # noqa: E731
        else:
            make = self._merge_commit(other, f"Merge {branch}")
        kind = {
            MergeStrategy.REBASE: OperationKind.REBASE,
            MergeStrategy.SQUASH: OperationKind.SQUASH,
        }.get(strategy, OperationKind.MERGE)
        return self._integrate("merge", kind, other, make)

    def revert(self, commit, mainline_parent=1):
        failed = self._enter("revert")
        if failed:
            return failed
        if commit not in self.commits:
            return GatewayResult.failure(
                "revert", ErrorKind.NOT_FOUND, f"bad revision {commit}"
            )
        mine = self.local[self.current]
        message = f"Revert\n\nThis reverts commit {commit}."
        return self._integrate(
            "revert", OperationKind.REVERT, commit,
            lambda: self.make_commit([mine], message),
        )

    def rebase_interactive(self, plan):
        failed = self._enter("rebase_interactive")
        if failed:
            return failed
        base = self.local[plan.branch]
        for _ in range(plan.count):
            base = self.commits[base].parents[0]
        self.local[plan.branch] = self.make_commit([base], plan.message)
        return GatewayResult.success("rebase_interactive")

    def rename_branch(self, old, new, force=False):
        failed = self._enter("rename_branch")
        if failed:
            return failed
        if new in self.local and new != old and not force:
            return GatewayResult.failure(
                "rename_branch", ErrorKind.COMMAND_FAILED,
                f"a branch named '{new}' already exists",
            )
        self.local[new] = self.local.pop(old)
        if old in self.upstreams:
            self.upstreams[new] = self.upstreams.pop(old)
        if self.current == old:
            self.current = new
        return GatewayResult.success("rename_branch")

    def set_upstream(self, branch, remote_ref):
        failed = self._enter("set_upstream")
        if failed:
            return failed
        remote, _, name = remote_ref.partition("/")
        if name not in self.tracking:
            return GatewayResult.failure(
                "set_upstream", ErrorKind.NOT_FOUND,
                f"the requested upstream branch '{remote_ref}' does not exist",
            )
        self.upstreams[branch] = (remote, name)
        return GatewayResult.success("set_upstream")

    def delete_branch(self, name, force=False):
        failed = self._enter("delete_branch")
        if failed:
            return failed
        self.local.pop(name, None)
        self.upstreams.pop(name, None)
        return GatewayResult.success("delete_branch")

    # ------------------------------------------------------------
    # In-progress operations

    def abort(self, kind):
        failed = self._enter("abort")
        if failed:
            return failed
        if self.in_progress is None:
            return GatewayResult.failure(
                "abort", ErrorKind.COMMAND_FAILED, "no operation in progress"
            )
        if kind is not self.in_progress["kind"]:
            # git refuses, e.g. merge --abort after merge --squash
            return GatewayResult.failure(
                "abort", ErrorKind.COMMAND_FAILED,
                f"no {kind.value} in progress to abort",
            )
        self.local[self.current] = self.in_progress["pre_tip"]
        self.in_progress = None
        return GatewayResult.success("abort")

    def continue_operation(self, kind, paths):
        failed = self._enter("continue_operation")
        if failed:
            return failed
        if self.in_progress is None:
            return GatewayResult.failure(
                "continue_operation", ErrorKind.COMMAND_FAILED,
                "no operation in progress",
            )
        fresh = self.conflicts.pop("continue_operation", None)
        if fresh:
            self.in_progress["paths"] = list(fresh)
            return GatewayResult.conflict("continue_operation", fresh)
        self.local[self.current] = self.in_progress["finish"]()
        self.in_progress = None
        return GatewayResult.success("continue_operation")


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(tmp_path):
    return RunStore(tmp_path / "state")


@pytest.fixture
def make_orchestrator(gateway, store):
    """Factory: orchestrator over the fake gateway and a temp store."""

    def make(**settings):
        return Orchestrator(
            gateway=gateway,
            store=store,
            settings=OrchestratorConfig(
                state_dir=store.state_dir, **settings
            ),
            repo=RepoConfig(workdir=store.state_dir, main_branch="main"),
        )

    return make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
