"""GitGateway: the Execution Gateway implemented on the git CLI.

Commands come from the ``commands.git`` templates in configuration;
every value substituted into a template is shell-quoted.
"""

from __future__ import annotations

import re
import shlex
from datetime import datetime
from pathlib import Path

from invoke import Result

from branchwarden.core.log import logger
from branchwarden.core.result import ErrorKind, GatewayResult
from branchwarden.core.runner import Runner
from branchwarden.git.gateway import (
    CommitRecord,
    LocalBranchInfo,
    SquashPlan,
    WorkingTreeStatus,
)
from branchwarden.state.merge import MergeStrategy, OperationKind
from branchwarden.state.repository import Remote, RemoteRef

# XY codes of `git status --porcelain` that mean "unmerged"
UNMERGED_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})

# stderr fragments, checked in order
_FAILURE_PATTERNS = [
    (ErrorKind.BACKEND_UNAVAILABLE, re.compile(
        r"could not resolve host|unable to access|could not read from "
        r"remote repository|connection (refused|timed out|reset)|"
        r"network is unreachable|operation timed out",
        re.IGNORECASE,
    )),
    (ErrorKind.REJECTED, re.compile(
        r"\[rejected\]|non-fast-forward|stale info|failed to push|"
        r"protected branch",
        re.IGNORECASE,
    )),
    (ErrorKind.NOT_FOUND, re.compile(
        r"not found|did not match any|unknown revision|invalid reference|"
        r"not a valid (object|ref)|couldn't find remote ref|"
        r"no such (remote|ref|branch)",
        re.IGNORECASE,
    )),
]

_TRACK_RE = re.compile(r"(ahead|behind) (\d+)")

# Never block on a credential prompt or an editor
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}

_MERGE_FLAGS = {
    MergeStrategy.FAST_FORWARD: "--ff",
    MergeStrategy.NO_FAST_FORWARD: "--no-ff",
}


def classify_failure(stderr: str) -> ErrorKind:
    for kind, pattern in _FAILURE_PATTERNS:
        if pattern.search(stderr):
            return kind
    return ErrorKind.COMMAND_FAILED


def parse_status(output: str) -> WorkingTreeStatus:
    """Parse `git status --porcelain=v1 --branch` output."""
    status = WorkingTreeStatus()
    for line in output.splitlines():
        if line.startswith("## "):
            head = line[3:]
            if head.startswith("HEAD (no branch)"):
                status.current_branch = None
            elif head.startswith(("No commits yet on ", "Initial commit on ")):
                status.current_branch = head.rsplit(" ", 1)[-1]
            else:
                status.current_branch = head.split("...", 1)[0].split(" ", 1)[0]
            continue
        code = line[:2]
        if not code.strip() or code in ("??", "!!"):
            continue
        path = line[3:]
        if code in UNMERGED_CODES:
            status.conflicts.append(path)
        status.dirty = True
    return status


def parse_branches(output: str) -> list[LocalBranchInfo]:
    """Parse the tab-separated `branches` for-each-ref output."""
    infos = []
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = (line.split("\t") + [""] * 5)[:5]
        name, tip, remote, remote_ref, track = fields
        upstream_branch = None
        if remote_ref.startswith("refs/heads/"):
            upstream_branch = remote_ref[len("refs/heads/"):]
        elif remote_ref:
            upstream_branch = remote_ref
        counts = dict(_TRACK_RE.findall(track))
        infos.append(LocalBranchInfo(
            name=name,
            tip=tip,
            upstream_remote=remote or None,
            upstream_branch=upstream_branch,
            ahead=int(counts.get("ahead", 0)),
            behind=int(counts.get("behind", 0)),
            upstream_gone=track.strip() == "gone",
        ))
    return infos


def parse_remotes(output: str) -> list[Remote]:
    remotes: dict[str, Remote] = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] not in remotes:
            remotes[parts[0]] = Remote(name=parts[0], url=parts[1])
    return list(remotes.values())


def parse_remote_branches(
    output: str, remote_names: list[str]
) -> list[RemoteRef]:
    """Split refs/remotes/<remote>/<branch> lines by known remote name.

    Longest remote name wins so "up/stream" beats "up".
    """
    names = sorted(remote_names, key=len, reverse=True)
    refs = []
    for line in output.splitlines():
        if not line.strip():
            continue
        refname, _, tip = line.partition("\t")
        short = refname.removeprefix("refs/remotes/")
        for remote in names:
            if short.startswith(remote + "/"):
                branch = short[len(remote) + 1:]
                if branch != "HEAD":
                    refs.append(RemoteRef(remote=remote, name=branch, tip=tip))
                break
    return refs


class GitGateway:
    """ExecutionGateway backed by the git command line."""

    def __init__(
        self,
        workdir: Path,
        commands: dict[str, str],
        remote: str = "origin",
        timeout: float | None = None,
        runner: Runner | None = None,
    ):
        """Args:
            workdir: Repository working directory
            commands: The ``commands.git`` template table
            remote: Remote used for fetch/push when a branch has no upstream
            timeout: Per-command timeout in seconds (None: no limit)
            runner: Runner to use; a fresh one by default
        """
        self.workdir = Path(workdir)
        self.commands = commands
        self.remote = remote
        self.timeout = timeout
        self.runner = runner or Runner()

    @classmethod
    def from_config(cls, config) -> GitGateway:
        return cls(
            workdir=config.repo.workdir,
            commands=config.commands["git"],
            remote=config.repo.remote,
            timeout=config.orchestrator.step_timeout,
        )

    # ------------------------------------------------------------
    # plumbing

    def _command(self, name: str, raw: dict[str, str] | None = None,
                 **values) -> str:
        template = self.commands[name]
        quoted = {k: shlex.quote(str(v)) for k, v in values.items()}
        quoted.update(raw or {})
        return template.format(**quoted)

    def _run(self, name: str, raw: dict[str, str] | None = None,
             **values) -> Result:
        command = self._command(name, raw, **values)
        logger.debug(f"git {name}", command=command)
        return self.runner.execute(
            command, cwd=self.workdir, timeout=self.timeout, check=False,
            env=GIT_ENV,
        )

    def _failure(self, primitive: str, result: Result) -> GatewayResult:
        if result.exited == -1:
            return GatewayResult.failure(
                primitive, ErrorKind.BACKEND_UNAVAILABLE,
                f"{primitive} timed out after {self.timeout}s",
            )
        message = (result.stderr or result.stdout).strip()
        return GatewayResult.failure(
            primitive, classify_failure(message), message
        )

    def _read(self, primitive: str, name: str, parse=None,
              **values) -> GatewayResult:
        result = self._run(name, **values)
        if result.exited != 0:
            return self._failure(primitive, result)
        value = result.stdout if parse is None else parse(result.stdout)
        return GatewayResult.success(primitive, value)

    def _mutate(self, primitive: str, name: str,
                raw: dict[str, str] | None = None, **values) -> GatewayResult:
        """Run a mutating command; a failure leaving unmerged paths is a
        conflict, not an error."""
        result = self._run(name, raw, **values)
        if result.exited == 0:
            return GatewayResult.success(primitive)
        if result.exited != -1:
            unmerged = self._unmerged()
            if unmerged:
                return GatewayResult.conflict(primitive, unmerged)
        return self._failure(primitive, result)

    def _unmerged(self) -> list[str]:
        result = self._run("unmerged")
        if result.exited != 0:
            return []
        return [p for p in result.stdout.splitlines() if p.strip()]

    def _operation_in_progress(self) -> OperationKind | None:
        result = self._run("git_dir")
        if result.exited != 0:
            return None
        git_dir = Path(result.stdout.strip())
        if not git_dir.is_absolute():
            git_dir = self.workdir / git_dir
        if (git_dir / "rebase-merge").exists() or (
            git_dir / "rebase-apply"
        ).exists():
            return OperationKind.REBASE
        if (git_dir / "REVERT_HEAD").exists():
            return OperationKind.REVERT
        if (git_dir / "MERGE_HEAD").exists():
            return OperationKind.MERGE
        if (git_dir / "SQUASH_MSG").exists():
            return OperationKind.SQUASH
        return None

    # ------------------------------------------------------------
    # reads

    def status(self) -> GatewayResult:
        result = self._read("status", "status", parse_status)
        if result.ok:
            result.value.operation = self._operation_in_progress()
        return result

    def branches(self) -> GatewayResult:
        return self._read("branches", "branches", parse_branches)

    def remotes(self) -> GatewayResult:
        return self._read("remotes", "remotes", parse_remotes)

    def remote_branches(self) -> GatewayResult:
        remotes = self.remotes()
        if not remotes.ok:
            return remotes
        names = [remote.name for remote in remotes.value]
        return self._read(
            "remote_branches", "remote_branches",
            lambda out: parse_remote_branches(out, names),
        )

    def ahead_behind(self, left: str, right: str) -> GatewayResult:
        def parse(out: str) -> tuple[int, int]:
            ahead, behind = out.split()
            return int(ahead), int(behind)
        return self._read("ahead_behind", "ahead_behind", parse,
                          left=left, right=right)

    def rev_parse(self, ref: str) -> GatewayResult:
        result = self._run("rev_parse", ref=ref)
        # --quiet exits 1 with no output for a missing ref
        if result.exited == 1 and not result.stderr.strip():
            return GatewayResult.success("rev_parse", None)
        if result.exited != 0:
            return self._failure("rev_parse", result)
        return GatewayResult.success("rev_parse", result.stdout.strip())

    def merge_commits(self, branch: str) -> GatewayResult:
        def parse(out: str) -> list[CommitRecord]:
            records = []
            for line in out.splitlines():
                sha, _, stamp = line.partition("\t")
                if sha and stamp:
                    records.append(CommitRecord(
                        sha=sha, timestamp=datetime.fromtimestamp(int(stamp))
                    ))
            return records
        return self._read("merge_commits", "merge_commits", parse,
                          branch=branch)

    def find_revert(self, branch: str, commit: str) -> GatewayResult:
        def parse(out: str) -> str | None:
            lines = [line for line in out.splitlines() if line.strip()]
            return lines[0] if lines else None
        return self._read("find_revert", "find_revert", parse,
                          branch=branch,
                          pattern=f"This reverts commit {commit}")

    def _is_merge_commit(self, commit: str) -> bool:
        result = self._run("parents", commit=commit)
        return result.exited == 0 and len(result.stdout.split()) > 2

    def _push_remote(self, branch: str) -> str:
        listing = self.branches()
        if listing.ok:
            for info in listing.value:
                if info.name == branch and info.upstream_remote:
                    return info.upstream_remote
        return self.remote

    # ------------------------------------------------------------
    # network

    def fetch(self, all_remotes: bool = False) -> GatewayResult:
        if all_remotes:
            return self._mutate("fetch", "fetch_all")
        return self._mutate("fetch", "fetch", remote=self.remote)

    def pull(self) -> GatewayResult:
        return self._mutate("pull", "pull")

    def push(
        self, branch: str, set_upstream: bool = False, force: bool = False
    ) -> GatewayResult:
        flags = []
        if set_upstream:
            flags.append("--set-upstream")
        if force:
            flags.append("--force-with-lease")
        return self._mutate(
            "push", "push", raw={"flags": " ".join(flags)},
            remote=self._push_remote(branch), branch=branch,
        )

    def delete_remote_branch(self, name: str) -> GatewayResult:
        return self._mutate("delete_remote_branch", "delete_remote_branch",
                            remote=self.remote, branch=name)

    # ------------------------------------------------------------
    # local mutations

    def commit(self, message: str) -> GatewayResult:
        return self._mutate("commit", "commit", message=message)

    def checkout(
        self, branch: str, create: bool = False, start_point: str | None = None
    ) -> GatewayResult:
        if create:
            return self._mutate("checkout", "checkout_create",
                                branch=branch, start=start_point or "HEAD")
        return self._mutate("checkout", "checkout", branch=branch)

    def merge(self, branch: str, strategy: MergeStrategy) -> GatewayResult:
        if strategy is MergeStrategy.SQUASH:
            return self._mutate("merge", "merge_squash", branch=branch)
        if strategy is MergeStrategy.REBASE:
            return self._mutate("merge", "rebase", branch=branch)
        return self._mutate("merge", "merge",
                            raw={"flags": _MERGE_FLAGS[strategy]},
                            branch=branch)

    def revert(self, commit: str, mainline_parent: int = 1) -> GatewayResult:
        flags = ""
        if self._is_merge_commit(commit):
            flags = f"--mainline {int(mainline_parent)}"
        return self._mutate("revert", "revert", raw={"flags": flags},
                            commit=commit)

    def rebase_interactive(self, plan: SquashPlan) -> GatewayResult:
        """Fold the last ``plan.count`` commits into one.

        A soft reset followed by a commit is what an interactive
        rebase marking every commit but the first as squash does,
        without the editor round trip.
        """
        return self._mutate("rebase_interactive", "squash",
                            count=int(plan.count), message=plan.message)

    def rename_branch(
        self, old: str, new: str, force: bool = False
    ) -> GatewayResult:
        return self._mutate("rename_branch", "rename_branch",
                            raw={"flags": "--force" if force else ""},
                            old=old, new=new)

    def set_upstream(self, branch: str, remote_ref: str) -> GatewayResult:
        return self._mutate("set_upstream", "set_upstream",
                            branch=branch, ref=remote_ref)

    def delete_branch(self, name: str, force: bool = False) -> GatewayResult:
        return self._mutate("delete_branch", "delete_branch",
                            raw={"flags": "-D" if force else "-d"},
                            branch=name)

    # ------------------------------------------------------------
    # in-progress operations

    def abort(self, kind: OperationKind) -> GatewayResult:
        name = {
            OperationKind.REBASE: "rebase_abort",
            OperationKind.REVERT: "revert_abort",
            OperationKind.SQUASH: "squash_abort",
        }.get(kind, "merge_abort")
        result = self._run(name)
        if result.exited != 0:
            return self._failure("abort", result)
        return GatewayResult.success("abort")

    def continue_operation(
        self, kind: OperationKind, paths: list[str]
    ) -> GatewayResult:
        if paths:
            staged = self._run(
                "stage",
                raw={"paths": " ".join(shlex.quote(p) for p in paths)},
            )
            if staged.exited != 0:
                return self._failure("continue_operation", staged)
        name = {
            OperationKind.REBASE: "rebase_continue",
            OperationKind.REVERT: "revert_continue",
        }.get(kind, "merge_continue")
        return self._mutate("continue_operation", name)
