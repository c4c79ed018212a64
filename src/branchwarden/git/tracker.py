"""Repository State Tracker: read-only projection of branches and remotes."""

from __future__ import annotations

import threading
from datetime import datetime

from branchwarden.core.errors import BackendUnavailable, BranchNotFound
from branchwarden.core.log import logger
from branchwarden.core.result import ErrorKind, GatewayResult
from branchwarden.git.gateway import CommitRecord, ExecutionGateway
from branchwarden.state.repository import (
    Branch,
    Remote,
    RepositoryState,
    UpstreamRef,
)


class RepositoryStateTracker:
    """Builds a RepositoryState from gateway reads.

    Only read primitives are called from here. Branch and Remote
    records are updated in place on refresh, so a Branch handed out
    earlier reflects the latest refresh.

    Runs share one tracker. ``lock`` serializes refreshes; hold it to
    read a consistent state across several lookups. The branch and
    remote tables are replaced, never shrunk, so iterating a table
    taken before a refresh stays safe.
    """

    def __init__(self, gateway: ExecutionGateway):
        self.gateway = gateway
        self.state = RepositoryState()
        self.lock = threading.RLock()

    def _read(self, result: GatewayResult):
        if result.ok:
            return result.value
        raise BackendUnavailable(
            f"Cannot read repository state ({result.primitive}): "
            f"{result.message or result.error_kind}"
        )

    def refresh(self) -> RepositoryState:
        """Re-read status, remotes and branches from the gateway."""
        with self.lock:
            return self._refresh()

    def _refresh(self) -> RepositoryState:
        status = self._read(self.gateway.status())
        remotes = self._read(self.gateway.remotes())
        infos = self._read(self.gateway.branches())
        remote_refs = self._read(self.gateway.remote_branches())

        state = self.state
        state.current_branch = status.current_branch
        state.dirty = status.dirty
        state.conflicts = list(status.conflicts)
        state.operation = status.operation
        state.remote_refs = list(remote_refs)
        state.refreshed_at = datetime.now()

        known_remotes = {}
        for remote in remotes:
            known = state.remotes.get(remote.name)
            if known is None:
                known = Remote(name=remote.name, url=remote.url)
            else:
                known.url = remote.url
            known_remotes[remote.name] = known
        state.remotes = known_remotes

        known_branches = {}
        for info in infos:
            upstream = None
            if info.upstream_remote and info.upstream_branch:
                if info.upstream_remote in state.remotes:
                    upstream = UpstreamRef(
                        remote=info.upstream_remote,
                        branch=info.upstream_branch,
                    )
                else:
                    logger.warn(
                        "Ignoring upstream on unknown remote",
                        branch=info.name, remote=info.upstream_remote,
                    )
            values = dict(
                exists_locally=True,
                remote=upstream.remote if upstream else None,
                upstream=upstream,
                upstream_gone=info.upstream_gone if upstream else False,
                ahead=info.ahead if upstream else 0,
                behind=info.behind if upstream else 0,
                dirty=status.dirty and info.name == status.current_branch,
                tip=info.tip,
            )
            branch = state.branches.get(info.name)
            if branch is None:
                branch = Branch(name=info.name, **values)
            else:
                for key, value in values.items():
                    setattr(branch, key, value)
            known_branches[info.name] = branch
        state.branches = known_branches

        logger.debug(
            "Repository state refreshed",
            current=state.current_branch, dirty=state.dirty,
            branches=len(state.branches), remotes=len(state.remotes),
        )
        return state

    def get_branch(self, name: str) -> Branch:
        """Local branch by name, else a remote-only branch record."""
        with self.lock:
            branch = self.state.branches.get(name)
            remote_refs = self.state.remote_refs
        if branch is not None:
            return branch
        for ref in remote_refs:
            if ref.name == name:
                return Branch(
                    name=name, exists_locally=False,
                    remote=ref.remote, tip=ref.tip,
                )
        raise BranchNotFound(f"No local or remote branch named {name!r}")

    def list_branches(self, include_remote: bool = False) -> list[Branch]:
        with self.lock:
            local = self.state.branches
            remote_refs = self.state.remote_refs
        branches = [local[name] for name in sorted(local)]
        if include_remote:
            for ref in sorted(
                remote_refs, key=lambda r: (r.remote, r.name)
            ):
                branches.append(Branch(
                    name=ref.name, exists_locally=False,
                    remote=ref.remote, tip=ref.tip,
                ))
        return branches

    # Read helpers for step predicates

    def compare(self, left: str, right: str) -> tuple[int, int]:
        """(commits only in left, commits only in right)."""
        return self._read(self.gateway.ahead_behind(left, right))

    def contains(self, container: str, ref: str) -> bool:
        """True if every commit of ``ref`` is reachable from ``container``."""
        _, missing = self.compare(container, ref)
        return missing == 0

    def tip(self, ref: str) -> str | None:
        return self._read(self.gateway.rev_parse(ref))

    def exists(self, ref: str) -> bool:
        result = self.gateway.rev_parse(ref)
        if not result.ok and result.error_kind is ErrorKind.NOT_FOUND:
            return False
        return self._read(result) is not None

    def merge_commits(
        self, branch: str, since: datetime | None = None
    ) -> list[CommitRecord]:
        """First-parent merges on ``branch``, oldest first."""
        records = self._read(self.gateway.merge_commits(branch))
        if since is not None:
            # commit timestamps have second resolution
            floor = since.replace(microsecond=0)
            records = [r for r in records if r.timestamp >= floor]
        return sorted(records, key=lambda r: r.timestamp)

    def find_revert(self, branch: str, commit: str) -> str | None:
        return self._read(self.gateway.find_revert(branch, commit))


__all__ = ["RepositoryStateTracker"]
