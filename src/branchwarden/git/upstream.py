"""Upstream Resolver: detect and repair upstream tracking mismatches.

The common failure this targets is case divergence: a local branch
tracks ``origin/Feature-X`` while the remote only carries
``feature-x``. Git on a case-insensitive filesystem happily keeps
both spellings around, and every pull then fails or silently
fetches nothing.
"""

from __future__ import annotations

from branchwarden.core.errors import GatewayError, UnresolvedMismatch
from branchwarden.core.log import logger
from branchwarden.git.gateway import ExecutionGateway
from branchwarden.git.tracker import RepositoryStateTracker
from branchwarden.state.run import Remediation, UpstreamMismatch


class UpstreamResolver:
    def __init__(
        self,
        tracker: RepositoryStateTracker,
        gateway: ExecutionGateway,
        policy: Remediation = Remediation.RETARGET_UPSTREAM,
    ):
        self.tracker = tracker
        self.gateway = gateway
        self.policy = policy

    def diagnose(self, branch: str) -> UpstreamMismatch | None:
        """Compare a branch's configured upstream with the remote's refs.

        Uses the tracker's last refresh. Returns None for a branch
        without upstream or with an exact match.
        """
        record = self.tracker.get_branch(branch)
        if record.upstream is None:
            return None
        remote = record.upstream.remote
        configured = record.upstream.branch
        names = self.tracker.state.remote_names(remote)
        if configured in names:
            return None

        folded = configured.casefold()
        candidates = sorted(n for n in names if n.casefold() == folded)
        if len(candidates) == 1:
            mismatch = UpstreamMismatch(
                branch=branch, remote=remote, configured=configured,
                actual=candidates[0], candidates=candidates,
                remediation=self.policy,
            )
        else:
            mismatch = UpstreamMismatch(
                branch=branch, remote=remote, configured=configured,
                candidates=candidates, remediation=Remediation.MANUAL,
            )
        logger.warn("Upstream mismatch", detail=mismatch.describe(),
                    remediation=mismatch.remediation.value)
        return mismatch

    def repair(
        self,
        mismatch: UpstreamMismatch,
        action: Remediation | None = None,
    ) -> str:
        """Apply a remediation and verify it took.

        Returns the local branch name after repair (changed by
        rename-local).
        """
        action = action or mismatch.remediation
        if action is Remediation.MANUAL or mismatch.actual is None:
            raise UnresolvedMismatch(
                f"Manual repair needed: {mismatch.describe()}"
                + (f" (candidates: {', '.join(mismatch.candidates)})"
                   if mismatch.candidates else "")
            )

        remote_ref = f"{mismatch.remote}/{mismatch.actual}"
        branch = mismatch.branch
        if action is Remediation.RENAME_LOCAL:
            self.tracker.refresh()
            wanted = mismatch.actual.casefold()
            taken = [
                other.name for other in self.tracker.list_branches()
                if other.name != branch and other.name.casefold() == wanted
            ]
            if taken:
                raise UnresolvedMismatch(
                    f"Cannot rename {branch} to {mismatch.actual}: local "
                    f"branch {taken[0]} already exists"
                )
            # Case-only renames clash on case-insensitive filesystems
            case_only = branch.casefold() == wanted
            self._check(self.gateway.rename_branch(
                branch, mismatch.actual, force=case_only
            ))
            branch = mismatch.actual
        self._check(self.gateway.set_upstream(branch, remote_ref))
        logger.info("Upstream repaired", branch=branch,
                    upstream=remote_ref, action=action.value)

        self.tracker.refresh()
        remaining = self.diagnose(branch)
        if remaining is not None:
            raise UnresolvedMismatch(
                f"Still diverging after {action.value}: "
                f"{remaining.describe()}"
            )
        return branch

    @staticmethod
    def _check(result) -> None:
        if not result.ok:
            raise GatewayError(
                result.error_kind.value if result.error_kind else "conflict",
                result.message or f"{result.primitive} failed",
            )


__all__ = ["UpstreamResolver"]
