"""Exception hierarchy for branchwarden.

Only hard failures are exceptions. A conflict or an upstream
mismatch pauses a run and is reported through the run's status.
"""

from __future__ import annotations


class BranchwardenError(Exception):
    """Base class for all branchwarden errors."""


class BackendUnavailable(BranchwardenError):
    """The version-control backend could not be reached or timed out.

    Retryable by the caller; never retried internally.
    """

    def __init__(self, message: str, step: int | None = None):
        super().__init__(message)
        self.step = step


class GatewayError(BranchwardenError):
    """A gateway primitive failed hard (not a conflict)."""

    def __init__(self, kind: str, message: str, step: int | None = None):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.step = step


class OperationInProgress(BranchwardenError):
    """Another run holds the branch pair, or a conflict is outstanding."""


class DirtyStateRejected(BranchwardenError):
    """Uncommitted changes present and auto-commit is disabled."""


class ForcePushRejected(BranchwardenError):
    """Force-push requested without asserting the branch is not shared."""


class PreconditionFailed(BranchwardenError):
    """Repository state does not allow the next step to run."""

    def __init__(self, message: str, step: int | None = None):
        super().__init__(message)
        self.step = step


class UnresolvedMismatch(BranchwardenError):
    """Upstream tracking still diverges after a repair attempt."""


class BranchNotFound(BranchwardenError, LookupError):
    """No local or remote branch carries the requested name."""


class UnknownScenario(BranchwardenError, ValueError):
    """Scenario name is not in the registry."""


class RunNotFound(BranchwardenError, LookupError):
    """No persisted workflow run matches."""


class IntegrationNotFound(BranchwardenError, LookupError):
    """No integration commit could be located for a revert."""


class InvalidTransition(BranchwardenError):
    """A merge operation was asked to move to an illegal status."""


class AbortIncomplete(BranchwardenError):
    """Abort ran but the branch tip differs from the pre-merge tip."""


__all__ = [
    "BranchwardenError",
    "BackendUnavailable",
    "GatewayError",
    "OperationInProgress",
    "DirtyStateRejected",
    "ForcePushRejected",
    "PreconditionFailed",
    "UnresolvedMismatch",
    "BranchNotFound",
    "UnknownScenario",
    "RunNotFound",
    "IntegrationNotFound",
    "InvalidTransition",
    "AbortIncomplete",
]
