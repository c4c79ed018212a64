"""Proposal-flow events exchanged with the hosting platform."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, Field


class ProposalRequested(BaseModel):
    """Emitted when a run needs source integrated into target remotely."""

    run_id: str
    source: str
    target: str
    requested_at: datetime = Field(default_factory=datetime.now)


class ProposalCompleted(BaseModel):
    """Confirmation that the platform integrated source into target."""

    source: str
    target: str
    merge_commit: str | None = None


Listener = Callable[[ProposalRequested], None]


__all__ = ["Listener", "ProposalCompleted", "ProposalRequested"]
