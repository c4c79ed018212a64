"""Structured result returned by every gateway primitive."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Outcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    FAILURE = "failure"


class ErrorKind(str, Enum):
    """Classification of a hard gateway failure."""

    BACKEND_UNAVAILABLE = "backend-unavailable"
    REJECTED = "rejected"  # e.g. non-fast-forward push
    NOT_FOUND = "not-found"
    COMMAND_FAILED = "command-failed"


class GatewayResult(BaseModel):
    """Result of one gateway call.

    Exactly one of three shapes: success (optionally carrying a
    value), conflict (with the conflicting paths), or failure (with
    an error kind and message).
    """

    primitive: str
    outcome: Outcome
    value: Any = None
    conflicts: list[str] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
    message: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def success(cls, primitive: str, value: Any = None) -> GatewayResult:
        return cls(primitive=primitive, outcome=Outcome.SUCCESS, value=value)

    @classmethod
    def conflict(cls, primitive: str, paths: list[str]) -> GatewayResult:
        return cls(
            primitive=primitive,
            outcome=Outcome.CONFLICT,
            conflicts=list(paths),
        )

    @classmethod
    def failure(
        cls, primitive: str, kind: ErrorKind, message: str = ""
    ) -> GatewayResult:
        return cls(
            primitive=primitive,
            outcome=Outcome.FAILURE,
            error_kind=kind,
            message=message,
        )
