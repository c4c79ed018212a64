"""CLI command modules for branchwarden."""

from branchwarden.command.abort import AbortCommand
from branchwarden.command.resolve import ResolveCommand
from branchwarden.command.resume import ResumeCommand
from branchwarden.command.run import RunCommand
from branchwarden.command.status import StatusCommand

__all__ = [
    "AbortCommand",
    "ResolveCommand",
    "ResumeCommand",
    "RunCommand",
    "StatusCommand",
]
