#!/usr/bin/env python3
"""branchwarden CLI - resumable branch synchronization workflows."""

import asyncio
import sys

from pydantic_settings import CliApp, CliSubCommand, get_subcommand

from branchwarden.command.abort import AbortCommand
from branchwarden.command.resolve import ResolveCommand
from branchwarden.command.resume import ResumeCommand
from branchwarden.command.run import RunCommand
from branchwarden.command.status import StatusCommand
from branchwarden.core.config import State
from branchwarden.core.log import logger


class CliState(State):
    """Run branch synchronization and merge workflows as resumable
    state machines.

    Scenarios pause instead of failing on merge conflicts, upstream
    tracking mismatches and proposal hand-offs; resume them later
    with the run id they print.

    Configuration sources (in priority order):
    1. Command-line arguments (--config.repo.remote upstream)
    2. --include files, ./branchwarden.yaml, the user config file
    3. .env file
    4. Environment variables (BRANCHWARDEN_CONFIG__REPO__REMOTE=upstream)
    """

    run: CliSubCommand[RunCommand]
    resume: CliSubCommand[ResumeCommand]
    resolve: CliSubCommand[ResolveCommand]
    abort: CliSubCommand[AbortCommand]
    status: CliSubCommand[StatusCommand]

    def cli_cmd(self):
        """Dispatch to the active subcommand, or show help."""
        subcommand = get_subcommand(self, is_required=False)

        if subcommand is None:
            CliApp.run(CliState, cli_args=['--help'])
            sys.exit(1)

        # Logger as context manager so file sinks flush on exit
        with logger:
            exit_code = asyncio.run(subcommand.run_workflow(self))
            raise SystemExit(exit_code)


def main():
    """Main entry point for CLI."""
    CliApp.run(CliState)


if __name__ == "__main__":
    main()
