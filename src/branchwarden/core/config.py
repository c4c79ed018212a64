"""Application configuration and settings loading."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import platformdirs
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from branchwarden.core.base import BaseConfig
from branchwarden.core.log import Logger
from branchwarden.core.yaml_settings import YamlWithIncludesSettingsSource
from branchwarden.state.run import Remediation

# Modules reachable from templates: {platformdirs.user_state_dir}, ...
TEMPLATE_NAMESPACE = {
    'os': os,
    'platformdirs': platformdirs,
    'Path': Path,
}


class RepoConfig(BaseConfig):
    """Which repository to drive and its conventions."""

    workdir: Path = Field(
        default_factory=Path.cwd,
        description="Path to the local git working directory",
    )
    remote: str = Field(
        default="origin",
        description="Remote used when a branch has no upstream yet",
    )
    main_branch: str = Field(
        default="main",
        description="Default base branch (derive-and-integrate)",
    )


class OrchestratorConfig(BaseConfig):
    """Workflow execution policy."""

    step_timeout: float = Field(
        default=300.0,
        description="Seconds a single step may run before it counts as "
                    "BackendUnavailable",
    )
    auto_commit: bool = Field(
        default=True,
        description="Commit a dirty working tree before a scenario "
                    "instead of rejecting it",
    )
    auto_commit_message: str = Field(
        default="Snapshot local changes before {scenario}",
        description="Message for the snapshot commit ({scenario}, "
                    "{branch} are filled in)",
    )
    auto_repair_upstream: bool = Field(
        default=False,
        description="Repair upstream mismatches instead of pausing",
    )
    remediation: Remediation = Field(
        default=Remediation.RETARGET_UPSTREAM,
        description="Preferred fix for a case-only upstream mismatch",
    )
    state_dir: Path = Field(
        default_factory=lambda: Path(
            platformdirs.user_state_dir("branchwarden", appauthor=False)
        ),
        description="Directory holding persisted runs and pair locks",
    )


class Config(BaseConfig):
    """Application configuration loaded from YAML/env/CLI."""

    logger: Logger = Field(
        default=None,
        description="Logger configuration and runtime instance",
    )
    repo: RepoConfig = Field(
        default_factory=RepoConfig,
        description="Repository settings",
    )
    orchestrator: OrchestratorConfig = Field(
        default_factory=OrchestratorConfig,
        description="Workflow execution settings",
    )
    log_level: str = Field(
        default="info",
        alias="log-level",
        description="Console log level: 'spew', 'trace', 'debug', "
                    "'info', 'warn', 'error', 'fatal'",
    )
    log_root: Path = Field(
        default_factory=(
            lambda: Path(platformdirs.user_state_dir()) / "branchwarden"
        ),
        description="Root directory for log files",
    )
    commands: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description="Command templates by category (git, ...)",
    )

    model_config = {"populate_by_name": True}

    @model_validator(mode='after')
    def _setup_logger(self) -> Config:
        """Install the global logger from this configuration."""
        from branchwarden.core.log import setup_logger

        if self.logger is None:
            self.logger = Logger(level=self.log_level)

        setup_logger(
            log_root=self.log_root,
            run_name=self.repo.workdir.name or "branchwarden",
            level=self.log_level,
            console=self.logger.console,
            otlp=self.logger.otlp,
            file=self.logger.file,
            logfire=self.logger.logfire,
        )
        return self

    def close(self):
        """Close the global logger, then any closeable sections."""
        from branchwarden.core.log import logger
        logger.close()
        super().close()


class State(BaseSettings):
    """Loaded configuration: the object every command receives.

    Sources, highest priority first: init arguments, YAML files
    (defaults, user, project, includes), .env, environment
    (BRANCHWARDEN_CONFIG__REPO__REMOTE=upstream), file secrets.
    """

    config: Config = Field(
        default_factory=Config,
        description="Application configuration (from YAML/env/CLI)",
    )
    include: list[str] | None = Field(
        default=None,
        description="Additional YAML files to include and merge",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BRANCHWARDEN_",
        env_nested_delimiter="__",
        cli_implicit_flags=True,
        cli_use_class_docs_for_groups=True,
        arbitrary_types_allowed=True,
        extra='ignore',
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            YamlWithIncludesSettingsSource(settings_cls),
            dotenv_settings,
            env_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def substitute_templates(self) -> State:
        """Replace {config.x.y} and {platformdirs.*} references.

        Unknown references such as the {branch} placeholders in git
        command templates are left untouched for runtime formatting.
        """
        self._substitute_recursive(self)
        return self

    def _substitute_recursive(self, obj: Any) -> None:
        if isinstance(obj, BaseModel):
            for field_name in obj.__class__.model_fields:
                value = getattr(obj, field_name)
                new_value = self._substitute_value(value)
                if new_value is not value:
                    setattr(obj, field_name, new_value)
        elif isinstance(obj, dict):
            for key in obj:
                obj[key] = self._substitute_value(obj[key])
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                obj[i] = self._substitute_value(item)

    def _substitute_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._substitute_string(value)
        if isinstance(value, Path):
            return Path(self._substitute_string(str(value)))
        if isinstance(value, (BaseModel, dict, list)):
            self._substitute_recursive(value)
        return value

    def _substitute_string(self, value: str) -> str:
        """Examples:
            "{config.repo.workdir}/.git/branchwarden"
            -> "/home/user/repo/.git/branchwarden"
            "{platformdirs.user_state_dir}"
            -> "~/.local/state/branchwarden"
        """
        def replace_template(match):
            parts = match.group(1).split(".")
            if parts[0] in TEMPLATE_NAMESPACE:
                obj = TEMPLATE_NAMESPACE[parts[0]]
                parts = parts[1:]
            else:
                obj = self
            try:
                for part in parts:
                    obj = getattr(obj, part)
                if callable(obj):
                    obj = obj('branchwarden', appauthor=False)
                return str(obj)
            except (AttributeError, TypeError):
                return match.group(0)

        return re.sub(r'\{([a-z._]+)\}', replace_template, value)


__all__ = ["Config", "OrchestratorConfig", "RepoConfig", "State"]
