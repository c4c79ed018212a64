"""YAML configuration source with include: directive support."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import yaml
from platformdirs import user_config_dir
from pydantic_settings import BaseSettings, YamlConfigSettingsSource

from branchwarden.core.log import logger

DEFAULTS_FILE = Path(__file__).parent.parent / "defaults" / "default.yaml"
PROJECT_FILE = "branchwarden.yaml"


def cli_includes(argv: list[str] | None = None) -> list[str]:
    """Collect ``--include FILE`` values ahead of pydantic's CLI parse."""
    argv = sys.argv if argv is None else argv
    includes = []
    i = 1
    while i < len(argv):
        if argv[i] == "--include" and i + 1 < len(argv):
            includes.append(argv[i + 1])
            i += 1
        i += 1
    return includes


class YamlWithIncludesSettingsSource(YamlConfigSettingsSource):
    """YAML source layering defaults, user, project and include files.

    Merge order (later wins, dicts deep-merged):
    package defaults < user config < ./branchwarden.yaml < --include.
    Each file may itself carry an ``include:`` key naming more files,
    resolved relative to the including file.
    """

    def __init__(self, settings_cls: type[BaseSettings], yaml_file=None):
        includes = cli_includes()
        if yaml_file is None and includes:
            yaml_file = includes
        elif yaml_file is not None and includes:
            yaml_file = (
                [yaml_file] if isinstance(yaml_file, (str, os.PathLike))
                else list(yaml_file)
            ) + includes
        super().__init__(settings_cls, yaml_file)

    def _read_files(self, files, deep_merge: bool = True):  # noqa: ARG002
        files_to_load = [
            DEFAULTS_FILE,
            Path(user_config_dir("branchwarden", appauthor=False))
            / PROJECT_FILE,
            Path(PROJECT_FILE),
        ]
        if files:
            if isinstance(files, (str, os.PathLike)):
                files = [files]
            files_to_load.extend(Path(f).expanduser() for f in files)

        result: dict = {}
        for file_path in files_to_load:
            if not file_path.is_file():
                logger.debug(
                    "Configuration file not found (skipping)",
                    file=str(file_path),
                )
                continue
            with logger.span("Loading configuration", file=str(file_path)):
                data = self._load_file_recursive(file_path, set())
            result = self._deep_merge(result, data)
        return result

    def _load_file_recursive(self, filepath: Path, visited: set[Path]) -> dict:
        """Load one file, resolving its include: entries first.

        Raises:
            ValueError: On a circular include chain
        """
        filepath = filepath.resolve()
        if filepath in visited:
            raise ValueError(f"Circular include: {filepath}")
        visited.add(filepath)

        with open(filepath, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        includes = data.pop("include", None) or []
        if isinstance(includes, str):
            includes = [includes]
        included: dict = {}
        for inc in includes:
            inc_path = Path(inc).expanduser()
            if not inc_path.is_absolute():
                inc_path = filepath.parent / inc_path
            # Later includes override earlier ones
            included = self._deep_merge(
                included, self._load_file_recursive(inc_path, visited.copy())
            )
        # The including file overrides what it includes
        return self._deep_merge(included, data)

    @staticmethod
    def _deep_merge(base: dict, override: dict) -> dict:
        result = base.copy()
        for key, value in override.items():
            if isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = YamlWithIncludesSettingsSource._deep_merge(
                    result[key], value
                )
            else:
                result[key] = value
        return result
