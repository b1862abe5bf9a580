from __future__ import annotations

import json
import os
from pathlib import Path

import yaml
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from dir2txt.config import DEFAULT_CACHE_DIR, DEFAULT_CONCURRENCY
from dir2txt.exceptions import ConfigFileError
from dir2txt.logging import logger

ENV_FILE = find_dotenv(usecwd=True)

CONFIG_FILES = (".dir2txt.json", ".dir2txt.yaml", ".dir2txt.yml")

DEFAULT_PROJECT_CONFIG: dict[str, object] = {
    "ignorePatterns": [
        "node_modules/**",
        "dist/**",
        "build/**",
        "*.log",
        ".git/**",
        ".env*",
        "coverage/**",
        ".nyc_output/**",
    ],
    "includeExtensions": [
        ".js",
        ".ts",
        ".jsx",
        ".tsx",
        ".json",
        ".md",
        ".txt",
        ".py",
        ".java",
        ".c",
        ".cpp",
        ".h",
        ".css",
        ".html",
        ".xml",
        ".yaml",
        ".yml",
    ],
    "maxFileSize": 1_048_576,
}


def env_default(name: str, default: str) -> str:
    """Look up a default value in the process environment, then in the `.env` file.

    Args:
        name (str): the variable name, e.g. ``DIR2TXT_CACHE_DIR``
        default (str): the value used when the variable is set nowhere

    Returns:
        str: the resolved value
    """
    if name in os.environ:
        return os.environ[name]
    values = dotenv_values(ENV_FILE) if ENV_FILE else {}
    return values.get(name) or default


class Settings(BaseModel):
    """Configuration settings for a dir2txt invocation, mirroring the CLI."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    command: str = Field(default="run", description="Sub-command: run, watch, cache, config, update or status.")
    repo: Path = Field(default_factory=Path.cwd, description="Directory to export.")
    output: Path | None = Field(default=None, description="Output file; stdout for dry runs.")
    log_file: str = Field(default="", description="Log file path.")

    markdown: bool = Field(default=False, description="Output in markdown format.")
    dry: bool = Field(default=False, description="Only render the file tree.")
    noconfig: bool = Field(default=False, description="Ignore the project config file.")

    extensions: list[str] = Field(default_factory=list, description="Extensions to include.")
    ignore: list[str] = Field(default_factory=list, description="Additional ignore patterns.")
    max_depth: int | None = Field(default=None, description="Maximum directory depth.")
    max_size: int | None = Field(default=None, description="Maximum file size in bytes.")

    include_relationships: bool = Field(default=False, description="Show imports/exports.")
    file_summaries: bool = Field(default=False, description="Add per-file purpose summaries.")
    include_dependencies: bool = Field(default=False, description="Show the dependency graph.")
    group_by_feature: bool = Field(default=False, description="Group files by parent directory.")
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1, description="Simultaneous file reads.")

    incremental: bool = Field(default=False, description="Only process changed files.")
    cache_dir: str = Field(
        default_factory=lambda: env_default("DIR2TXT_CACHE_DIR", DEFAULT_CACHE_DIR),
        description="Cache directory, relative to the exported root.",
    )
    clear_cache: bool = Field(default=False, description="Clear the cache before processing.")
    show_changes: bool = Field(default=False, description="Report changed/new/deleted files.")
    highlight_new: bool = Field(default=False, description="Mark new files in the output.")

    debounce: str = Field(
        default_factory=lambda: env_default("DIR2TXT_DEBOUNCE", "1000ms"),
        description="Watch debounce delay (500ms, 2s, 1000).",
    )
    smart_diff: bool = Field(default=False, description="Report structural changes in watch mode.")
    silent: bool = Field(default=False, description="Only log warnings and errors.")

    clear: bool = Field(default=False, description="cache: clear the cache.")
    stats: bool = Field(default=False, description="cache: show statistics.")
    init: bool = Field(default=False, description="config: write the default config file.")
    show: bool = Field(default=False, description="config: print the effective config.")
    delete: bool = Field(default=False, description="config: remove the config file.")
    validate_config: bool = Field(default=False, description="config: check the config file.")

    add: str | None = Field(default=None, description="update: ignore pattern to add.")
    remove: str | None = Field(default=None, description="update: ignore pattern to remove.")
    add_ext: str | None = Field(default=None, description="update: extension to include.")
    remove_ext: str | None = Field(default=None, description="update: extension to stop including.")
    preview: int | None = Field(default=None, ge=1, description="run: only render the first N files.")

    @property
    def has_relationship_options(self) -> bool:
        """Whether any option needs the project relationship analysis."""
        return (
            self.include_relationships
            or self.file_summaries
            or self.include_dependencies
            or self.group_by_feature
        )


class ProjectConfig(BaseModel):
    """Per-project configuration read from ``.dir2txt.json`` (or YAML)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    ignore_patterns: list[str] | None = None
    include_extensions: list[str] | None = None
    max_file_size: int | None = Field(default=None, ge=0)
    max_depth: int | None = Field(default=None, ge=1)

    @property
    def is_empty(self) -> bool:
        """True when no value was provided by a config file."""
        return not self.model_fields_set


def find_config_file(root: Path) -> Path | None:
    """Return the first existing project config file under ``root``."""
    for name in CONFIG_FILES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Path) -> object:
    """Parse a JSON or YAML config file without validating it.

    Raises:
        ConfigFileError: if the file cannot be read or parsed.

    Returns:
        object: the parsed document
    """
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigFileError(path=path, reason=str(e)) from e


def load_project_config(root: Path) -> ProjectConfig:
    """Load the project configuration, merged over the defaults.

    A missing file yields an empty configuration. An unreadable or invalid
    file is reported as a warning and also yields an empty configuration, so
    a broken config never blocks an export.

    Args:
        root (Path): the project root holding the config file

    Returns:
        ProjectConfig: the effective project configuration
    """
    path = find_config_file(root)
    if path is None:
        return ProjectConfig()
    try:
        data = read_config_file(path)
        if not isinstance(data, dict):
            logger.warning("config_not_a_mapping", path=str(path))
            return ProjectConfig()
        merged = {**DEFAULT_PROJECT_CONFIG, **{k: v for k, v in data.items() if v is not None}}
        return ProjectConfig.model_validate(merged)
    except (ConfigFileError, ValidationError) as e:
        logger.warning("config_invalid", path=str(path), error=str(e), hint="run `dir2txt config --validate`")
        return ProjectConfig()


def write_config_file(path: Path, data: dict[str, object]) -> None:
    """Write `data` as JSON, or as YAML when `path` is a YAML file.

    Raises:
        ConfigFileError: if the file cannot be written.
    """
    if path.suffix in {".yaml", ".yml"}:
        text = yaml.safe_dump(data, sort_keys=False)
    else:
        text = json.dumps(data, indent=2) + "\n"
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ConfigFileError(path=path, reason=str(e)) from e


def update_config(root: Path, updates: dict[str, object]) -> Path:
    """Merge `updates` (camelCase keys) into the project config file.

    The current configuration is read as loaded, defaults included. Without a
    config file, ``.dir2txt.json`` is created holding the updates only.

    Raises:
        ConfigFileError: if the merged configuration is invalid or cannot be written.

    Returns:
        Path: the written configuration file
    """
    path = find_config_file(root)
    current = {} if path is None else load_project_config(root).model_dump(by_alias=True, exclude_none=True)
    path = path or root / CONFIG_FILES[0]
    merged = {**current, **updates}
    try:
        ProjectConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigFileError(path=path, reason=str(e)) from e
    write_config_file(path, merged)
    logger.info("config_updated", path=str(path), fields=sorted(updates))
    return path


def create_default_config(root: Path) -> Path:
    """Write ``.dir2txt.json`` with the default configuration.

    Raises:
        ConfigFileError: if the file cannot be written.

    Returns:
        Path: the written configuration file
    """
    path = root / CONFIG_FILES[0]
    write_config_file(path, DEFAULT_PROJECT_CONFIG)
    logger.info("config_created", path=str(path))
    return path


def delete_config(root: Path) -> bool:
    """Remove the project config file if there is one.

    Raises:
        ConfigFileError: if the file exists but cannot be removed.

    Returns:
        bool: True if a file was removed, False if none existed
    """
    path = find_config_file(root)
    if path is None:
        return False
    try:
        path.unlink()
    except OSError as e:
        raise ConfigFileError(path=path, reason=str(e)) from e
    logger.info("config_deleted", path=str(path))
    return True
