"""Validation of the project configuration file.

Each known field is checked with a strict pydantic type adapter; adapter
errors are turned into messages that name the field, the offending value and
what is expected. Invalid entries are dropped from the sanitized config, so a
partly broken file still yields a usable configuration.
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, StrictBool, StrictInt, StrictStr, TypeAdapter, ValidationError

MAX_FILE_SIZE_LIMIT = 10 * 1024 * 1024 * 1024

_EXTENSION_RE = re.compile(r"^\.[\w-]+$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f]")


def _check_glob(pattern: str) -> str:
    if not pattern.strip() or _CONTROL_CHARS_RE.search(pattern):
        raise ValueError("invalid glob pattern")
    return pattern


def _check_extension(ext: str) -> str:
    if not _EXTENSION_RE.match(ext):
        raise ValueError("invalid extension")
    return ext


GlobPattern = Annotated[StrictStr, AfterValidator(_check_glob)]
Extension = Annotated[StrictStr, AfterValidator(_check_extension)]

_PATTERNS = TypeAdapter(list[GlobPattern])
_EXTENSIONS = TypeAdapter(list[Extension])
_FILE_SIZE = TypeAdapter(Annotated[StrictInt, Field(ge=0, le=MAX_FILE_SIZE_LIMIT)])
_BOUNDED = TypeAdapter(Annotated[StrictInt, Field(ge=1, le=100)])
_FLAG = TypeAdapter(StrictBool)

KNOWN_FIELDS = (
    "ignorePatterns",
    "includeExtensions",
    "maxFileSize",
    "maxDepth",
    "concurrency",
    "excludeLarge",
    "followSymlinks",
)

SUGGESTIONS = {
    "ignorePatterns": 'Common ignore patterns: "node_modules/**", "*.log", ".git/**", "dist/**"',
    "includeExtensions": 'Extensions must start with a dot: ".js", ".ts", ".md", ".json"',
    "maxFileSize": "File size in bytes. Examples: 1048576 (1MB), 5242880 (5MB)",
}


class ConfigIssue(BaseModel):
    """One problem found in a configuration file."""

    message: str
    field: str | None = None
    value: Any = None


class ConfigValidation(BaseModel):
    """Outcome of `validate_config`.

    Attributes:
        errors: invalid values; any error makes the configuration invalid.
        warnings: unknown fields, which are ignored when the config is loaded.
        suggestions: hints for the fields that have errors.
        sanitized: the valid entries only, cleaned and de-duplicated.
    """

    errors: list[ConfigIssue] = Field(default_factory=list)
    warnings: list[ConfigIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    sanitized: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _invalid_indexes(adapter: TypeAdapter[Any], values: Any) -> tuple[bool, set[int]]:  # noqa: ANN401
    """Return whether `values` is a list at all, and the indexes of invalid items."""
    try:
        adapter.validate_python(values)
    except ValidationError as e:
        locs = [err["loc"] for err in e.errors()]
        if any(not loc for loc in locs):
            return False, set()
        return True, {loc[0] for loc in locs if isinstance(loc[0], int)}
    return True, set()


def _check_patterns(values: Any, result: ConfigValidation) -> None:  # noqa: ANN401
    field = "ignorePatterns"
    is_list, bad = _invalid_indexes(_PATTERNS, values)
    if not is_list:
        result.errors.append(ConfigIssue(message=f"{field} must be an array", field=field, value=values))
        return
    for index in sorted(bad):
        result.errors.append(
            ConfigIssue(
                message=f'Invalid glob pattern at index {index}: "{values[index]}"',
                field=f"{field}[{index}]",
                value=values[index],
            ),
        )
    clean = [v.strip() for i, v in enumerate(values) if i not in bad]
    if clean:
        result.sanitized[field] = list(dict.fromkeys(clean))


def _check_extensions(values: Any, result: ConfigValidation) -> None:  # noqa: ANN401
    field = "includeExtensions"
    is_list, bad = _invalid_indexes(_EXTENSIONS, values)
    if not is_list:
        result.errors.append(ConfigIssue(message=f"{field} must be an array", field=field, value=values))
        return
    for index in sorted(bad):
        result.errors.append(
            ConfigIssue(
                message=(
                    f'Invalid file extension at index {index}: "{values[index]}". Extensions must start '
                    "with a dot and contain only alphanumeric characters, dashes, or underscores."
                ),
                field=f"{field}[{index}]",
                value=values[index],
            ),
        )
    clean = [v.lower() for i, v in enumerate(values) if i not in bad]
    if clean:
        result.sanitized[field] = list(dict.fromkeys(clean))


def _file_size_problem(value: Any, error: ValidationError) -> str:  # noqa: ANN401
    kind = error.errors()[0]["type"]
    if kind == "greater_than_equal":
        return "Must be non-negative."
    if kind == "less_than_equal":
        return "Must be within reasonable limits (max 10GB)."
    if isinstance(value, float):
        return "Must be an integer."
    return "Must be a number."


def _check_scalar(field: str, value: Any, result: ConfigValidation) -> None:  # noqa: ANN401
    if field == "maxFileSize":
        adapter = _FILE_SIZE
    elif field in {"maxDepth", "concurrency"}:
        adapter = _BOUNDED
    else:
        adapter = _FLAG
    try:
        result.sanitized[field] = adapter.validate_python(value)
    except ValidationError as e:
        if adapter is _FILE_SIZE:
            problem = _file_size_problem(value, e)
        elif adapter is _BOUNDED:
            problem = "Must be an integer between 1 and 100."
        else:
            problem = "Must be true or false."
        result.errors.append(ConfigIssue(message=f"Invalid {field}: {value}. {problem}", field=field, value=value))


def validate_config(data: Any) -> ConfigValidation:  # noqa: ANN401
    """Check a parsed configuration file.

    Args:
        data (Any): the parsed JSON or YAML document

    Returns:
        ConfigValidation: errors, warnings, suggestions and the sanitized config
    """
    result = ConfigValidation()
    if not isinstance(data, dict):
        result.errors.append(ConfigIssue(message="Configuration must be an object", field="config", value=data))
        return result

    for field in KNOWN_FIELDS:
        value = data.get(field)
        if value is None:
            continue
        if field == "ignorePatterns":
            _check_patterns(value, result)
        elif field == "includeExtensions":
            _check_extensions(value, result)
        else:
            _check_scalar(field, value, result)

    for field in data:
        if field not in KNOWN_FIELDS:
            result.warnings.append(
                ConfigIssue(
                    message=f'Unknown configuration field: "{field}". This field will be ignored.',
                    field=field,
                    value=data[field],
                ),
            )

    for field, hint in SUGGESTIONS.items():
        if any(issue.field and issue.field.startswith(field) for issue in result.errors):
            result.suggestions.append(hint)
    return result


def format_issues(errors: list[ConfigIssue], warnings: list[ConfigIssue]) -> str:
    """Render errors (with field and value) and warnings as numbered lists."""
    out: list[str] = []
    if errors:
        out.append("Configuration Errors:")
        for index, issue in enumerate(errors, start=1):
            out.append(f"   {index}. {issue.message}")
            if issue.field:
                out.append(f"      Field: {issue.field}")
            if issue.value is not None:
                out.append(f"      Value: {json.dumps(issue.value, default=str)}")
        out.append("")
    if warnings:
        out.append("Configuration Warnings:")
        out.extend(f"   {index}. {issue.message}" for index, issue in enumerate(warnings, start=1))
        out.append("")
    return "\n".join(out)
