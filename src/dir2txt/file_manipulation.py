from __future__ import annotations

import os
import stat
from datetime import UTC, datetime
from functools import cache
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pathspec
from pydantic import BaseModel, Field

from dir2txt.config import BASIC_IGNORES, DEFAULT_EXCLUDES
from dir2txt.logging import logger
from dir2txt.settings import ProjectConfig, load_project_config

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from dir2txt.settings import Settings

_BINARY_SNIFF_BYTES = 8192
_NON_PRINTABLE_RATIO = 0.3


class DiscoveryOptions(BaseModel):
    """Filters applied while listing the files of a project."""

    include_extensions: list[str] = Field(default_factory=list)
    ignore_patterns: list[str] = Field(default_factory=list)
    max_depth: int | None = Field(default=None, ge=1)
    max_file_size: int | None = Field(default=None, ge=0)
    exclude_paths: list[str] = Field(default_factory=list)
    exclude_large: bool = True

    @classmethod
    def from_sources(
        cls,
        project_config: ProjectConfig,
        *,
        extensions: Sequence[str] = (),
        ignore: Sequence[str] = (),
        max_depth: int | None = None,
        max_file_size: int | None = None,
        exclude_paths: Sequence[str] = (),
    ) -> DiscoveryOptions:
        """Merge command-line values over the project configuration.

        Extra ignore patterns are appended to the configured ones, every other
        command-line value replaces its configured counterpart.
        """
        return cls(
            include_extensions=list(extensions) or list(project_config.include_extensions or []),
            ignore_patterns=[*(project_config.ignore_patterns or []), *ignore],
            max_depth=max_depth or project_config.max_depth,
            max_file_size=max_file_size or project_config.max_file_size,
            exclude_paths=list(exclude_paths),
        )


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


def normalize_globs(globs: Iterable[str]) -> list[str]:
    """Normalize a sequence of path glob patterns.

    Strips whitespace, drops empty entries and replaces backslashes with
    forward slashes.

    Args:
        globs (Iterable[str]): the glob patterns to normalize

    Returns:
        list[str]: the normalized glob patterns
    """
    out: list[str] = []
    for g in globs:
        g2 = (g or "").strip()
        if not g2:
            continue
        out.append(g2.replace("\\", "/"))
    return out


@cache
def _compile_spec(patterns: tuple[str, ...]) -> pathspec.GitIgnoreSpec:
    return pathspec.GitIgnoreSpec.from_lines(patterns)


def build_ignore_spec(patterns: Iterable[str]) -> pathspec.GitIgnoreSpec:
    """Compile ignore patterns with gitignore semantics.

    A pattern without a slash matches at any depth, a bare directory name
    excludes everything below it, and ``!`` re-includes a path.

    Args:
        patterns (Iterable[str]): gitignore-style patterns

    Returns:
        pathspec.GitIgnoreSpec: the compiled matcher
    """
    return _compile_spec(tuple(patterns))


def match_any_glob(rel: str, globs: Sequence[str]) -> bool:
    """Check if a relative path matches any of the provided glob patterns.

    Args:
        rel (str): the relative path to check, POSIX separators
        globs (Sequence[str]): gitignore-style patterns to match against

    Returns:
        bool: True if `rel` is matched by `globs`, False otherwise
    """
    return build_ignore_spec(normalize_globs(globs)).match_file(rel)


def read_gitignore(root: Path) -> list[str]:
    """Return the lines of ``root/.gitignore``, or an empty list without one."""
    path = root / ".gitignore"
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []
    except OSError as e:
        logger.warning("gitignore_unreadable", path=str(path), error=str(e))
        return []


def resolve_ignore_patterns(root: Path, patterns: Sequence[str]) -> list[str]:
    """Pick the effective ignore patterns for a discovery run.

    Explicit patterns win; without any, the lines of ``.gitignore`` are used.
    The basic ignores are always added.

    Args:
        root (Path): the project root
        patterns (Sequence[str]): explicit patterns (command line or config file)

    Returns:
        list[str]: de-duplicated, normalized patterns
    """
    chosen = list(patterns) or read_gitignore(root)
    return list(dict.fromkeys(normalize_globs([*BASIC_IGNORES, *chosen])))


def is_regular_file(path: Path) -> bool:
    """Check if a file is regular.

    Args:
        path (Path): path to test.

    Returns:
        bool: True if the file is regular, False otherwise.
    """
    try:
        st = path.stat()
    except OSError:
        return False
    return stat.S_ISREG(st.st_mode)


def walk_files(root: Path, max_depth: int | None = None) -> list[Path]:
    """Walk the directory tree rooted at `root` and return a list of all files.

    Directories named in `DEFAULT_EXCLUDES` are pruned. Symbolic links to
    directories are not followed.

    Args:
        root (Path): the root directory to walk
        max_depth (int | None): maximum number of path components of a
            returned file relative to `root` (1 = files directly in `root`)

    Returns:
        list[Path]: a list of all files found
    """
    results: list[Path] = []
    for current, dirs, files in os.walk(root):
        depth = len(Path(current).relative_to(root).parts)
        if max_depth is not None and depth + 1 >= max_depth:
            dirs[:] = []
        else:
            dirs[:] = [d for d in dirs if d not in DEFAULT_EXCLUDES]
        if max_depth is not None and depth + 1 > max_depth:
            continue
        for f in files:
            p = Path(current) / f
            if is_regular_file(p):
                results.append(p)
    return results


def filter_by_extension(rels: Sequence[str], include_extensions: Sequence[str]) -> list[str]:
    """Keep only the paths whose extension is listed (case-insensitive)."""
    if not include_extensions:
        return list(rels)
    allowed = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in include_extensions}
    return [r for r in rels if Path(r).suffix.lower() in allowed]


def filter_by_size(rels: Sequence[str], root: Path, max_file_size: int | None) -> list[str]:
    """Keep only the paths whose size does not exceed `max_file_size`.

    Files that vanished or cannot be stat'ed are dropped with a warning.
    """
    if not max_file_size or max_file_size <= 0:
        return list(rels)
    kept: list[str] = []
    for r in rels:
        try:
            if (root / r).stat().st_size <= max_file_size:
                kept.append(r)
        except OSError as e:
            logger.warning("file_unavailable", path=r, error=str(e))
    return kept


def list_files(root: Path, options: DiscoveryOptions | None = None) -> list[str]:
    """List the project files selected by `options`.

    The result is deterministic for a given filesystem state: relative POSIX
    paths, sorted.

    Args:
        root (Path): the project root
        options (DiscoveryOptions | None): discovery filters

    Returns:
        list[str]: the selected paths, relative to `root`
    """
    opts = options or DiscoveryOptions()
    ignores = resolve_ignore_patterns(root, opts.ignore_patterns)

    rels = [relpath(p, root) for p in walk_files(root, max_depth=opts.max_depth)]
    found = len(rels)
    exc_paths = [p.strip().strip("/").replace("\\", "/") for p in opts.exclude_paths if p.strip()]
    rels = [r for r in rels if not any(r == ep or r.startswith(ep + "/") for ep in exc_paths)]
    spec = build_ignore_spec(ignores)
    rels = [r for r in rels if not spec.match_file(r)]
    rels = filter_by_extension(rels, opts.include_extensions)
    if opts.exclude_large:
        rels = filter_by_size(rels, root, opts.max_file_size)

    logger.debug("files_listed", root=str(root), found=found, selected=len(rels))
    return sorted(rels)


def generated_paths(root: Path, cache_dir: str | Path, output_file: Path | None = None) -> list[str]:
    """Paths under `root` that dir2txt writes itself (cache directory, output file).

    Args:
        root (Path): the project root
        cache_dir (str | Path): the cache directory, relative to `root` unless absolute
        output_file (Path | None): the output file, if any

    Returns:
        list[str]: those paths relative to `root`; paths outside `root` are left out
    """
    rels: list[str] = []
    for p in ((root / cache_dir).resolve(), output_file.resolve() if output_file else None):
        if p is not None and p.is_relative_to(root):
            rels.append(relpath(p, root))
    return rels


def discovery_options_for(root: Path, settings: Settings, output_file: Path | None = None) -> DiscoveryOptions:
    """Discovery options of a command: the project config overlaid with the command line.

    The project config is skipped with ``--noconfig``; dir2txt's own cache and
    output file are always excluded.
    """
    project_config = ProjectConfig() if settings.noconfig else load_project_config(root)
    return DiscoveryOptions.from_sources(
        project_config,
        extensions=settings.extensions,
        ignore=settings.ignore,
        max_depth=settings.max_depth,
        max_file_size=settings.max_size,
        exclude_paths=generated_paths(root, settings.cache_dir, output_file),
    )


def contains_binary_content(path: Path) -> bool:
    """Heuristically decide whether a file holds binary data.

    Samples the first 8 KiB: a NUL byte, or more than 30% of control
    characters other than tab/newline/carriage return, means binary. An
    unreadable file is treated as binary.

    Args:
        path (Path): the file to sniff

    Returns:
        bool: True if the file looks binary
    """
    try:
        with path.open("rb") as f:
            sample = f.read(_BINARY_SNIFF_BYTES)
    except OSError:
        return True
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    non_printable = sum(1 for byte in sample if byte < 32 and byte not in {9, 10, 13})  # noqa: PLR2004
    return non_printable / len(sample) > _NON_PRINTABLE_RATIO


def build_tree_lines(rel_paths: Sequence[str]) -> list[str]:
    """Build a visual tree representation of file paths.

    Directories are listed before files at every level, both sorted
    case-insensitively.

    Args:
        rel_paths (Sequence[str]): file paths relative to the root, POSIX separators

    Returns:
        list[str]: the tree lines, without trailing newlines
    """
    rels = sorted(
        {p.strip("/").replace("\\", "/") for p in rel_paths if p.strip()},
        key=str.lower,
    )
    tree: dict[str, Any] = {}
    for rp in rels:
        cur = tree
        parts = rp.split("/")
        for i, part in enumerate(parts):
            if i == len(parts) - 1:
                cur.setdefault("__files__", set()).add(part)
            else:
                cur = cur.setdefault(part, {})

    lines: list[str] = []

    def walk(node: dict[str, Any], prefix: str) -> None:
        dirs = sorted([k for k in node if k != "__files__"], key=str.lower)
        files = sorted(node.get("__files__", set()), key=str.lower)
        entries: list[tuple[str, str, Any]] = []
        entries.extend(("dir", d, node[d]) for d in dirs)
        entries.extend(("file", f, None) for f in files)
        for idx, (kind, name, child) in enumerate(entries):
            last = idx == len(entries) - 1
            branch = "└── " if last else "├── "
            lines.append(prefix + branch + name + ("/" if kind == "dir" else ""))
            if kind == "dir":
                ext = "    " if last else "│   "
                walk(child, prefix + ext)

    walk(tree, "")
    return lines


def iso_timestamp(moment: datetime) -> str:
    """Format an aware datetime as UTC ISO 8601 with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    """Return the current UTC date and time in ISO 8601 format.

    Returns:
        str: the current date and time, e.g. ``2025-01-01T10:00:00.123Z``
    """
    return iso_timestamp(datetime.now(UTC))
