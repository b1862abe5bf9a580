"""
dir2txt: export a project directory as a single text or markdown document.

Overview
--------
``dir2txt run`` walks the project, keeps the files selected by the extension,
size, depth and ignore filters (``.dir2txt.json`` and the command line), and
writes a project tree followed by every file's content to one document. With
``--incremental`` only the files changed since the previous run are exported,
using the cache kept in ``.dir2txt-cache/``.

``dir2txt watch`` keeps the export up to date: file-system events are
debounced and each burst regenerates the output from the cache diff.

Usage
-----
    - Export the current directory to directory-output.txt:
        dir2txt
    - Markdown export of Python and TOML files only:
        dir2txt run --markdown --extensions .py .toml --output project.md
    - Only what changed since the last run, marking new files:
        dir2txt run --incremental --show-changes --highlight-new
    - Regenerate on change, 500 ms after the last event:
        dir2txt watch --output project.txt --debounce 500ms
    - Inspect or reset the cache / the project config:
        dir2txt cache --stats
        dir2txt config --init
    - Check the project config, or add an ignore pattern to it:
        dir2txt config --validate
        dir2txt update --add "*.tmp"
    - Tree plus the first 5 files only:
        dir2txt run --preview 5
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from dir2txt import __version__
from dir2txt.cache import CacheStore, create_cache, process_incremental
from dir2txt.config import DEFAULT_OUTPUT_FILE, ChangeSet
from dir2txt.exceptions import Dir2TxtError, NoFilesFoundError
from dir2txt.file_manipulation import discovery_options_for, list_files, now_iso
from dir2txt.logging import logger, setup_logging
from dir2txt.output_construction import GenerateOptions, generate, generate_preview
from dir2txt.relationships import ProjectAnalysis, analyze_project
from dir2txt.settings import (
    DEFAULT_PROJECT_CONFIG,
    Settings,
    create_default_config,
    delete_config,
    find_config_file,
    load_project_config,
    read_config_file,
    update_config,
)
from dir2txt.validation import format_issues, validate_config
from dir2txt.watcher import parse_debounce, run_watch

if TYPE_CHECKING:
    from collections.abc import Sequence
    from typing import Any

COMMANDS = ("run", "watch", "cache", "config", "update", "status")


def _add_discovery_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--output", type=Path, default=None, help="Output file.")
    p.add_argument("--markdown", action="store_true", help="Output in markdown format.")
    p.add_argument(
        "--extensions",
        nargs="+",
        default=[],
        help="Only include files with these extensions (e.g. .py .ts).",
    )
    p.add_argument(
        "--ignore",
        nargs="+",
        default=[],
        help='Additional ignore patterns (e.g. "*.test.js" "temp/**").',
    )
    p.add_argument("--max-depth", type=int, default=None, help="Maximum directory depth.")
    p.add_argument("--max-size", type=int, default=None, help="Maximum file size in bytes.")
    p.add_argument("--noconfig", action="store_true", help="Ignore the .dir2txt.json config file.")


def _add_cache_dir_argument(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--cache-dir",
        type=str,
        default=None,
        help="Cache directory (default: .dir2txt-cache, or $DIR2TXT_CACHE_DIR).",
    )


def _positive_int(value: str) -> int:
    number = _non_negative_int(value)
    if number == 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value!r}")
    return number


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"expected a non-negative integer, got {value!r}")
    return number


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--repo", type=Path, default=Path(), help="Project root.")
    common.add_argument("--log-file", type=str, default="", help="Log file path.")

    p = argparse.ArgumentParser(
        prog="dir2txt",
        description="Export a project directory as a single text or markdown document.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command")

    run = sub.add_parser("run", parents=[common], help="Export the project (default command).")
    _add_discovery_arguments(run)
    run.add_argument("--dry", action="store_true", help="Only show the file tree, no file contents.")
    run.add_argument(
        "--preview",
        type=_positive_int,
        default=None,
        metavar="COUNT",
        help="Show the file tree and only the first COUNT files.",
    )
    run.add_argument(
        "--include-relationships",
        action="store_true",
        help="Include import/export relationships between files.",
    )
    run.add_argument("--file-summaries", action="store_true", help="Add purpose summaries per file.")
    run.add_argument(
        "--include-dependencies",
        action="store_true",
        help="Show the dependency graph and file relationships.",
    )
    run.add_argument("--group-by-feature", action="store_true", help="Group files by parent directory.")
    run.add_argument("--concurrency", type=int, default=None, help="Simultaneous file reads.")
    run.add_argument("--incremental", action="store_true", help="Only process changed files using the cache.")
    _add_cache_dir_argument(run)
    run.add_argument("--clear-cache", action="store_true", help="Clear the cache before processing.")
    run.add_argument("--show-changes", action="store_true", help="Show what changed since the last run.")
    run.add_argument("--highlight-new", action="store_true", help="Mark new files in the output.")

    watch = sub.add_parser("watch", parents=[common], help="Regenerate the output on file changes.")
    _add_discovery_arguments(watch)
    watch.add_argument(
        "--debounce",
        type=str,
        default=None,
        help='Debounce delay (e.g. "500ms", "2s", "1000").',
    )
    watch.add_argument("--smart-diff", action="store_true", help="Report structural changes on each update.")
    watch.add_argument("--silent", action="store_true", help="Only log warnings and errors.")
    watch.add_argument(
        "--no-incremental",
        dest="incremental",
        action="store_false",
        default=True,
        help="Regenerate every file on each update.",
    )
    _add_cache_dir_argument(watch)
    watch.add_argument("--show-changes", action="store_true", help="Show what changed on each update.")

    cache = sub.add_parser("cache", parents=[common], help="Manage the incremental processing cache.")
    cache.add_argument("--clear", action="store_true", help="Clear the cache.")
    cache.add_argument("--stats", action="store_true", help="Show cache statistics.")
    _add_cache_dir_argument(cache)

    config = sub.add_parser("config", parents=[common], help="Manage the project config file.")
    config.add_argument("--init", action="store_true", help="Write the default .dir2txt.json.")
    config.add_argument("--show", action="store_true", help="Show the current configuration.")
    config.add_argument("--delete", action="store_true", help="Delete the configuration file.")
    config.add_argument(
        "--validate",
        dest="validate_config",
        action="store_true",
        help="Check the configuration file and show a sanitized version.",
    )

    update = sub.add_parser("update", parents=[common], help="Update settings of the project config file.")
    update.add_argument("--add", type=str, default=None, help="Add an ignore pattern.")
    update.add_argument("--remove", type=str, default=None, help="Remove an ignore pattern.")
    update.add_argument("--add-ext", type=str, default=None, help="Add a file extension to include.")
    update.add_argument("--remove-ext", type=str, default=None, help="Remove a file extension from the include list.")
    update.add_argument("--max-size", type=_non_negative_int, default=None, help="Set the maximum file size in bytes.")

    sub.add_parser("status", parents=[common], help="Show the directory status and configuration.")

    args_list = list(sys.argv[1:] if argv is None else argv)
    if not args_list or (args_list[0] not in COMMANDS and args_list[0] not in {"-h", "--help", "--version"}):
        args_list.insert(0, "run")
    args = p.parse_args(args_list)
    return Settings(**{k: v for k, v in vars(args).items() if v is not None})


def _print_change_analysis(files: Sequence[str], change_info: ChangeSet) -> None:
    print("Change Analysis:")
    print(f"   Total files: {len(files)}")
    print(f"   Changed: {len(change_info.changed)}")
    print(f"   New: {len(change_info.new)}")
    print(f"   Deleted: {len(change_info.deleted)}")
    if change_info.new:
        shown = [Path(f).name for f in change_info.new[:5]]
        more = f" (+{len(change_info.new) - 5} more)" if len(change_info.new) > 5 else ""  # noqa: PLR2004
        print(f"   New files: {', '.join(shown)}{more}")


def run_command(settings: Settings, root: Path) -> int:
    """Export `root` once, incrementally when asked to.

    Raises:
        NoFilesFoundError: if no file matches the filters.

    Returns:
        int: the exit code
    """
    output_file = settings.output if settings.output is not None or settings.dry else Path(DEFAULT_OUTPUT_FILE)

    cache: CacheStore | None = None
    if settings.incremental or settings.show_changes or settings.clear_cache:
        cache = create_cache(root, settings.cache_dir)
        if settings.clear_cache:
            cache.clear()
            cache = create_cache(root, settings.cache_dir)

    files = list_files(root, discovery_options_for(root, settings, output_file))
    if not files:
        raise NoFilesFoundError(root=root)
    print(f"Found {len(files)} files")

    change_info = cache.get_changed_files(files) if cache is not None else None
    if change_info is not None and settings.show_changes:
        _print_change_analysis(files, change_info)

    def render(batch: list[str]) -> dict[str, Any] | None:
        analysis: ProjectAnalysis | None = None
        if settings.has_relationship_options:
            analysis = analyze_project(root, files)
            print(
                f"Analyzed {analysis.stats.analyzed_files} files: "
                f"{analysis.stats.total_imports} imports, {analysis.stats.total_exports} exports"
            )
        options = GenerateOptions(
            root=root,
            dry=settings.dry,
            output_file=output_file,
            markdown=settings.markdown,
            concurrency=settings.concurrency,
            include_relationships=settings.include_relationships,
            file_summaries=settings.file_summaries,
            include_dependencies=settings.include_dependencies,
            group_by_feature=settings.group_by_feature,
            project_analysis=analysis,
            cache=cache,
            change_info=change_info,
            highlight_new=settings.highlight_new,
            tree_files=files if settings.incremental else None,
        )
        if settings.preview:
            print(f"Generating preview with first {settings.preview} files...")
            report = generate_preview(batch, settings.preview, options)
        else:
            report = generate(batch, options)
        if output_file is not None:
            print(f"Wrote {output_file} files={report.processed} skipped={report.skipped}")
        blob = analysis.to_blob() if analysis is not None else None
        if cache is not None:
            cache.update_relationships_cache(blob, persist=False)
        return blob

    if settings.incremental and cache is not None and change_info is not None:
        if change_info.is_empty:
            print("No changes detected, skipping processing")
        else:
            print(f"Processing {len(change_info.changed)} changed files")
        result = process_incremental(
            files,
            cache,
            lambda batch: render(batch) if batch or change_info.deleted else None,
        )
        use_cached = change_info.is_empty and settings.has_relationship_options
        cached_analysis = ProjectAnalysis.from_blob(result) if use_cached else None
        if cached_analysis is not None:
            print(
                f"Using cached analysis of {cached_analysis.stats.analyzed_files} files: "
                f"{cached_analysis.stats.total_imports} imports, {cached_analysis.stats.total_exports} exports"
            )
    else:
        render(files)
        if cache is not None:
            for rel in files:
                cache.update_file_cache(rel, {"processed": True, "processedAt": now_iso()})
            cache.save()

    if cache is not None:
        print(f"Cache updated: {cache.get_stats().file_count} files cached")
    return 0


def watch_command(settings: Settings, root: Path) -> int:
    """Watch `root` until interrupted."""
    debounce_ms = parse_debounce(settings.debounce)
    if settings.output is None:
        print("No output file given, updates are printed to stdout")
    print(f"Watching {root} (debounce {debounce_ms}ms). Press Ctrl+C to stop.")
    stats = run_watch(settings.model_copy(update={"repo": root}))
    print(
        f"Watch mode stopped: changes={stats.total_changes} "
        f"files={stats.files_watched} avg={round(stats.average_processing_time)}ms"
    )
    return 0


def cache_command(settings: Settings, root: Path) -> int:
    """Clear the cache or describe it."""
    cache = create_cache(root, settings.cache_dir)
    if settings.clear:
        cache.clear()
        print("Cache cleared")
        return 0

    stats = cache.get_stats()
    if settings.stats:
        print("Cache Statistics:")
        print(f"   Cache Directory: {stats.cache_dir}")
        print(f"   Enabled: {stats.enabled}")
        print(f"   Cached Files: {stats.file_count}")
        print(f"   Snapshots: {stats.snapshot_count}")
        print(f"   Relationships: {stats.relationship_count}")
        return 0

    print("Cache Information:")
    print(f"   Directory: {stats.cache_dir}")
    print(f"   Status: {'enabled' if stats.enabled else 'disabled'}")
    print(f"   Files: {stats.file_count}")
    print("Use `dir2txt cache --stats` for details or `dir2txt cache --clear` to reset it.")
    return 0


def config_command(settings: Settings, root: Path) -> int:
    """Create, delete, validate or show the project config file."""
    if settings.init:
        path = create_default_config(root)
        print(f"Created {path}")
        return 0
    if settings.delete:
        print("Configuration file deleted" if delete_config(root) else "No configuration file found")
        return 0
    if settings.validate_config:
        return _validate_config(root)

    path = find_config_file(root)
    if path is None:
        print("No configuration file found. Default settings:")
        print(json.dumps(DEFAULT_PROJECT_CONFIG, indent=2))
    else:
        print(f"Current configuration ({path.name}):")
        print(json.dumps(load_project_config(root).model_dump(by_alias=True, exclude_none=True), indent=2))
    return 0


def _validate_config(root: Path) -> int:
    path = find_config_file(root)
    if path is None:
        print('No configuration file found. Run "dir2txt config --init" to create one.')
        return 0

    print(f"Validating {path.name}...")
    result = validate_config(read_config_file(path))
    if result.is_valid:
        print("Configuration is valid!")
        if result.warnings:
            print(format_issues([], result.warnings))
        return 0

    print("Configuration has errors:")
    print(format_issues(result.errors, result.warnings))
    if result.suggestions:
        print("Suggestions:")
        for suggestion in result.suggestions:
            print(f"   {suggestion}")
    print("Sanitized configuration would be:")
    print(json.dumps(result.sanitized, indent=2))
    return 1


def _toggle(items: list[str], add: str | None, remove: str | None, label: str) -> list[str]:
    if add is not None:
        if add in items:
            print(f"{label} already exists: {add}")
        else:
            items.append(add)
            print(f"Added {label.lower()}: {add}")
    if remove is not None:
        if remove in items:
            items.remove(remove)
            print(f"Removed {label.lower()}: {remove}")
        else:
            print(f"{label} not found: {remove}")
    return items


def _as_extension(ext: str | None) -> str | None:
    if ext is None:
        return None
    return ext if ext.startswith(".") else f".{ext}"


def update_command(settings: Settings, root: Path) -> int:
    """Add or remove ignore patterns and extensions, or set the size limit, in the config file."""
    current = load_project_config(root) if find_config_file(root) else None
    updates: dict[str, object] = {}

    if settings.add is not None or settings.remove is not None:
        patterns = list(current.ignore_patterns or []) if current else []
        updates["ignorePatterns"] = _toggle(patterns, settings.add, settings.remove, "Ignore pattern")
    if settings.add_ext is not None or settings.remove_ext is not None:
        extensions = list(current.include_extensions or []) if current else []
        updates["includeExtensions"] = _toggle(
            extensions,
            _as_extension(settings.add_ext),
            _as_extension(settings.remove_ext),
            "Extension",
        )
    if settings.max_size is not None:
        updates["maxFileSize"] = settings.max_size
        print(f"Set max file size: {settings.max_size} bytes")

    if not updates:
        print("No changes specified")
        print("Use `dir2txt update --help` to see the available options.")
        return 0

    path = update_config(root, updates)
    print(f"Configuration updated: {path.name}")
    return 0


def status_command(settings: Settings, root: Path) -> int:
    """Describe the directory, its configuration and how many files it holds."""
    print("Directory Status:")
    print(f"   Working Directory: {root}")
    path = find_config_file(root)
    if path is None:
        print("   Configuration: Using defaults (.gitignore or built-in)")
    else:
        config = load_project_config(root)
        print(f"   Configuration: {path.name} found")
        print(f"   Ignore Patterns: {len(config.ignore_patterns or [])}")
        print(f"   Include Extensions: {len(config.include_extensions or [])}")
        print(f"   Max File Size: {config.max_file_size or 'not set'}")

    options = discovery_options_for(root, settings).model_copy(update={"exclude_large": False})
    print(f"   Total Files: {len(list_files(root, options))}")
    return 0


HANDLERS = {
    "run": run_command,
    "watch": watch_command,
    "cache": cache_command,
    "config": config_command,
    "update": update_command,
    "status": status_command,
}


def main(argv: Sequence[str] | None = None) -> int:
    settings = parse_args(argv)
    if settings.log_file or settings.silent:
        setup_logging(
            settings.log_file or None,
            logging.WARNING if settings.silent else logging.INFO,
            force=True,
        )

    root = settings.repo.resolve()
    try:
        return HANDLERS[settings.command](settings, root)
    except Dir2TxtError as e:
        logger.error("command_failed", command=settings.command, error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
