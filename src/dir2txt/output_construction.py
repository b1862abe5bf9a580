from __future__ import annotations

import io
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from dir2txt.cache import CacheStore
from dir2txt.config import (
    BINARY_EXTENSIONS,
    DEFAULT_CONCURRENCY,
    ChangeSet,
    WatchStats,
    guess_file_type,
    guess_language,
)
from dir2txt.file_manipulation import build_tree_lines, contains_binary_content
from dir2txt.logging import logger
from dir2txt.relationships import ProjectAnalysis, group_files_by_directory, render_dependency_graph

if TYPE_CHECKING:
    from collections.abc import Sequence

NEW_MARKER = " [NEW]"


class GenerateOptions(BaseModel):
    """How `generate` renders and where it writes.

    Attributes:
        root: directory the file paths are relative to.
        dry: render the project tree only.
        output_file: destination file, stdout when None.
        tree_files: files shown in the structure section, the processed files when None.
        cache: cache store of the run, used to spot new files without `change_info`.
        change_info: change set of the run; its ``new`` files are marked when `highlight_new`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    root: Path = Field(default_factory=Path.cwd)
    dry: bool = False
    output_file: Path | None = None
    markdown: bool = False
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)

    include_relationships: bool = False
    file_summaries: bool = False
    include_dependencies: bool = False
    group_by_feature: bool = False
    project_analysis: ProjectAnalysis | None = None

    cache: CacheStore | None = None
    change_info: ChangeSet | None = None
    highlight_new: bool = False
    tree_files: list[str] | None = None


class GenerationReport(BaseModel):
    """Counters of one `generate` call."""

    total_files: int = 0
    processed: int = 0
    skipped: int = 0
    content_ms: int = 0
    total_ms: int = 0
    output_file: Path | None = None


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


def _more(total: int, shown: int) -> str:
    return f" (+{total - shown} more)" if total > shown else ""


def build_tree_section(rel_paths: Sequence[str], *, markdown: bool) -> str:
    """Render the ``Project Structure`` section."""
    body = "Project Structure:\n" + "".join(line + "\n" for line in build_tree_lines(rel_paths))
    if markdown:
        return "# Project Structure\n\n```\n" + body + "```\n\n"
    return body + "\n"


def relationship_context(rel: str, options: GenerateOptions) -> str:
    """Render the purpose/imports/exports/dependencies lines preceding a file body.

    Args:
        rel (str): the file, relative to the root
        options (GenerateOptions): selects the parts to render

    Returns:
        str: the context block followed by a blank line, or an empty string
    """
    analysis = options.project_analysis
    if analysis is None:
        return ""
    file_analysis = analysis.relationships.get(rel)
    deps = analysis.dependency_graph.get(rel)
    if file_analysis is None:
        return ""

    parts: list[str] = []
    if options.file_summaries and file_analysis.summary:
        parts.append(f"Purpose: {file_analysis.summary}")
    if options.include_relationships and file_analysis.imports:
        shown = [imp.path for imp in file_analysis.imports[:5]]
        parts.append(f"Imports: {', '.join(shown)}{_more(len(file_analysis.imports), len(shown))}")
    if options.include_relationships and file_analysis.exports:
        shown = [exp.name for exp in file_analysis.exports[:5]]
        parts.append(f"Exports: {', '.join(shown)}{_more(len(file_analysis.exports), len(shown))}")
    if options.include_dependencies and deps is not None:
        if deps.dependencies:
            shown = [Path(d).name for d in deps.dependencies[:3]]
            parts.append(f"Dependencies: {', '.join(shown)}{_more(len(deps.dependencies), len(shown))}")
        if deps.dependents:
            shown = [Path(d).name for d in deps.dependents[:3]]
            parts.append(f"Used by: {', '.join(shown)}{_more(len(deps.dependents), len(shown))}")
    return "\n".join(parts) + "\n\n" if parts else ""


def render_file_block(rel: str, options: GenerateOptions, *, is_new: bool = False) -> str | None:
    """Render one file with its delimiters.

    Args:
        rel (str): the file, relative to `options.root`
        options (GenerateOptions): rendering options
        is_new (bool): mark the file as new in its delimiter

    Returns:
        str | None: the rendered block, an error block if the file cannot be
            read, or None if the file is binary and skipped
    """
    path = options.root / rel
    if path.suffix.lower() in BINARY_EXTENSIONS:
        logger.info("binary_skipped", path=rel, reason="extension")
        return None
    if contains_binary_content(path):
        logger.info("binary_skipped", path=rel, reason="content")
        return None
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("file_unreadable", path=rel, error=str(e))
        return f"\n--- {rel} ---\n[Error: {e}]\n"

    marker = NEW_MARKER if is_new else ""
    context = relationship_context(rel, options)
    if options.markdown:
        lang = guess_language(guess_file_type(path))
        return f"\n## {rel}{marker}\n\n{context}```{lang}\n{content}\n```\n"
    return f"\n--- {rel}{marker} ---\n{context}{content}\n"


def _new_files(file_paths: Sequence[str], options: GenerateOptions) -> set[str]:
    if not options.highlight_new:
        return set()
    if options.change_info is not None:
        return set(options.change_info.new)
    if options.cache is not None and options.cache.enabled:
        return {rel for rel in file_paths if options.cache.get_cached_file(rel) is None}
    return set()


def generate(file_paths: Sequence[str], options: GenerateOptions) -> GenerationReport:
    """Render the selected files into one text or markdown document.

    The document holds the project tree, the optional dependency graph and
    analysis summary, the file contents (binary files skipped) and a trailing
    summary. File contents are read `options.concurrency` at a time; a file
    that cannot be read yields an error block without stopping the others.

    Args:
        file_paths (Sequence[str]): files to render, relative to `options.root`
        options (GenerateOptions): rendering options

    Returns:
        GenerationReport: counters and timings of the generation
    """
    start = time.perf_counter()
    report = GenerationReport(total_files=len(file_paths), output_file=options.output_file)
    out = io.StringIO()

    if not file_paths and not options.tree_files:
        logger.warning("no_files_to_process")
        out.write("No files found to process.\n")
        _write_output(out.getvalue(), options.output_file)
        return report

    logger.info("generation_started", files=len(file_paths))
    out.write(build_tree_section(options.tree_files or file_paths, markdown=options.markdown))
    if options.dry:
        _write_output(out.getvalue(), options.output_file)
        report.total_ms = _elapsed_ms(start)
        return report

    analysis = options.project_analysis
    if options.include_dependencies and analysis is not None:
        graph = render_dependency_graph(analysis)
        if options.markdown:
            out.write("# Dependency Graph\n\n```\n" + graph + "\n```\n\n")
        else:
            out.write("=== DEPENDENCY GRAPH ===\n\n" + graph + "\n\n")
    if options.file_summaries and analysis is not None:
        out.write("# Project Analysis\n\n" if options.markdown else "=== PROJECT ANALYSIS ===\n\n")
        out.write(f"Total Files Analyzed: {analysis.stats.analyzed_files}\n")
        out.write(f"Total Imports: {analysis.stats.total_imports}\n")
        out.write(f"Total Exports: {analysis.stats.total_exports}\n\n")

    out.write("# File Contents\n\n" if options.markdown else "=== FILE CONTENTS ===\n\n")

    if options.group_by_feature and analysis is not None:
        groups = group_files_by_directory(file_paths)
        logger.info("files_grouped", groups=len(groups))
    else:
        groups = {"": list(file_paths)}

    new_files = _new_files(file_paths, options)
    content_start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=options.concurrency) as pool:
        for group, members in groups.items():
            if group:
                out.write(f"\n### {group}\n\n" if options.markdown else f"\n=== {group.upper()} ===\n\n")
            blocks = pool.map(lambda rel: render_file_block(rel, options, is_new=rel in new_files), members)
            for block in blocks:
                if block is None:
                    report.skipped += 1
                else:
                    out.write(block)
                    report.processed += 1
    report.content_ms = _elapsed_ms(content_start)
    report.total_ms = _elapsed_ms(start)

    out.write(
        "\n=== SUMMARY ===\n"
        f"Total files: {report.total_files}\n"
        f"Processed: {report.processed}\n"
        f"Skipped: {report.skipped}\n"
        f"Content processing time: {report.content_ms}ms\n"
        f"Total time: {report.total_ms}ms\n"
    )
    _write_output(out.getvalue(), options.output_file)
    logger.info(
        "generation_complete",
        processed=report.processed,
        skipped=report.skipped,
        total_ms=report.total_ms,
        output=str(options.output_file) if options.output_file else "stdout",
    )
    return report


def generate_preview(file_paths: Sequence[str], count: int, options: GenerateOptions) -> GenerationReport:
    """Render the full project tree followed by the first `count` files only.

    Args:
        file_paths (Sequence[str]): files of the run, relative to `options.root`
        count (int): number of files whose content is rendered
        options (GenerateOptions): rendering options

    Returns:
        GenerationReport: counters of the rendered files
    """
    start = time.perf_counter()
    report = GenerationReport(total_files=len(file_paths), output_file=options.output_file)
    out = io.StringIO()
    tree = build_tree_lines(options.tree_files or file_paths)
    out.write("Preview - Project Structure:\n" + "".join(line + "\n" for line in tree) + "\n")
    out.write(f"=== PREVIEW (First {count} files) ===\n\n")
    for rel in file_paths[:count]:
        block = render_file_block(rel, options)
        if block is None:
            report.skipped += 1
        else:
            out.write(block)
            report.processed += 1
    if len(file_paths) > count:
        out.write(f"\n... and {len(file_paths) - count} more files\n")
    _write_output(out.getvalue(), options.output_file)
    report.total_ms = _elapsed_ms(start)
    logger.info("preview_generated", shown=report.processed, total=report.total_files)
    return report


def _write_output(content: str, output_file: Path | None) -> None:
    if output_file is None:
        sys.stdout.write(content)
        return
    output_file.parent.mkdir(parents=True, exist_ok=True)
    output_file.write_text(content, encoding="utf-8")


def build_watch_header(
    change_type: str,
    stats: WatchStats,
    change_info: ChangeSet | None = None,
    now: datetime | None = None,
) -> str:
    """Render the report prepended to the output file after a watch cycle.

    Args:
        change_type (str): what triggered the cycle (``initial``, ``add``, ``change``, ``unlink``)
        stats (WatchStats): statistics of the watch session
        change_info (ChangeSet | None): the cache diff of the cycle, if any
        now (datetime | None): generation time, defaults to the current UTC time

    Returns:
        str: the header, ending with a ``---`` separator line
    """
    generated = (now or datetime.now(UTC)).isoformat()
    last_update = stats.last_update.isoformat() if stats.last_update else "N/A"
    lines = [
        "# Dir2Txt Watch Mode Report",
        f"Generated: {generated}",
        f"Trigger: {change_type}",
        f"Files Watched: {stats.files_watched}",
        f"Total Changes: {stats.total_changes}",
        f"Avg Processing Time: {round(stats.average_processing_time)}ms",
        f"Last Update: {last_update}",
    ]
    if change_info is not None:
        lines += [
            "",
            "Change Details:",
            f"- Files changed: {len(change_info.changed)}",
            f"- New files: {len(change_info.new)}",
            f"- Deleted files: {len(change_info.deleted)}",
        ]
    lines += ["", "---"]
    return "\n".join(lines)
