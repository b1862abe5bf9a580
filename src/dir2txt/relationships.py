"""Regex-based import/export extraction and file dependency graph.

Nothing here resolves modules semantically: imports are matched with
per-language regular expressions and linked to project files by path
heuristics.
"""

from __future__ import annotations

import posixpath
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from dir2txt.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

_M = re.MULTILINE

_JS_IMPORTS = [
    re.compile(
        r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)(?:\s*,\s*(?:\{[^}]*\}|\*\s+as\s+\w+|\w+))*\s+from\s+)?['"`]([^'"`]+)['"`]"""
    ),
    re.compile(r"""require\s*\(\s*['"`]([^'"`]+)['"`]\s*\)"""),
    re.compile(r"""import\s*\(\s*['"`]([^'"`]+)['"`]\s*\)"""),
]

IMPORT_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "javascript": _JS_IMPORTS,
    "typescript": [
        *_JS_IMPORTS,
        re.compile(r"""import\s+type\s+(?:\{[^}]*\}|\w+)\s+from\s+['"`]([^'"`]+)['"`]"""),
    ],
    "python": [
        re.compile(r"^from\s+(\S+)\s+import", _M),
        re.compile(r"^import\s+([^\s,]+)", _M),
    ],
    "java": [re.compile(r"^import\s+(?:static\s+)?([^;]+);", _M)],
    "cpp": [re.compile(r"""^#include\s*[<"]([^>"]+)[>"]""", _M)],
    "csharp": [re.compile(r"^using\s+([^;]+);", _M)],
    "go": [
        re.compile(r'^import\s+"([^"]+)"', _M),
        re.compile(r"^import\s+\(\s*([^)]+)\s*\)", _M | re.DOTALL),
    ],
    "rust": [re.compile(r"^use\s+([^;]+);", _M)],
}

EXPORT_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "javascript": [
        re.compile(r"export\s+(?:default\s+)?(?:const|let|var|function|class)\s+(\w+)"),
        re.compile(r"export\s+\{([^}]+)\}"),
        re.compile(r"""export\s+\*\s+from\s+['"`]([^'"`]+)['"`]"""),
        re.compile(r"module\.exports\s*=\s*(\w+)"),
    ],
    "typescript": [
        re.compile(r"export\s+(?:default\s+)?(?:const|let|var|function|class|interface|type|enum)\s+(\w+)"),
        re.compile(r"export\s+\{([^}]+)\}"),
        re.compile(r"""export\s+\*\s+from\s+['"`]([^'"`]+)['"`]"""),
    ],
    "python": [
        re.compile(r"^def\s+(\w+)\(", _M),
        re.compile(r"^class\s+(\w+)", _M),
        re.compile(r"^(\w+)\s*=", _M),
    ],
    "java": [
        re.compile(r"public\s+(?:static\s+)?(?:class|interface|enum)\s+(\w+)"),
        re.compile(r"public\s+(?:static\s+)?[^(]+\s+(\w+)\s*\("),
    ],
}

EXT2ANALYSIS_LANG: dict[str, str] = {
    ".js": "javascript",
    ".mjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".c": "cpp",
    ".h": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".rs": "rust",
    ".vue": "vue",
    ".php": "php",
}

_GO_IMPORT_ENTRY = re.compile(r'"([^"]+)"')

# (file-name pattern, summary template) pairs, in priority order.
_NAME_HINTS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"test|spec", re.IGNORECASE), "Test file for {name}"),
    (re.compile(r"config|setup|webpack|babel|jest", re.IGNORECASE), "Configuration file for project setup"),
    (re.compile(r"component", re.IGNORECASE), "Component module - {stem}"),
    (re.compile(r"service|api|client", re.IGNORECASE), "Service module for application logic"),
    (re.compile(r"route|router|controller", re.IGNORECASE), "Route handler for API endpoints"),
    (re.compile(r"middleware|auth|guard", re.IGNORECASE), "Middleware for request processing"),
    (re.compile(r"model|entity|schema", re.IGNORECASE), "Data model definition"),
    (re.compile(r"util|helper|common|shared", re.IGNORECASE), "Utility functions and helpers"),
]
_HAS_CLASS = re.compile(r"class\s+\w+")
_HAS_FUNCTION = re.compile(r"function\s+\w+|const\s+\w+\s*=\s*\(|def\s+\w+")
_TEST_SUFFIX = re.compile(r"\.(test|spec)\.[^.]+$")


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImportInfo(_CamelModel):
    """One import statement found in a file."""

    path: str
    line: int
    raw: str
    resolved: str


class ExportInfo(_CamelModel):
    """One exported symbol found in a file."""

    name: str
    line: int
    raw: str


class FileAnalysis(_CamelModel):
    """Relationship analysis of a single file."""

    file_path: str
    language: str = "unknown"
    summary: str = ""
    imports: list[ImportInfo] = Field(default_factory=list)
    exports: list[ExportInfo] = Field(default_factory=list)
    error: str | None = None

    @property
    def import_count(self) -> int:
        return len(self.imports)

    @property
    def export_count(self) -> int:
        return len(self.exports)


class DependencyInfo(_CamelModel):
    """Links of one file within the project dependency graph."""

    dependencies: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    is_leaf: bool = True
    is_root: bool = True


class ProjectStats(_CamelModel):
    total_files: int = 0
    analyzed_files: int = 0
    total_imports: int = 0
    total_exports: int = 0


class ProjectAnalysis(_CamelModel):
    """Relationships of every analyzed file, keyed by project-relative path."""

    relationships: dict[str, FileAnalysis] = Field(default_factory=dict)
    dependency_graph: dict[str, DependencyInfo] = Field(default_factory=dict)
    stats: ProjectStats = Field(default_factory=ProjectStats)

    def to_blob(self) -> dict[str, Any]:
        """Serialize for the relationships cache."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_blob(cls, blob: Any) -> ProjectAnalysis | None:  # noqa: ANN401
        """Rebuild an analysis from a cached blob, None if it does not fit."""
        if not isinstance(blob, dict):
            return None
        try:
            return cls.model_validate(blob)
        except ValidationError as e:
            logger.warning("relationships_blob_invalid", error=str(e))
            return None


def detect_language(file_path: str) -> str:
    """Map a file extension to the analysis language, ``unknown`` if none."""
    return EXT2ANALYSIS_LANG.get(Path(file_path).suffix.lower(), "unknown")


def resolve_import_path(import_path: str, from_file: str) -> str:
    """Resolve a relative import against the importing file's directory.

    Path-style imports (``./b``, ``../lib/c``) are joined to that directory.
    Dotted relative modules (``.b``, ``..pkg.c``) climb one directory per
    extra leading dot. Non-relative imports are returned unchanged.
    """
    base = posixpath.dirname(from_file)
    if import_path in {".", ".."} or import_path.startswith(("./", "../")):
        return posixpath.normpath(posixpath.join(base, import_path))
    if import_path.startswith("."):
        rest = import_path.lstrip(".")
        for _ in range(len(import_path) - len(rest) - 1):
            base = posixpath.dirname(base)
        return posixpath.join(base, rest.replace(".", "/")) if rest else base
    return import_path


def _line_of(content: str, index: int) -> int:
    return content.count("\n", 0, index) + 1


def extract_imports(content: str, language: str, file_path: str) -> list[ImportInfo]:
    """Find the import statements of `content` for the given language."""
    imports: list[ImportInfo] = []
    for pattern in IMPORT_PATTERNS.get(language, []):
        for m in pattern.finditer(content):
            captured = m.group(1)
            if not captured:
                continue
            # a grouped Go import block yields one entry per quoted path
            targets = _GO_IMPORT_ENTRY.findall(captured) if language == "go" and "\n" in captured else [captured]
            imports.extend(
                ImportInfo(
                    path=target.strip(),
                    line=_line_of(content, m.start()),
                    raw=m.group(0),
                    resolved=resolve_import_path(target.strip(), file_path),
                )
                for target in targets
            )
    return imports


def extract_exports(content: str, language: str) -> list[ExportInfo]:
    """Find the exported symbols of `content` for the given language."""
    exports: list[ExportInfo] = []
    for pattern in EXPORT_PATTERNS.get(language, []):
        for m in pattern.finditer(content):
            name = (m.group(1) or "").strip()
            if name:
                exports.append(ExportInfo(name=name, line=_line_of(content, m.start()), raw=m.group(0)))
    return exports


def summarize_file(content: str, file_path: str, language: str, exports: Sequence[ExportInfo]) -> str:
    """Guess the purpose of a file from its name and content.

    Args:
        content (str): the file content
        file_path (str): the file path, only its name is used
        language (str): the analysis language
        exports (Sequence[ExportInfo]): the exports found in the file

    Returns:
        str: a one-line purpose summary
    """
    name = Path(file_path).name
    stem = Path(file_path).stem
    for pattern, template in _NAME_HINTS:
        if pattern.search(name):
            return template.format(name=_TEST_SUFFIX.sub("", name), stem=stem)
    has_class = bool(_HAS_CLASS.search(content))
    has_function = bool(_HAS_FUNCTION.search(content))
    if has_class and has_function:
        return "Class-based module with utility functions"
    if has_class:
        return f"Class definition for {stem}"
    if has_function:
        return "Function definitions and utilities"
    if exports:
        return f"Module exporting {len(exports)} item{'s' if len(exports) > 1 else ''}"
    return f"{language} source file"


def analyze_file(file_path: str, content: str) -> FileAnalysis:
    """Analyze the relationships of one file whose content is already loaded."""
    language = detect_language(file_path)
    imports = extract_imports(content, language, file_path)
    exports = extract_exports(content, language)
    return FileAnalysis(
        file_path=file_path,
        language=language,
        summary=summarize_file(content, file_path, language, exports),
        imports=imports,
        exports=exports,
    )


def _strip_suffix(path: str) -> str:
    base, ext = posixpath.splitext(path)
    return base if ext else path


def import_targets(candidate: str, imp: ImportInfo) -> bool:
    """Tell whether project file `candidate` is what `imp` refers to.

    Relative imports match on the resolved path, with or without extension
    or a package entry file; other imports match a path suffix, dotted module
    names being read as directories.
    """
    stem = _strip_suffix(candidate)
    if imp.path.startswith("."):
        return candidate == imp.resolved or stem in {
            imp.resolved,
            _strip_suffix(imp.resolved),
            posixpath.join(imp.resolved, "index"),
            posixpath.join(imp.resolved, "__init__"),
        }
    dotted = imp.path.replace(".", "/")
    return candidate == imp.path or candidate.endswith("/" + imp.path) or stem == dotted or stem.endswith("/" + dotted)


def build_dependency_graph(relationships: dict[str, FileAnalysis]) -> dict[str, DependencyInfo]:
    """Link every analyzed file to the project files it imports and is imported by."""
    dependencies: dict[str, list[str]] = {path: [] for path in relationships}
    dependents: dict[str, list[str]] = {path: [] for path in relationships}
    for path, analysis in relationships.items():
        for imp in analysis.imports:
            for candidate in relationships:
                if candidate == path or not import_targets(candidate, imp):
                    continue
                if candidate not in dependencies[path]:
                    dependencies[path].append(candidate)
                if path not in dependents[candidate]:
                    dependents[candidate].append(path)

    return {
        path: DependencyInfo(
            dependencies=dependencies[path],
            dependents=dependents[path],
            is_leaf=not dependencies[path],
            is_root=not dependents[path],
        )
        for path in relationships
    }


def analyze_project(root: Path, files: Sequence[str]) -> ProjectAnalysis:
    """Analyze every file and build the project dependency graph.

    Args:
        root (Path): the project root
        files (Sequence[str]): paths relative to `root`

    Returns:
        ProjectAnalysis: per-file analyses, dependency graph and totals.
            Unreadable files get an empty analysis carrying the error.
    """
    relationships: dict[str, FileAnalysis] = {}
    for rel in files:
        try:
            content = (root / rel).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("analysis_unreadable", path=rel, error=str(e))
            relationships[rel] = FileAnalysis(file_path=rel, summary="Unable to read file", error=str(e))
            continue
        relationships[rel] = analyze_file(rel, content)

    analysis = ProjectAnalysis(
        relationships=relationships,
        dependency_graph=build_dependency_graph(relationships),
        stats=ProjectStats(
            total_files=len(files),
            analyzed_files=len(relationships),
            total_imports=sum(a.import_count for a in relationships.values()),
            total_exports=sum(a.export_count for a in relationships.values()),
        ),
    )
    logger.debug("project_analyzed", files=len(files), imports=analysis.stats.total_imports)
    return analysis


def render_dependency_graph(analysis: ProjectAnalysis, max_depth: int = 3) -> str:
    """Render the dependency graph as indented text trees.

    Up to ten files with at most two dependents are used as tree roots; each
    node lists at most five dependencies and a file is shown only once.
    """
    graph: list[str] = []
    visited: set[str] = set()
    roots = [path for path, info in analysis.dependency_graph.items() if len(info.dependents) <= 2][:10]  # noqa: PLR2004

    def build(path: str, depth: int, prefix: str) -> None:
        if depth > max_depth or path in visited:
            return
        visited.add(path)
        file_analysis = analysis.relationships.get(path)
        deps = analysis.dependency_graph.get(path)
        if file_analysis is None or deps is None:
            return
        indent = "  " * depth
        graph.append(f"{indent}{prefix}{Path(path).name} ({file_analysis.language})")
        shown = deps.dependencies[:5]
        for i, dep in enumerate(shown):
            build(dep, depth + 1, "└── " if i == len(shown) - 1 else "├── ")
        if len(deps.dependencies) > len(shown):
            graph.append(f"{indent}  └── ... and {len(deps.dependencies) - len(shown)} more")

    for root_file in roots:
        build(root_file, 0, "")
        graph.append("")
    return "\n".join(graph)


def group_files_by_directory(paths: Sequence[str]) -> dict[str, list[str]]:
    """Group files by the name of their parent directory (``root`` for top-level files)."""
    groups: dict[str, list[str]] = {}
    for path in paths:
        parts = path.split("/")
        category = parts[-2] if len(parts) > 1 else "root"
        groups.setdefault(category, []).append(path)
    return groups
