from __future__ import annotations

from datetime import datetime
from enum import StrEnum, auto
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

_ = Path()

DEFAULT_CACHE_DIR = ".dir2txt-cache"
DEFAULT_OUTPUT_FILE = "directory-output.txt"
DEFAULT_DEBOUNCE_MS = 1000
DEFAULT_CONCURRENCY = 10
CACHE_VERSION = "1.0"
PROCESSING_TIME_WINDOW = 10


class CacheSection(StrEnum):
    """Independently persisted sections of the on-disk cache."""

    METADATA = auto()
    SNAPSHOT = auto()
    RELATIONSHIPS = auto()

    @property
    def filename(self) -> str:
        """File name of the section inside the cache directory."""
        return f"{self.value}.json"


class FileType(StrEnum):
    """Categorization of file types for rendering purposes.

    This is a heuristic classification based on file extensions, used to pick
    the code fence language in markdown output.
    """

    TEXT = auto()
    PYTHON = auto()
    JAVASCRIPT = auto()
    JSX = auto()
    TYPESCRIPT = auto()
    TSX = auto()
    JSON = auto()
    MARKDOWN = auto()
    YAML = auto()
    TOML = auto()
    HTML = auto()
    XML = auto()
    CSS = auto()
    SCSS = auto()
    SASS = auto()
    BASH = auto()
    ZSH = auto()
    FISH = auto()
    POWERSHELL = auto()
    SQL = auto()
    GO = auto()
    RUST = auto()
    PHP = auto()
    RUBY = auto()
    SWIFT = auto()
    KOTLIN = auto()
    JAVA = auto()
    C = auto()
    CPP = auto()
    OTHER = auto()


EXT2LANG: dict[str, FileType] = {
    ".bash": FileType.BASH,
    ".c": FileType.C,
    ".cc": FileType.CPP,
    ".cpp": FileType.CPP,
    ".css": FileType.CSS,
    ".cxx": FileType.CPP,
    ".fish": FileType.FISH,
    ".go": FileType.GO,
    ".h": FileType.C,
    ".hpp": FileType.CPP,
    ".html": FileType.HTML,
    ".java": FileType.JAVA,
    ".js": FileType.JAVASCRIPT,
    ".json": FileType.JSON,
    ".jsx": FileType.JSX,
    ".kt": FileType.KOTLIN,
    ".md": FileType.MARKDOWN,
    ".mjs": FileType.JAVASCRIPT,
    ".php": FileType.PHP,
    ".ps1": FileType.POWERSHELL,
    ".py": FileType.PYTHON,
    ".rb": FileType.RUBY,
    ".rs": FileType.RUST,
    ".sass": FileType.SASS,
    ".scss": FileType.SCSS,
    ".sh": FileType.BASH,
    ".sql": FileType.SQL,
    ".swift": FileType.SWIFT,
    ".toml": FileType.TOML,
    ".ts": FileType.TYPESCRIPT,
    ".tsx": FileType.TSX,
    ".txt": FileType.TEXT,
    ".xml": FileType.XML,
    ".yaml": FileType.YAML,
    ".yml": FileType.YAML,
    ".zsh": FileType.ZSH,
}

_FENCE_LANGUAGE: dict[FileType, str] = {
    FileType.TEXT: "",
    FileType.OTHER: "",
}

BINARY_EXTENSIONS = frozenset({
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".ico", ".webp",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".mkv", ".webm",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".zip", ".rar", ".7z", ".tar", ".gz", ".bz2",
    ".exe", ".dll", ".so", ".dylib", ".app",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".class", ".jar", ".war", ".ear",
    ".pyc", ".pyo", ".o", ".obj", ".lib", ".a",
})  # fmt: skip

# Directory names pruned while walking, whatever the ignore patterns say.
DEFAULT_EXCLUDES = {
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "__pycache__",
    ".mypy_cache",
    ".ruff_cache",
    ".pytest_cache",
    "node_modules",
    DEFAULT_CACHE_DIR,
}

BASIC_IGNORES = [
    "node_modules/**",
    ".git/**",
    "**/.DS_Store",
    "**/Thumbs.db",
]

DEFAULT_WATCH_IGNORES = [
    # build outputs
    "**/node_modules/**",
    "**/dist/**",
    "**/build/**",
    "**/out/**",
    "**/.next/**",
    "**/.nuxt/**",
    "**/target/**",
    # caches
    "**/.cache/**",
    "**/coverage/**",
    "**/.nyc_output/**",
    "**/.jest/**",
    "**/__pycache__/**",
    "**/.pytest_cache/**",
    # version control
    "**/.git/**",
    "**/.svn/**",
    "**/.hg/**",
    # editors
    "**/.vscode/**",
    "**/.idea/**",
    "**/*.swp",
    "**/*.tmp",
    "**/*~",
    # OS metadata
    "**/.DS_Store",
    "**/Thumbs.db",
    # logs and scratch
    "**/*.log",
    "**/logs/**",
    "**/temp/**",
    "**/tmp/**",
    # lockfiles
    "**/package-lock.json",
    "**/yarn.lock",
    "**/pnpm-lock.yaml",
    "**/poetry.lock",
    "**/uv.lock",
]


def guess_file_type(path: Path) -> FileType:
    """Heuristic guess of file type based on extension.

    Args:
        path (Path): The file path to guess the type for.

    Returns:
        FileType: The guessed file type, or FileType.OTHER if unknown.
    """
    return EXT2LANG.get(path.suffix.lower(), FileType.OTHER)


def guess_language(file_type: FileType) -> str:
    """Get the suggested code fence language for a given file type.

    Args:
        file_type (FileType): The categorized file type.

    Returns:
        str: The code fence language, or an empty string if none.
    """
    return _FENCE_LANGUAGE.get(file_type, file_type.value)


class FileFingerprint(BaseModel):
    """Change-detection fingerprint of one tracked file.

    ``content_hash`` is SHA-256 over the file bytes followed by the ISO mtime,
    so a touched file hashes differently even when its content did not change.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    path: str
    content_hash: str
    size: int = Field(..., ge=0)
    mtime: str
    last_processed: str | None = None

    @property
    def modified_at(self) -> datetime:
        """The cached mtime as an aware datetime."""
        return datetime.fromisoformat(self.mtime)


class ChangeSet(BaseModel):
    """Partition of the current file list against the cache.

    ``new`` is always a subset of ``changed``; ``deleted`` holds cached paths
    missing from the current list.
    """

    changed: list[str] = Field(default_factory=list)
    new: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to process nor to clean up."""
        return not self.changed and not self.deleted


class CacheStats(BaseModel):
    """Read-only introspection of a cache store."""

    enabled: bool
    cache_dir: str
    file_count: int
    snapshot_count: int
    relationship_count: int


class WatchStats(BaseModel):
    """Running statistics of one watch session."""

    total_changes: int = 0
    files_watched: int = 0
    processing_times: list[float] = Field(default_factory=list)
    last_update: datetime | None = None

    @computed_field
    @property
    def average_processing_time(self) -> float:
        """Arithmetic mean of the retained processing times, in milliseconds."""
        if not self.processing_times:
            return 0.0
        return sum(self.processing_times) / len(self.processing_times)

    def record_processing_time(self, elapsed_ms: float, at: datetime) -> None:
        """Append a sample, keeping only the last ``PROCESSING_TIME_WINDOW`` ones."""
        self.processing_times.append(elapsed_ms)
        del self.processing_times[:-PROCESSING_TIME_WINDOW]
        self.last_update = at
