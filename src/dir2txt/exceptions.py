from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Dir2TxtError(Exception):
    """Base exception for errors in the dir2txt package."""


@dataclass(frozen=True)
class InvalidDebounceError(Dir2TxtError):
    """Raised when a debounce duration cannot be parsed."""

    value: str
    message: str = 'Invalid debounce format. Use formats like "500ms", "2s", or "1000".'

    def __str__(self) -> str:
        return f"{self.message} (got {self.value!r})"


@dataclass(frozen=True)
class WatchRootError(Dir2TxtError):
    """Raised when the directory to watch does not exist or is not a directory."""

    root: Path
    message: str = "The watch root is not an existing directory."

    def __str__(self) -> str:
        return f"{self.message} ({self.root})"


@dataclass(frozen=True)
class ConfigFileError(Dir2TxtError):
    """Raised when a project configuration file cannot be read, written or removed."""

    path: Path
    reason: str

    def __str__(self) -> str:
        return f"{self.path}: {self.reason}"


@dataclass(frozen=True)
class NoFilesFoundError(Dir2TxtError):
    """Raised when discovery returns no file for the requested filters."""

    root: Path
    message: str = "No files found matching criteria."

    def __str__(self) -> str:
        return f"{self.message} ({self.root})"
