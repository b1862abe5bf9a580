"""Incremental processing cache.

A :class:`CacheStore` remembers, per working directory, a fingerprint of
every file processed by a previous run so the next run can process only what
changed. The cache is an optimization: every disk failure inside it is logged
and degrades to "everything changed", it never interrupts an export.

On disk the cache is three independent JSON sections (``metadata.json``,
``snapshot.json`` and ``relationships.json``); a corrupt section only resets
itself.
"""

from __future__ import annotations

import hashlib
import json
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError

from dir2txt.config import (
    CACHE_VERSION,
    DEFAULT_CACHE_DIR,
    CacheSection,
    CacheStats,
    ChangeSet,
    FileFingerprint,
)
from dir2txt.file_manipulation import iso_timestamp, now_iso
from dir2txt.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

SnapshotEntry = dict[str, Any]

T = TypeVar("T")


def _resolve(path: str, working_dir: Path | None) -> Path:
    p = Path(path)
    if working_dir is None or p.is_absolute():
        return p
    return working_dir / p


def _mtime(timestamp: float) -> datetime:
    moment = datetime.fromtimestamp(timestamp, UTC)
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


def _mtime_iso(timestamp: float) -> str:
    return iso_timestamp(_mtime(timestamp))


def fingerprint_file(path: str, working_dir: Path | None = None) -> FileFingerprint | None:
    """Compute the change fingerprint of one file.

    The hash covers the file bytes followed by the ISO mtime, so touching a
    file changes its fingerprint even if the content is identical.

    Args:
        path (str): the file identifier; relative paths are resolved against
            `working_dir`
        working_dir (Path | None): base directory for relative paths

    Returns:
        FileFingerprint | None: the fingerprint, or None if the file cannot be
            stat'ed or read
    """
    target = _resolve(path, working_dir)
    try:
        st = target.stat()
        content = target.read_bytes()
    except OSError as e:
        logger.debug("fingerprint_failed", path=path, error=str(e))
        return None
    mtime = _mtime_iso(st.st_mtime)
    digest = hashlib.sha256(content + mtime.encode("utf-8")).hexdigest()
    return FileFingerprint(path=path, content_hash=digest, size=st.st_size, mtime=mtime)


class CacheStore:
    """Per-working-directory cache of file fingerprints and processed artifacts.

    Attributes:
        working_dir: directory relative file paths are resolved against.
        cache_dir: cache directory as configured (relative to `working_dir`
            unless absolute).
        cache_path: resolved cache directory.
        enabled: False when caching is turned off or the directory could not
            be created; every operation then returns its conservative result.
    """

    def __init__(
        self,
        working_dir: Path | None = None,
        cache_dir: str | Path | None = None,
        *,
        enabled: bool = True,
    ) -> None:
        self.working_dir = (working_dir or Path.cwd()).resolve()
        self.cache_dir = str(cache_dir or DEFAULT_CACHE_DIR)
        self.cache_path = self.working_dir / self.cache_dir
        self.enabled = enabled
        self.metadata: dict[str, FileFingerprint] = {}
        self.snapshot: dict[str, SnapshotEntry] = {}
        self.relationships: Any = None

    # ------------------------------ lifecycle --------------------------------

    def initialize(self) -> None:
        """Create the cache directory and load every persisted section."""
        if not self.enabled:
            return
        try:
            self.cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("cache_disabled", cache_dir=str(self.cache_path), error=str(e))
            self.enabled = False
            return

        self.metadata = self._load_metadata()
        self.snapshot = self._load_snapshot()
        self.relationships = self._load_relationships()
        logger.info("cache_initialized", cache_dir=self.cache_dir, files=len(self.metadata))

    def save(self) -> None:
        """Persist the three sections; one failing write does not stop the others."""
        if not self.enabled:
            return
        self.save_metadata()
        self.save_snapshot()
        self.save_relationships()

    def clear(self) -> None:
        """Delete the cache directory and forget everything held in memory."""
        if not self.enabled:
            return
        try:
            shutil.rmtree(self.cache_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("cache_clear_failed", cache_dir=str(self.cache_path), error=str(e))
            return
        self.metadata.clear()
        self.snapshot.clear()
        self.relationships = None
        logger.info("cache_cleared", cache_dir=self.cache_dir)

    # ---------------------------- change detection ---------------------------

    def has_changed(self, path: str) -> bool:
        """Tell whether `path` changed since it was last cached.

        Only the mtime is compared: a file is changed when it has no cached
        fingerprint, cannot be stat'ed, or its mtime is newer than the cached
        one. The content hash is not recomputed.
        """
        if not self.enabled:
            return True
        cached = self.metadata.get(path)
        if cached is None:
            return True
        try:
            st = _resolve(path, self.working_dir).stat()
        except OSError:
            return True
        return _mtime(st.st_mtime) > cached.modified_at

    def get_changed_files(self, all_files: Sequence[str]) -> ChangeSet:
        """Partition `all_files` into changed/new paths and list deleted ones.

        Args:
            all_files (Sequence[str]): the authoritative current file list

        Returns:
            ChangeSet: changed and new paths in `all_files` order, deleted
                paths in cache order
        """
        if not self.enabled:
            return ChangeSet(changed=list(all_files), new=list(all_files), deleted=[])

        changed: list[str] = []
        new: list[str] = []
        for path in all_files:
            if self.has_changed(path):
                changed.append(path)
                if path not in self.metadata:
                    new.append(path)

        existing = set(all_files)
        deleted = [path for path in self.metadata if path not in existing]
        return ChangeSet(changed=changed, new=new, deleted=deleted)

    # -------------------------------- updates --------------------------------

    def update_file_cache(self, path: str, payload: SnapshotEntry | None = None) -> None:
        """Record a freshly processed file.

        Must be called after the file was processed: the stored fingerprint
        is what future runs compare against.

        Args:
            path (str): the processed file
            payload (SnapshotEntry | None): caller-defined data kept in the snapshot
        """
        if not self.enabled:
            return
        fingerprint = fingerprint_file(path, self.working_dir)
        if fingerprint is None:
            return
        processed_at = now_iso()
        self.metadata[path] = fingerprint.model_copy(update={"last_processed": processed_at})
        if payload is not None:
            self.snapshot[path] = {**payload, "cachedAt": processed_at}

    def update_relationships_cache(self, relationships: Any, *, persist: bool = True) -> None:  # noqa: ANN401
        """Replace the cached relationships blob as a whole."""
        if not self.enabled or relationships is None:
            return
        self.relationships = relationships
        if persist:
            self.save_relationships()

    def get_cached_file(self, path: str) -> SnapshotEntry | None:
        """Return the snapshot entry of `path`, if any."""
        if not self.enabled:
            return None
        return self.snapshot.get(path)

    def get_cached_relationships(self) -> Any:  # noqa: ANN401
        """Return the cached relationships blob, or None."""
        if not self.enabled:
            return None
        return self.relationships

    def cleanup(self, deleted_paths: Sequence[str]) -> None:
        """Forget deleted files and persist fingerprints and snapshot right away."""
        if not self.enabled or not deleted_paths:
            return
        for path in deleted_paths:
            self.metadata.pop(path, None)
            self.snapshot.pop(path, None)
        self.save_metadata()
        self.save_snapshot()
        logger.info("cache_cleanup", removed=len(deleted_paths))

    def get_stats(self) -> CacheStats:
        """Describe the cache contents."""
        relationship_count = len(self.relationships) if isinstance(self.relationships, (dict, list)) else 0
        return CacheStats(
            enabled=self.enabled,
            cache_dir=self.cache_dir,
            file_count=len(self.metadata),
            snapshot_count=len(self.snapshot),
            relationship_count=relationship_count,
        )

    # ------------------------------ persistence ------------------------------

    def save_metadata(self) -> None:
        """Write ``metadata.json``."""
        files = {path: fp.model_dump(by_alias=True) for path, fp in self.metadata.items()}
        self._write_section(CacheSection.METADATA, {"workingDir": str(self.working_dir), "files": files})

    def save_snapshot(self) -> None:
        """Write ``snapshot.json``."""
        self._write_section(CacheSection.SNAPSHOT, {"files": self.snapshot})

    def save_relationships(self) -> None:
        """Write ``relationships.json``."""
        self._write_section(CacheSection.RELATIONSHIPS, {"relationships": self.relationships})

    def _write_section(self, section: CacheSection, body: dict[str, Any]) -> None:
        if not self.enabled:
            return
        data = {"version": CACHE_VERSION, "createdAt": now_iso(), **body}
        path = self.cache_path / section.filename
        try:
            path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        except (OSError, TypeError, ValueError) as e:
            logger.warning("cache_save_failed", section=section.value, error=str(e))

    def _read_section(self, section: CacheSection) -> dict[str, Any] | None:
        path = self.cache_path / section.filename
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("cache_section_unreadable", section=section.value, error=str(e))
            return None
        if not isinstance(data, dict):
            logger.warning("cache_section_unreadable", section=section.value, error="not a JSON object")
            return None
        return data

    def _load_metadata(self) -> dict[str, FileFingerprint]:
        data = self._read_section(CacheSection.METADATA)
        files = (data or {}).get("files")
        if not isinstance(files, dict):
            return {}
        try:
            return {path: FileFingerprint.model_validate({**fp, "path": path}) for path, fp in files.items()}
        except (TypeError, ValidationError) as e:
            logger.warning("cache_section_unreadable", section=CacheSection.METADATA.value, error=str(e))
            return {}

    def _load_snapshot(self) -> dict[str, SnapshotEntry]:
        data = self._read_section(CacheSection.SNAPSHOT)
        files = (data or {}).get("files")
        if not isinstance(files, dict):
            return {}
        return {path: entry for path, entry in files.items() if isinstance(entry, dict)}

    def _load_relationships(self) -> Any:  # noqa: ANN401
        data = self._read_section(CacheSection.RELATIONSHIPS)
        return (data or {}).get("relationships")


def create_cache(
    working_dir: Path | None = None,
    cache_dir: str | Path | None = None,
    *,
    enabled: bool = True,
) -> CacheStore:
    """Build a cache store and load its persisted state."""
    store = CacheStore(working_dir, cache_dir, enabled=enabled)
    store.initialize()
    return store


def process_incremental(
    files: Sequence[str],
    cache: CacheStore,
    processor: Callable[[list[str]], T],
) -> T | Any:
    """Run `processor` on the files that changed since the last run.

    With caching disabled every file is processed. When nothing changed and
    nothing was deleted, the cached relationships blob is returned (or
    ``processor([])`` if none is cached) without doing real work. Otherwise
    deleted entries are dropped, `processor` receives only the changed
    files, their fingerprints are refreshed and the cache is saved.

    Args:
        files (Sequence[str]): the authoritative current file list
        cache (CacheStore): an initialized cache store
        processor (Callable[[list[str]], T]): processes a list of files

    Returns:
        T | Any: the processor result, or the cached relationships blob on
            the no-op path
    """
    if not cache.enabled:
        return processor(list(files))

    change_set = cache.get_changed_files(files)
    if change_set.is_empty:
        logger.info("no_changes_detected")
        cached = cache.get_cached_relationships()
        return cached if cached is not None else processor([])

    logger.info(
        "processing_changes",
        changed=len(change_set.changed),
        new=len(change_set.new),
        deleted=len(change_set.deleted),
    )
    cache.cleanup(change_set.deleted)
    result = processor(change_set.changed)
    for path in change_set.changed:
        cache.update_file_cache(path, {"processed": True})
    cache.save()
    return result
