from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from dir2txt import cache as cache_module
from dir2txt.cache import CacheStore, create_cache, fingerprint_file
from dir2txt.config import CACHE_VERSION, CacheSection

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def _write(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _bump_mtime(path: Path, seconds: float = 10.0) -> None:
    st = path.stat()
    os.utime(path, (st.st_atime + seconds, st.st_mtime + seconds))


@pytest.mark.unit
def test_fingerprint_file_hash_depends_on_mtime(tmp_path: Path) -> None:
    path = _write(tmp_path, "a.txt", "same content")
    before = fingerprint_file("a.txt", tmp_path)
    _bump_mtime(path)
    after = fingerprint_file("a.txt", tmp_path)

    assert before is not None
    assert after is not None
    assert before.size == after.size == len("same content")
    assert before.content_hash != after.content_hash


@pytest.mark.unit
def test_fingerprint_file_missing_returns_none(tmp_path: Path) -> None:
    assert fingerprint_file("missing.txt", tmp_path) is None


@pytest.mark.unit
def test_get_changed_files_on_empty_cache_reports_everything_new(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "export const a = 1;\n")
    _write(tmp_path, "b.js", "export const b = 2;\n")
    store = create_cache(tmp_path)

    change_set = store.get_changed_files(["a.js", "b.js"])

    assert change_set.changed == ["a.js", "b.js"]
    assert change_set.new == ["a.js", "b.js"]
    assert change_set.deleted == []


@pytest.mark.unit
def test_get_changed_files_is_empty_after_update(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a\n")
    _write(tmp_path, "b.js", "b\n")
    store = create_cache(tmp_path)
    for rel in ("a.js", "b.js"):
        store.update_file_cache(rel, {"processed": True})

    change_set = store.get_changed_files(["a.js", "b.js"])

    assert change_set.is_empty
    assert change_set.new == []


@pytest.mark.unit
def test_modified_new_and_deleted_files_are_partitioned(tmp_path: Path) -> None:
    a = _write(tmp_path, "a.js", "a\n")
    _write(tmp_path, "b.js", "b\n")
    store = create_cache(tmp_path)
    store.update_file_cache("a.js")
    store.update_file_cache("b.js")

    _bump_mtime(a)
    (tmp_path / "b.js").unlink()
    _write(tmp_path, "c.js", "c\n")

    change_set = store.get_changed_files(["a.js", "c.js"])

    assert change_set.changed == ["a.js", "c.js"]
    assert change_set.new == ["c.js"]
    assert change_set.deleted == ["b.js"]


@pytest.mark.unit
def test_disabled_cache_treats_everything_as_changed(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a\n")
    store = create_cache(tmp_path, enabled=False)
    store.update_file_cache("a.js", {"processed": True})

    change_set = store.get_changed_files(["a.js"])

    assert change_set.changed == ["a.js"]
    assert change_set.new == ["a.js"]
    assert store.get_cached_file("a.js") is None
    assert store.get_cached_relationships() is None
    assert not (tmp_path / ".dir2txt-cache").exists()


@pytest.mark.unit
def test_save_and_reload_round_trip(tmp_path: Path) -> None:
    _write(tmp_path, "src/app.py", "print('hi')\n")
    store = create_cache(tmp_path, "cache")
    store.update_file_cache("src/app.py", {"processed": True})
    store.update_relationships_cache({"src/app.py": {"imports": []}}, persist=False)
    store.save()

    reloaded = create_cache(tmp_path, "cache")

    assert reloaded.metadata == store.metadata
    assert reloaded.get_cached_file("src/app.py")["processed"] is True
    assert "cachedAt" in reloaded.get_cached_file("src/app.py")
    assert reloaded.get_cached_relationships() == {"src/app.py": {"imports": []}}
    assert reloaded.get_changed_files(["src/app.py"]).is_empty


@pytest.mark.unit
def test_sections_are_written_with_version_and_camel_case_keys(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "a")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt")
    store.save()

    data = json.loads((store.cache_path / CacheSection.METADATA.filename).read_text(encoding="utf-8"))

    assert data["version"] == CACHE_VERSION
    assert "createdAt" in data
    assert data["workingDir"] == str(tmp_path.resolve())
    assert set(data["files"]["a.txt"]) >= {"contentHash", "size", "mtime", "lastProcessed"}


@pytest.mark.unit
def test_corrupt_section_only_resets_itself(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "a")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt", {"processed": True})
    store.update_relationships_cache({"graph": {}}, persist=False)
    store.save()
    (store.cache_path / CacheSection.SNAPSHOT.filename).write_text("{not json", encoding="utf-8")

    reloaded = create_cache(tmp_path)

    assert "a.txt" in reloaded.metadata
    assert reloaded.snapshot == {}
    assert reloaded.get_cached_relationships() == {"graph": {}}



@pytest.mark.unit
def test_corrupt_relationships_section_keeps_metadata(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "a")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt", {"processed": True})
    store.update_relationships_cache({"graph": {}}, persist=False)
    store.save()
    (store.cache_path / CacheSection.RELATIONSHIPS.filename).write_text("[broken", encoding="utf-8")

    reloaded = create_cache(tmp_path)

    assert reloaded.get_cached_relationships() is None
    assert reloaded.get_cached_file("a.txt")["processed"] is True
    assert reloaded.get_changed_files(["a.txt"]).is_empty


@pytest.mark.unit
def test_fingerprint_mtime_is_utc_with_milliseconds(tmp_path: Path) -> None:
    path = _write(tmp_path, "a.txt", "a")
    stamp_ns = 1_700_000_000_123_456_789
    os.utime(path, ns=(stamp_ns, stamp_ns))

    fingerprint = fingerprint_file("a.txt", tmp_path)

    assert fingerprint is not None
    assert fingerprint.mtime == "2023-11-14T22:13:20.123Z"


@pytest.mark.unit
def test_has_changed_stays_false_for_untouched_file(tmp_path: Path) -> None:
    path = _write(tmp_path, "a.txt", "a")
    stamp_ns = 1_700_000_000_123_456_789
    os.utime(path, ns=(stamp_ns, stamp_ns))
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt")

    assert [store.has_changed("a.txt") for _ in range(3)] == [False, False, False]


@pytest.mark.unit
def test_has_changed_after_touch_with_identical_content(tmp_path: Path) -> None:
    path = _write(tmp_path, "a.txt", "same")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt")

    _bump_mtime(path)

    assert path.read_text(encoding="utf-8") == "same"
    assert store.has_changed("a.txt") is True

@pytest.mark.unit
def test_cleanup_drops_entries_and_persists(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "a")
    _write(tmp_path, "b.txt", "b")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt", {"processed": True})
    store.update_file_cache("b.txt", {"processed": True})

    store.cleanup(["b.txt"])
    reloaded = create_cache(tmp_path)

    assert list(reloaded.metadata) == ["a.txt"]
    assert list(reloaded.snapshot) == ["a.txt"]


@pytest.mark.unit
def test_clear_removes_directory_and_memory(tmp_path: Path) -> None:
    _write(tmp_path, "a.txt", "a")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt")
    store.save()

    store.clear()

    assert not store.cache_path.exists()
    assert store.metadata == {}
    assert store.get_stats().file_count == 0


@pytest.mark.unit
def test_get_stats_counts_sections(tmp_path: Path) -> None:
    expected_files = 2
    _write(tmp_path, "a.txt", "a")
    _write(tmp_path, "b.txt", "b")
    store = create_cache(tmp_path, "my-cache")
    store.update_file_cache("a.txt", {"processed": True})
    store.update_file_cache("b.txt")
    store.update_relationships_cache({"a.txt": {}}, persist=False)

    stats = store.get_stats()

    assert stats.enabled is True
    assert stats.cache_dir == "my-cache"
    assert stats.file_count == expected_files
    assert stats.snapshot_count == 1
    assert stats.relationship_count == 1


@pytest.mark.unit
def test_initialize_disables_cache_when_directory_cannot_be_created(
    tmp_path: Path,
    mocker: MockerFixture,
) -> None:
    mocker.patch.object(Path, "mkdir", side_effect=PermissionError("denied"))
    warning = mocker.patch.object(cache_module.logger, "warning")

    store = CacheStore(tmp_path)
    store.initialize()

    assert store.enabled is False
    assert store.get_changed_files(["a.txt"]).changed == ["a.txt"]
    warning.assert_called_once()


@pytest.mark.unit
def test_save_failure_is_logged_not_raised(tmp_path: Path, mocker: MockerFixture) -> None:
    _write(tmp_path, "a.txt", "a")
    store = create_cache(tmp_path)
    store.update_file_cache("a.txt")
    mocker.patch.object(Path, "write_text", side_effect=OSError("disk full"))
    warning = mocker.patch.object(cache_module.logger, "warning")

    store.save()

    assert warning.call_count == len(CacheSection)
