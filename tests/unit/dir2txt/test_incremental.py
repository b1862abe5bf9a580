from __future__ import annotations

import os
from pathlib import Path

import pytest

from dir2txt.cache import create_cache, process_incremental


def _write(root: Path, rel: str, content: str) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class RecordingProcessor:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    def __call__(self, files: list[str]) -> dict[str, int]:
        self.calls.append(list(files))
        return {"processed": len(files)}


@pytest.mark.unit
def test_first_run_processes_every_file(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a")
    _write(tmp_path, "b.js", "b")
    store = create_cache(tmp_path)
    processor = RecordingProcessor()

    result = process_incremental(["a.js", "b.js"], store, processor)

    assert processor.calls == [["a.js", "b.js"]]
    assert result == {"processed": 2}
    assert store.get_cached_file("a.js")["processed"] is True


@pytest.mark.unit
def test_second_run_without_changes_returns_cached_relationships(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a")
    store = create_cache(tmp_path)
    process_incremental(["a.js"], store, RecordingProcessor())
    store.update_relationships_cache({"a.js": {"imports": []}})

    processor = RecordingProcessor()
    result = process_incremental(["a.js"], create_cache(tmp_path), processor)

    assert processor.calls == []
    assert result == {"a.js": {"imports": []}}


@pytest.mark.unit
def test_second_run_without_changes_nor_blob_calls_processor_with_nothing(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a")
    store = create_cache(tmp_path)
    process_incremental(["a.js"], store, RecordingProcessor())

    processor = RecordingProcessor()
    result = process_incremental(["a.js"], store, processor)

    assert processor.calls == [[]]
    assert result == {"processed": 0}


@pytest.mark.unit
def test_only_modified_and_new_files_reach_processor(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a")
    _write(tmp_path, "b.js", "b")
    store = create_cache(tmp_path)
    process_incremental(["a.js", "b.js"], store, RecordingProcessor())

    st = (tmp_path / "b.js").stat()
    os.utime(tmp_path / "b.js", (st.st_atime + 5, st.st_mtime + 5))
    _write(tmp_path, "c.js", "c")
    processor = RecordingProcessor()
    process_incremental(["a.js", "b.js", "c.js"], store, processor)

    assert processor.calls == [["b.js", "c.js"]]
    assert store.get_changed_files(["a.js", "b.js", "c.js"]).is_empty


@pytest.mark.unit
def test_deleted_files_are_cleaned_up(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a")
    _write(tmp_path, "b.js", "b")
    store = create_cache(tmp_path)
    process_incremental(["a.js", "b.js"], store, RecordingProcessor())
    (tmp_path / "b.js").unlink()

    processor = RecordingProcessor()
    process_incremental(["a.js"], store, processor)

    assert processor.calls == [[]]
    assert "b.js" not in store.metadata
    assert "b.js" not in create_cache(tmp_path).metadata


@pytest.mark.unit
def test_disabled_cache_passes_every_file_through(tmp_path: Path) -> None:
    _write(tmp_path, "a.js", "a")
    store = create_cache(tmp_path, enabled=False)
    processor = RecordingProcessor()

    process_incremental(["a.js"], store, processor)
    process_incremental(["a.js"], store, processor)

    assert processor.calls == [["a.js"], ["a.js"]]
