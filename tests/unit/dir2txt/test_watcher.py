from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from dir2txt.config import ChangeSet, WatchStats
from dir2txt.exceptions import InvalidDebounceError, WatchRootError
from dir2txt.settings import Settings
from dir2txt.watcher import (
    ADD,
    CHANGE,
    UNLINK,
    WatchController,
    WatchSession,
    parse_debounce,
    plan_regeneration,
)

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


def _controller(root: Path, debounce_ms: int = 100, **overrides: object) -> WatchController:
    settings = Settings(repo=root, cache_dir=".dir2txt-cache", **overrides)
    return WatchController(settings, debounce_ms=debounce_ms)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [("500ms", 500), ("2s", 2000), ("1000", 1000), ("0ms", 0), ("", 1000), (None, 1000)],
)
def test_parse_debounce_accepts_supported_formats(value: str | None, expected: int) -> None:
    assert parse_debounce(value) == expected


@pytest.mark.unit
@pytest.mark.parametrize("value", ["abc", "1.5s", "-1", "10m", "ms"])
def test_parse_debounce_rejects_other_formats(value: str) -> None:
    with pytest.raises(InvalidDebounceError) as exc_info:
        parse_debounce(value)

    assert "Invalid debounce format" in str(exc_info.value)


@pytest.mark.unit
def test_plan_regeneration_without_cache_renders_everything() -> None:
    plan = plan_regeneration(["a.py", "b.py"], ["a.py"])

    assert plan.files == ["a.py", "b.py"]
    assert plan.current_files == ["a.py", "b.py"]
    assert plan.skip is False
    assert not plan.structure_changed


@pytest.mark.unit
def test_plan_regeneration_with_cache_renders_only_changed_files() -> None:
    change_set = ChangeSet(changed=["b.py"], new=["b.py"], deleted=["c.py"])

    plan = plan_regeneration(["a.py", "b.py"], ["a.py", "c.py"], change_set, smart_diff=True)

    assert plan.files == ["b.py"]
    assert plan.current_files == ["a.py", "b.py"]
    assert plan.added == ["b.py"]
    assert plan.removed == ["c.py"]
    assert plan.structure_changed
    assert plan.skip is False


@pytest.mark.unit
def test_plan_regeneration_skips_empty_change_set() -> None:
    plan = plan_regeneration(["a.py"], ["a.py"], ChangeSet())

    assert plan.skip is True
    assert plan.files == []


@pytest.mark.unit
def test_plan_regeneration_deletion_only_is_not_skipped() -> None:
    plan = plan_regeneration(["a.py"], ["a.py", "b.py"], ChangeSet(deleted=["b.py"]))

    assert plan.skip is False
    assert plan.files == []
    assert not plan.structure_changed


@pytest.mark.unit
def test_watch_stats_keeps_last_ten_processing_times() -> None:
    stats = WatchStats()
    at = datetime(2025, 1, 1, tzinfo=UTC)
    for sample in range(1, 13):
        stats.record_processing_time(float(sample), at)

    assert stats.processing_times == [float(s) for s in range(3, 13)]
    assert stats.average_processing_time == pytest.approx(7.5)
    assert stats.last_update == at


@pytest.mark.unit
def test_burst_of_events_runs_a_single_cycle(tmp_path: Path, mocker: MockerFixture) -> None:
    root = tmp_path.resolve()
    controller = _controller(root)
    process = mocker.patch.object(controller, "process_changes", new_callable=mocker.AsyncMock)

    async def scenario() -> None:
        controller.sessions[root] = WatchSession(root=root)
        for name in ("a.txt", "b.txt", "c.txt"):
            controller.handle_file_change(CHANGE, str(root / name), root)
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.4)

    asyncio.run(scenario())

    process.assert_awaited_once_with(root, CHANGE, str(root / "c.txt"))
    assert controller.get_stats().total_changes == 3  # noqa: PLR2004


@pytest.mark.unit
def test_separate_bursts_run_separate_cycles(tmp_path: Path, mocker: MockerFixture) -> None:
    root = tmp_path.resolve()
    controller = _controller(root, debounce_ms=50)
    process = mocker.patch.object(controller, "process_changes", new_callable=mocker.AsyncMock)

    async def scenario() -> None:
        controller.sessions[root] = WatchSession(root=root)
        controller.handle_file_change(ADD, str(root / "a.txt"), root)
        await asyncio.sleep(0.3)
        controller.handle_file_change(UNLINK, str(root / "a.txt"), root)
        await asyncio.sleep(0.3)

    asyncio.run(scenario())

    assert [c.args[1] for c in process.await_args_list] == [ADD, UNLINK]


@pytest.mark.unit
def test_failing_cycle_does_not_stop_the_session(tmp_path: Path, mocker: MockerFixture) -> None:
    root = tmp_path.resolve()
    controller = _controller(root, debounce_ms=20)
    process = mocker.patch.object(
        controller,
        "process_changes",
        new_callable=mocker.AsyncMock,
        side_effect=[RuntimeError("boom"), None],
    )

    async def scenario() -> None:
        controller.sessions[root] = WatchSession(root=root)
        controller.handle_file_change(CHANGE, str(root / "a.txt"), root)
        await asyncio.sleep(0.2)
        controller.handle_file_change(CHANGE, str(root / "a.txt"), root)
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert process.await_count == 2  # noqa: PLR2004
    assert root in controller.sessions


@pytest.mark.unit
def test_stop_watching_cancels_timer_and_is_idempotent(tmp_path: Path, mocker: MockerFixture) -> None:
    root = tmp_path.resolve()
    controller = _controller(root, debounce_ms=50)
    process = mocker.patch.object(controller, "process_changes", new_callable=mocker.AsyncMock)
    observer = mocker.MagicMock()

    async def scenario() -> None:
        controller.sessions[root] = WatchSession(root=root, observer=observer)
        controller.handle_file_change(CHANGE, str(root / "a.txt"), root)
        await controller.stop_watching(root)
        await controller.stop_watching(root)
        await controller.stop_watching()
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    process.assert_not_awaited()
    observer.stop.assert_called_once()
    observer.join.assert_called_once()
    assert controller.sessions == {}


@pytest.mark.unit
def test_start_watching_rejects_missing_root(tmp_path: Path) -> None:
    controller = _controller(tmp_path)

    with pytest.raises(WatchRootError):
        asyncio.run(controller.start_watching(tmp_path / "missing"))

    assert controller.sessions == {}


@pytest.mark.unit
def test_is_ignored_drops_noise_generated_and_large_files(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    big = root / "big.txt"
    big.write_text("x" * 100, encoding="utf-8")
    small = root / "small.txt"
    small.write_text("x", encoding="utf-8")
    controller = _controller(root, output=root / "export.txt", ignore=["*.secret"], max_size=10)

    assert controller.is_ignored(root, str(root / "node_modules" / "lib" / "index.js"))
    assert controller.is_ignored(root, str(root / ".git" / "HEAD"))
    assert controller.is_ignored(root, str(root / "debug.log"))
    assert controller.is_ignored(root, str(root / ".dir2txt-cache" / "metadata.json"))
    assert controller.is_ignored(root, str(root / "export.txt"))
    assert controller.is_ignored(root, str(root / "keys.secret"))
    assert controller.is_ignored(root, str(root / "conf" / "keys.secret"))
    assert controller.is_ignored(root, str(big))
    assert not controller.is_ignored(root, str(small))
    assert not controller.is_ignored(root, str(root / "src" / "gone.py"))


@pytest.mark.unit
def test_events_for_unknown_root_are_dropped(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    controller = _controller(root)

    async def scenario() -> None:
        controller.on_raw_event(UNLINK, str(root / "a.txt"), root)
        controller.handle_file_change(CHANGE, str(root / "a.txt"), root)

    asyncio.run(scenario())

    assert controller.get_stats().total_changes == 0


@pytest.mark.integration
def test_watch_session_regenerates_changed_files(tmp_path: Path, mocker: MockerFixture) -> None:
    root = tmp_path.resolve()
    (root / "a.py").write_text("print('a')\n", encoding="utf-8")
    output = root / "out" / "export.txt"
    settings = Settings(repo=root, output=output, incremental=True, cache_dir=".dir2txt-cache")
    controller = WatchController(settings, debounce_ms=20, observer_factory=mocker.MagicMock)

    async def scenario() -> tuple[str, str]:
        stop = await controller.start_watching(root)
        initial = output.read_text(encoding="utf-8")
        (root / "b.py").write_text("print('b')\n", encoding="utf-8")
        await controller.process_changes(root, ADD, str(root / "b.py"))
        await stop()
        return initial, output.read_text(encoding="utf-8")

    initial, updated = asyncio.run(scenario())

    assert initial.startswith("# Dir2Txt Watch Mode Report")
    assert "Trigger: initial" in initial
    assert "--- a.py ---" in initial
    assert "Trigger: add" in updated
    assert "- New files: 1" in updated
    assert "--- b.py [NEW] ---" in updated
    assert "--- a.py ---" not in updated
    assert "a.py" in updated
    assert (root / ".dir2txt-cache" / "metadata.json").exists()
    assert controller.get_stats().files_watched == 2  # noqa: PLR2004
    assert controller.sessions == {}
