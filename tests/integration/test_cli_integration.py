from __future__ import annotations

import os
from pathlib import Path

import pytest

from dir2txt import cli


def _write(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.mark.integration
def test_incremental_runs_only_export_changed_files(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    repo = tmp_path
    _write(repo, "src/a.js", "export const a = 1;\n")
    b = _write(repo, "src/b.js", "export const b = 2;\n")
    output = repo / "out.txt"
    args = ["--repo", str(repo), "--output", str(output), "--incremental", "--highlight-new"]

    assert cli.main(args) == 0
    first = output.read_text(encoding="utf-8")
    capsys.readouterr()

    assert cli.main(args) == 0
    assert "No changes detected, skipping processing" in capsys.readouterr().out
    assert output.read_text(encoding="utf-8") == first

    st = b.stat()
    os.utime(b, (st.st_atime + 10, st.st_mtime + 10))
    _write(repo, "src/c.js", "export const c = 3;\n")
    assert cli.main(args) == 0
    third = output.read_text(encoding="utf-8")

    assert "--- src/a.js [NEW] ---" in first
    assert "--- src/a.js" not in third
    assert "--- src/b.js ---" in third
    assert "--- src/c.js [NEW] ---" in third
    assert "a.js" in third
    assert "Processing 2 changed files" in capsys.readouterr().out


@pytest.mark.integration
def test_clear_cache_exports_everything_again(tmp_path: Path) -> None:
    repo = tmp_path
    _write(repo, "a.py", "print('a')\n")
    _write(repo, "b.py", "print('b')\n")
    output = repo / "out.txt"
    args = ["--repo", str(repo), "--output", str(output), "--incremental"]

    cli.main(args)
    cli.main([*args, "--clear-cache"])

    content = output.read_text(encoding="utf-8")
    assert "--- a.py ---" in content
    assert "--- b.py ---" in content


@pytest.mark.integration
def test_relationship_options_render_analysis(tmp_path: Path) -> None:
    repo = tmp_path
    _write(repo, "pkg/main.py", "from .helpers import util\n\nutil()\n")
    _write(repo, "pkg/helpers.py", "def util():\n    return 1\n")
    output = repo / "export.md"

    exit_code = cli.main(
        [
            "--repo",
            str(repo),
            "--output",
            str(output),
            "--markdown",
            "--include-dependencies",
            "--include-relationships",
            "--file-summaries",
        ],
    )

    assert exit_code == 0
    content = output.read_text(encoding="utf-8")
    assert "# Dependency Graph" in content
    assert "Purpose: Utility functions and helpers" in content
    assert "Imports: .helpers" in content
    assert "Used by: main.py" in content
