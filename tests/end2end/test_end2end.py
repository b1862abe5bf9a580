from __future__ import annotations

from pathlib import Path

import pytest

from dir2txt import cli


@pytest.mark.end2end
def test_end_to_end_markdown_export(tmp_path: Path) -> None:
    repo = tmp_path
    file_path = repo / "src" / "app.py"
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text("print('hello')\n", encoding="utf-8")
    (repo / "logo.png").write_bytes(b"\x89PNG\r\n")
    output = repo / "export.md"

    exit_code = cli.main(["--repo", str(repo), "--output", str(output), "--markdown"])

    assert exit_code == 0
    content = output.read_text(encoding="utf-8")
    assert content.startswith("# Project Structure")
    assert "## src/app.py\n\n```python\nprint('hello')\n" in content
    assert "## logo.png" not in content
    assert "Skipped: 1" in content


@pytest.mark.end2end
def test_end_to_end_project_config_drives_discovery(tmp_path: Path) -> None:
    repo = tmp_path
    (repo / "app.py").write_text("print('a')\n", encoding="utf-8")
    (repo / "notes.md").write_text("# notes\n", encoding="utf-8")
    output = repo / "export.txt"

    assert cli.main(["config", "--repo", str(repo), "--init"]) == 0
    assert cli.main(["--repo", str(repo), "--output", str(output), "--extensions", ".md"]) == 0
    content = output.read_text(encoding="utf-8")

    assert "--- notes.md ---" in content
    assert "--- app.py ---" not in content

    assert cli.main(["--repo", str(repo), "--output", str(output), "--noconfig"]) == 0
    content = output.read_text(encoding="utf-8")

    assert "--- app.py ---" in content
    assert "--- .dir2txt.json ---" in content
