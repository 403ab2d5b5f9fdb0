"""
Tests for the command line interface.
"""

import json

import pytest
from click.testing import CliRunner

from cellsync import persistence
from cellsync.cli import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def home(tmp_path):
    return tmp_path / "home"


def _invoke(runner, home, *args):
    return runner.invoke(main, ["--base-dir", str(home), *args])


class TestNew:

    def test_new_in_notebooks_dir(self, runner, home):
        result = _invoke(runner, home, "new", "--title", "Sales Report")

        assert result.exit_code == 0, result.output
        cells, metadata = persistence.load_notebook(home / "notebooks" / "sales-report")
        assert metadata["title"] == "Sales Report"
        assert [c.type for c in cells] == ["title", "markdown", "code"]

    def test_new_refuses_existing(self, runner, home, tmp_path):
        target = tmp_path / "nb"
        assert _invoke(runner, home, "new", str(target)).exit_code == 0
        result = _invoke(runner, home, "new", str(target))

        assert result.exit_code == 1
        assert "already exists" in result.output


class TestNotebooks:

    def test_empty(self, runner, home):
        result = _invoke(runner, home, "notebooks")
        assert "No notebooks found" in result.output

    def test_lists_created(self, runner, home):
        _invoke(runner, home, "new", "--title", "First")
        result = _invoke(runner, home, "notebooks")

        assert result.exit_code == 0
        assert "first" in result.output
        assert "First" in result.output


class TestRun:

    def test_run_saves_outputs(self, runner, home, tmp_path):
        directory = tmp_path / "calc"
        persistence.save_notebook(directory, [], {"title": "Calc"})
        notebook = json.loads((directory / "notebook.json").read_text())
        notebook["cells"] = [
            {"type": "code", "filename": "a.py", "source": "total = 0"},
            {"type": "code", "filename": "b.py", "source": "total += 5\nprint(total)"},
        ]
        (directory / "notebook.json").write_text(json.dumps(notebook))

        result = _invoke(runner, home, "run", str(directory))

        assert result.exit_code == 0, result.output
        assert "All 2 cells executed successfully" in result.output
        cells, _ = persistence.load_notebook(directory)
        assert cells[1].output[0].data == "5\n"

    def test_run_stops_on_failure(self, runner, home, tmp_path):
        directory = tmp_path / "broken"
        persistence.save_notebook(directory, [], {"title": "Broken"})
        notebook = json.loads((directory / "notebook.json").read_text())
        notebook["cells"] = [
            {"type": "code", "filename": "a.py", "source": "1 / 0"},
            {"type": "code", "filename": "b.py", "source": "print('never')"},
        ]
        (directory / "notebook.json").write_text(json.dumps(notebook))

        result = _invoke(runner, home, "run", str(directory))

        assert result.exit_code == 1
        assert "Executed 0/2 cells" in result.output
        assert "b.py" not in result.output

    def test_run_without_notebook(self, runner, home, tmp_path):
        result = _invoke(runner, home, "run", str(tmp_path))
        assert result.exit_code == 1


class TestConfig:

    def test_config_shows_settings(self, runner, home, monkeypatch):
        monkeypatch.delenv("CELLSYNC_PORT", raising=False)
        result = _invoke(runner, home, "config")

        assert result.exit_code == 0
        assert '"port": 2150' in result.output
        assert (home / "config.json").is_file()
