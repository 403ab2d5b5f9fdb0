"""
Tests for utils.py helpers.
"""

import pytest
from rich.text import Text

from cellsync.cells import CodeCell, OutputChunk
from cellsync.kernel import RuntimeFailure
from cellsync.utils import (
    diff_stats,
    format_rich_error,
    format_rich_output,
    get_cell_status,
    get_cell_type_icon,
    join_output,
    randomid,
    requirement_name,
    slugify,
    truncate_text,
    valid_filename,
)


class TestFilenames:

    @pytest.mark.parametrize("name", ["a.py", "load_data.py", "step-2.py", "X9.py"])
    def test_valid(self, name):
        assert valid_filename(name)

    @pytest.mark.parametrize("name", ["", ".py", "a.js", "a b.py", "dir/a.py", "a.py ", "ü.py"])
    def test_invalid(self, name):
        assert not valid_filename(name)

    def test_slugify(self):
        assert slugify("Sales Report 2024!") == "sales-report-2024"
        assert slugify("  --Already-slugged--  ") == "already-slugged"
        assert slugify("???")


class TestRequirementName:

    @pytest.mark.parametrize("line,name", [
        ("rich", "rich"),
        ("Flask>=2.3", "flask"),
        ("typing_extensions==4.0", "typing-extensions"),
        ("uvicorn[standard]", "uvicorn"),
        ("pkg @ https://example.com/pkg.whl", "pkg"),
        ("numpy ; python_version >= '3.10'", "numpy"),
    ])
    def test_names(self, line, name):
        assert requirement_name(line) == name


class TestHelpers:

    def test_randomid(self):
        ids = {randomid() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.isalnum() and i == i.lower() for i in ids)

    def test_diff_stats(self):
        assert diff_stats("", "a\nb\n") == (2, 0)
        assert diff_stats("a\nb\n", "a\nc\n") == (1, 1)
        assert diff_stats("same", "same") == (0, 0)

    def test_join_output(self):
        output = [
            OutputChunk(kind="stdout", data="a"),
            OutputChunk(kind="stderr", data="warn"),
            OutputChunk(kind="stdout", data="b"),
        ]
        assert join_output(output) == "ab"
        assert join_output(output, "stderr") == "warn"

    def test_truncate_text(self):
        assert truncate_text("short") == "short"
        assert truncate_text("x" * 150) == "x" * 97 + "..."

    def test_cell_status(self):
        assert get_cell_status(CodeCell(filename="a.py"))[0] == "--"
        assert get_cell_status(CodeCell(filename="a.py", stale=True))[0] == "stale"
        assert get_cell_status(CodeCell(filename="a.py", status="running", stale=True))[0] == "run"
        ran = CodeCell(filename="a.py", output=(OutputChunk(kind="stdout", data="1\n"),))
        assert get_cell_status(ran) == ("ok", "green")

    def test_icons(self):
        assert get_cell_type_icon("code") == "py"
        assert get_cell_type_icon("requirements") == "req"
        assert get_cell_type_icon("other") == "??"


class TestRichFormatting:

    def test_stderr_is_yellow(self):
        text = format_rich_output(OutputChunk(kind="stderr", data="careful\n"))
        assert isinstance(text, Text)
        assert text.plain == "careful"
        assert text.style == "yellow"

    def test_error_includes_traceback(self):
        error = RuntimeFailure(ename="ValueError", evalue="bad", traceback="Traceback...\nValueError: bad\n")
        text = format_rich_error(error)
        assert text.plain.startswith("ValueError: bad\nTraceback")
