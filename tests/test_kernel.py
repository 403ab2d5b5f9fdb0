"""
Tests for NotebookKernel.
"""

from cellsync.kernel import ExecutionResult, NotebookKernel, StreamWriter
from cellsync.utils import join_output


class TestNotebookKernel:
    """Test cases for NotebookKernel."""

    def setup_method(self):
        """Set up a fresh kernel for each test."""
        self.kernel = NotebookKernel()

    def test_execute_simple_code(self):
        result = self.kernel.execute_cell("x = 42")

        assert result.success
        assert result.execution_count == 1
        assert result.output == []

    def test_execute_and_retrieve_variable(self):
        """Test that variables persist across executions."""
        self.kernel.execute_cell("x = 42")
        self.kernel.execute_cell("y = x + 8")

        result = self.kernel.execute_cell("x, y")
        assert join_output(result.output) == "(42, 50)\n"

    def test_expression_value_printed(self):
        self.kernel.execute_cell("x = 1")
        result = self.kernel.execute_cell("x + 1")

        assert result.success
        assert join_output(result.output) == "2\n"

    def test_statement_then_expression(self):
        self.kernel.execute_cell("total = 0")
        result = self.kernel.execute_cell("total += 5; total")

        assert join_output(result.output).strip() == "5"

    def test_stdout_and_stderr_keep_order(self):
        result = self.kernel.execute_cell(
            "import sys\n"
            "print('one')\n"
            "print('two', file=sys.stderr)\n"
            "print('three')\n"
        )

        assert [(c.kind, c.data) for c in result.output] == [
            ("stdout", "one\n"),
            ("stderr", "two\n"),
            ("stdout", "three\n"),
        ]

    def test_adjacent_writes_coalesced(self):
        result = self.kernel.execute_cell("print('a', end='')\nprint('b')")

        assert len(result.output) == 1
        assert result.output[0].data == "ab\n"

    def test_execute_with_error(self):
        result = self.kernel.execute_cell("print('before')\n1 / 0")

        assert not result.success
        assert result.error.ename == "ZeroDivisionError"
        assert "division by zero" in result.error.evalue
        assert "ZeroDivisionError" in result.error.traceback
        # output produced before the failure is kept
        assert join_output(result.output) == "before\n"

    def test_syntax_error(self):
        result = self.kernel.execute_cell("def broken(:")

        assert not result.success
        assert result.error.ename == "SyntaxError"

    def test_error_leaves_kernel_usable(self):
        self.kernel.execute_cell("x = 1")
        self.kernel.execute_cell("raise ValueError('boom')")
        result = self.kernel.execute_cell("x")

        assert result.success
        assert join_output(result.output) == "1\n"

    def test_import_persistence(self):
        self.kernel.execute_cell("import math")
        result = self.kernel.execute_cell("math.sqrt(16)")

        assert join_output(result.output) == "4.0\n"

    def test_defined_names_exclude_internals(self):
        self.kernel.execute_cell("a = 1\n_hidden = 2")
        names = self.kernel.get_defined_names()

        assert "a" in names
        assert "_hidden" not in names
        assert "In" not in names

    def test_describe_variables(self):
        self.kernel.execute_cell("items = list(range(500))\nname = 'cellsync'")
        variables = {v["name"]: v for v in self.kernel.describe_variables()}

        assert variables["name"] == {"name": "name", "type": "str", "value": "'cellsync'"}
        assert variables["items"]["type"] == "list"
        assert len(variables["items"]["value"]) == 200
        assert variables["items"]["value"].endswith("...")

    def test_input_handler(self):
        prompts = []

        def answer(prompt=""):
            prompts.append(prompt)
            return "Ada"

        kernel = NotebookKernel(input_handler=answer)
        result = kernel.execute_cell("name = input('Name? ')\nprint('Hello', name)")

        assert prompts == ["Name? "]
        assert join_output(result.output) == "Hello Ada\n"


class TestExecutionResult:

    def test_dict_round_trip(self):
        kernel = NotebookKernel()
        result = kernel.execute_cell("print('hi')\n1/0")
        restored = ExecutionResult.from_dict(result.to_dict())

        assert restored.success is False
        assert restored.output == result.output
        assert restored.error == result.error
        assert restored.execution_count == result.execution_count


class TestStreamWriter:

    def test_write_returns_length_of_argument(self):
        chunks = []
        stdout = StreamWriter(chunks, "stdout")

        assert stdout.write("abc") == 3
        assert stdout.write("de") == 2
        assert stdout.write("") == 0
        assert [c.data for c in chunks] == ["abcde"]

    def test_kinds_alternate(self):
        chunks = []
        StreamWriter(chunks, "stdout").write("out")
        StreamWriter(chunks, "stderr").write("err")

        assert [(c.kind, c.data) for c in chunks] == [("stdout", "out"), ("stderr", "err")]
