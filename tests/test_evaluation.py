"""Tests for module body analysis and evaluation."""

import json
from textwrap import dedent

import pytest

from modlink.errors import EvaluationError
from modlink.evaluation import analyze
from modlink.evaluation import evaluate_async_static
from modlink.evaluation import evaluate_eager_sync
from modlink.evaluation import json_module_source
from modlink.identifiers import ResourceIdentifier
from modlink.manifests.schema import ModuleFormat
from modlink.registry import ModuleRecord

ASYNC = ModuleFormat.ASYNC_STATIC
EAGER = ModuleFormat.EAGER_SYNC


def make_record(source, fmt):
    record = ModuleRecord(id=ResourceIdentifier.builtin("test/mod.py"), format=fmt)
    record.source = dedent(source)
    record.exported_names = analyze(record.source, fmt).exports
    record.instantiate()
    return record


class TestAnalyzeAsyncStatic:
    """Tests for async-static analysis."""

    def test_imports_and_explicit_exports(self):
        """Test literal static imports and __all__."""
        analysis = analyze(
            dedent(
                """
                util = static_import("./util.py")
                static_import("./side-effect.py")
                __all__ = ["answer"]
                answer = util.compute()
                """
            ),
            ASYNC,
        )
        assert [(i.specifier, i.binding) for i in analysis.imports] == [
            ("./util.py", "util"),
            ("./side-effect.py", None),
        ]
        assert analysis.exports == ("answer",)

    def test_implicit_exports_skip_private_and_imports(self):
        """Test that public top-level names are exported without __all__."""
        analysis = analyze(
            dedent(
                """
                import itertools
                dep = static_import("dep")
                _hidden = 1
                value = 2

                def helper():
                    pass

                class Thing:
                    pass
                """
            ),
            ASYNC,
        )
        assert analysis.exports == ("itertools", "value", "helper", "Thing")

    def test_specifiers_are_unique(self):
        """Test that repeated specifiers are reported once."""
        analysis = analyze('a = static_import("x")\nb = static_import("x")\n', ASYNC)
        assert analysis.specifiers == ["x"]

    @pytest.mark.parametrize(
        "source",
        [
            "name = 'x'\nmod = static_import(name)\n",
            "def f():\n    return static_import('x')\n",
            "a, b = static_import('x')\n",
            "__all__ = ['a' + 'b']\n",
            "value = [static_import('x')]\n",
        ],
    )
    def test_non_static_declarations_rejected(self, source):
        """Test that dynamic import and export declarations fail analysis."""
        with pytest.raises(EvaluationError) as exc_info:
            analyze(source, ASYNC, filename="bad.py")
        assert exc_info.value.stage == "load"

    def test_syntax_error(self):
        """Test that unparseable bodies report the file and line."""
        with pytest.raises(EvaluationError) as exc_info:
            analyze("def broken(:\n", ASYNC, filename="broken.py")
        assert "broken.py:1" in exc_info.value.message


class TestAnalyzeEagerSync:
    """Tests for eager-sync analysis."""

    def test_requires_in_line_order(self):
        """Test literal require calls anywhere in the body."""
        analysis = analyze(
            dedent(
                """
                def later():
                    return require("./late.py")

                first = require("./first.py")
                """
            ),
            EAGER,
        )
        assert analysis.specifiers == ["./late.py", "./first.py"]
        assert analysis.exports == ("default",)
        assert not analysis.dynamic_requires

    def test_dynamic_require_flagged(self):
        """Test that computed specifiers are not treated as dependencies."""
        analysis = analyze("name = './x.py'\nmod = require(name)\n", EAGER)
        assert analysis.imports == []
        assert analysis.dynamic_requires


@pytest.mark.asyncio
class TestEvaluateAsyncStatic:
    """Tests for evaluate_async_static."""

    async def test_assigns_cells(self):
        """Test that exported cells receive the body's values."""
        record = make_record("dep = static_import('dep')\n__all__ = ['total']\ntotal = dep + 1\n", ASYNC)
        await evaluate_async_static(record, {"dep": 41})
        assert record.bindings["total"].value == 42

    async def test_top_level_await(self):
        """Test that bodies may await at top level."""
        record = make_record(
            """
            import asyncio
            __all__ = ["value"]
            await asyncio.sleep(0)
            value = "done"
            """,
            ASYNC,
        )
        await evaluate_async_static(record, {})
        assert record.bindings["value"].value == "done"

    async def test_undefined_export(self):
        """Test that a declared but unassigned export fails."""
        record = make_record("__all__ = ['missing']\n", ASYNC)
        with pytest.raises(EvaluationError) as exc_info:
            await evaluate_async_static(record, {})
        assert "missing" in exc_info.value.message

    async def test_body_failure_wrapped(self):
        """Test that exceptions in the body become BodyFailed."""
        record = make_record("__all__ = []\nraise ZeroDivisionError('nope')\n", ASYNC)
        with pytest.raises(EvaluationError) as exc_info:
            await evaluate_async_static(record, {})
        assert exc_info.value.kind == "BodyFailed"
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)


class TestEvaluateEagerSync:
    """Tests for evaluate_eager_sync."""

    def test_module_exports_replaced(self):
        """Test that reassigning module.exports publishes the new value."""
        record = make_record("module.exports = {'n': require('./n.py')}\n", EAGER)
        result = evaluate_eager_sync(record, lambda specifier: 7)
        assert result == {"n": 7}
        assert record.bindings["default"].value == {"n": 7}

    def test_exports_object_mutated(self):
        """Test that attributes set on exports are visible through default."""
        record = make_record("exports.value = 3\n", EAGER)
        evaluate_eager_sync(record, lambda specifier: None)
        assert record.bindings["default"].value.value == 3

    def test_exports_object_shared_before_body(self):
        """Test that the body fills the exports object created at instantiation."""
        record = make_record("exports.value = 5\n", EAGER)
        early = record.bindings["default"].value

        evaluate_eager_sync(record, lambda specifier: None)

        assert early.value == 5
        assert record.bindings["default"].value is early

    def test_failure_wrapped(self):
        """Test that body errors become BodyFailed."""
        record = make_record("raise KeyError('k')\n", EAGER)
        with pytest.raises(EvaluationError):
            evaluate_eager_sync(record, lambda specifier: None)


class TestJsonModuleSource:
    """Tests for json_module_source."""

    def test_json_document(self):
        """Test that the generated body exports the parsed document."""
        text = json.dumps({"name": "cfg", "items": [1, 2]})
        record = ModuleRecord(id=ResourceIdentifier.builtin("test/cfg.json"), format=EAGER)
        record.source = json_module_source(text)
        record.instantiate()
        assert evaluate_eager_sync(record, lambda specifier: None) == {"name": "cfg", "items": [1, 2]}

    def test_invalid_json(self):
        """Test that malformed documents fail in the transform stage."""
        with pytest.raises(EvaluationError) as exc_info:
            json_module_source("{not json", filename="bad.json")
        assert exc_info.value.stage == "transform"
